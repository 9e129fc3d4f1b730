#!/usr/bin/python3

import json
import sys
from pathlib import Path

import click

from upgrades.artifacts import ArtifactRegistry
from upgrades.constants import ARTIFACTS_DIR
from upgrades.errors import UpgradeError
from upgrades.layout import describe, diff
from upgrades.types import Artifact


@click.command(name="check-layout")
@click.option(
    "--artifacts-dir",
    "-a",
    help="Directory holding the implementation artifacts.",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=ARTIFACTS_DIR,
)
@click.option(
    "--old",
    "-o",
    help="Artifact of the current implementation, as Name@version.",
    type=Artifact(),
    required=True,
)
@click.option(
    "--new",
    "-n",
    help="Artifact of the new implementation, as Name or Name@version.",
    type=Artifact(),
    required=True,
)
def cli(artifacts_dir, old, new):
    """Check that an implementation can safely replace another one behind a proxy."""

    try:
        registry = ArtifactRegistry.from_directory(artifacts_dir)
        old_artifact = registry.resolve(old)
        new_artifact = registry.resolve(new)
    except UpgradeError as e:
        click.echo(json.dumps(e.to_dict(), indent=4), err=True)
        sys.exit(1)

    click.echo(f"Storage layout of {new_artifact.identifier}")
    for line in describe(new_artifact.layout):
        click.echo(f"\t{line}")

    issues = diff(old_artifact.layout, new_artifact.layout)
    if issues:
        click.secho(
            f"\n{new_artifact.identifier} cannot replace {old_artifact.identifier}:",
            fg="red",
        )
        click.echo(json.dumps([issue.to_dict() for issue in issues], indent=4), err=True)
        sys.exit(1)

    appended = len(new_artifact.layout) - len(old_artifact.layout)
    click.secho(
        f"\n{new_artifact.identifier} is storage compatible with {old_artifact.identifier} "
        f"({appended} variable(s) appended)",
        fg="green",
    )


if __name__ == "__main__":
    cli()
