from pathlib import Path

import click

from upgrades.types import Artifact, ChecksumAddress, ProxyTarget

params_option = click.option(
    "--params",
    "-p",
    help="Path to an upgrade parameters YAML file.",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
)

proxy_option = click.option(
    "--proxy",
    "-x",
    help="Address of the proxy to upgrade, or 'new' to deploy one.",
    type=ProxyTarget(),
    required=False,
)

proxy_address_option = click.option(
    "--proxy",
    "-x",
    help="Address of the proxy.",
    type=ChecksumAddress(),
    required=False,
)

implementation_option = click.option(
    "--implementation",
    "-i",
    help="Implementation artifact, as Name or Name@version.",
    type=Artifact(),
    required=False,
)

previous_option = click.option(
    "--previous",
    help="Artifact the current implementation was deployed from, as Name@version.",
    type=Artifact(),
    required=False,
)


auto_option = click.option(
    "--auto",
    help="Automatically sign transactions.",
    is_flag=True,
)
