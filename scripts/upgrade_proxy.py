#!/usr/bin/python3

import json
import sys

import click
from ape.cli import ConnectedProviderCommand, account_option, network_option

from upgrades.errors import UpgradeError
from upgrades.options import (
    auto_option,
    implementation_option,
    params_option,
    previous_option,
    proxy_option,
)
from upgrades.params import Upgrader


@click.command(cls=ConnectedProviderCommand, name="upgrade-proxy")
@account_option()
@network_option(required=True)
@params_option
@proxy_option
@implementation_option
@previous_option
@auto_option
def cli(network, account, params, proxy, implementation, previous, auto):
    """Deploy a new proxy, or upgrade an existing one to a new implementation."""

    click.echo(f"Connected to {network.name} network.")
    upgrader = Upgrader.from_yaml(filepath=params, account=account, autosign=auto)
    try:
        record = upgrader.run(proxy=proxy, implementation=implementation, previous=previous)
    except UpgradeError as e:
        click.echo(json.dumps(e.to_dict(), indent=4), err=True)
        sys.exit(1)

    action = "Initialized" if record.is_initialization else "Upgraded"
    click.secho(f"{action} proxy {record.proxy} to {record.to_implementation}", fg="green")
    click.echo(json.dumps(record._asdict(), indent=4))


if __name__ == "__main__":
    cli()
