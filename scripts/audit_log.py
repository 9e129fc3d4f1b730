#!/usr/bin/python3

import json

import click
from ape import chain
from ape.cli import ConnectedProviderCommand, network_option

from upgrades.audit import UpgradeLog
from upgrades.network import ApeNetworkClient
from upgrades.options import params_option, proxy_address_option
from upgrades.params import UpgradeParameters


@click.command(cls=ConnectedProviderCommand, name="audit-log")
@network_option(required=True)
@params_option
@proxy_address_option
@click.option(
    "--reconcile",
    help="Resolve upgrades left pending by an interrupted run against the chain.",
    is_flag=True,
)
def cli(network, params, proxy, reconcile):
    """Show the upgrade history of the configured proxies."""

    click.echo(f"Connected to {network.name} network.")
    parameters = UpgradeParameters.from_yaml(params)
    audit_log = UpgradeLog(parameters.audit_log_filepath)

    if reconcile:
        committed, discarded = audit_log.reconcile(
            ApeNetworkClient(), timestamp=chain.blocks.head.timestamp
        )
        click.echo(f"Recovered {len(committed)} upgrade(s), discarded {len(discarded)}.")

    for record in audit_log.records(proxy=proxy):
        click.echo(json.dumps(record._asdict(), indent=4))

    pending = audit_log.pending()
    if pending:
        click.secho(f"{len(pending)} upgrade(s) pending; run with --reconcile.", fg="yellow")


if __name__ == "__main__":
    cli()
