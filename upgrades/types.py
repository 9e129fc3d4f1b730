import click
from eth_utils import to_checksum_address

from upgrades.artifacts import ArtifactSource
from upgrades.constants import NEW_PROXY


class ChecksumAddress(click.ParamType):
    name = "checksum_address"

    def convert(self, value, param, ctx):
        try:
            value = to_checksum_address(value=value)
        except ValueError:
            self.fail("Invalid ethereum address", param, ctx)
        else:
            return value


class ProxyTarget(ChecksumAddress):
    """A proxy address, or 'new' to deploy a fresh proxy."""

    name = "proxy_target"

    def convert(self, value, param, ctx):
        if value == NEW_PROXY:
            return value
        return super().convert(value, param, ctx)


class Artifact(click.ParamType):
    """An artifact reference, 'Name' or 'Name@version'."""

    name = "artifact"

    def convert(self, value, param, ctx):
        if isinstance(value, ArtifactSource):
            return value
        try:
            return ArtifactSource.parse(value)
        except ValueError as e:
            self.fail(str(e), param, ctx)
