import threading
import typing
from pathlib import Path
from typing import Any, NamedTuple, Optional

from ape import networks
from ape.api import AccountAPI
from ape.cli.choices import select_account
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from upgrades.artifacts import ArtifactRegistry, ArtifactSource
from upgrades.audit import UpgradeLog, UpgradeRecord
from upgrades.confirm import _confirm_layout, _continue
from upgrades.constants import (
    ARTIFACTS_DIR,
    AUDIT_LOG_FILENAME,
    DEFAULT_CONFIRMATION_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    IMPLEMENTATIONS_REGISTRY_FILENAME,
    NEW_PROXY,
    PROXY_CONTRACT_NAME,
    RECORDS_DIR,
)
from upgrades.layout import validate
from upgrades.network import ApeNetworkClient, is_local_network
from upgrades.orchestrator import create_orchestrator
from upgrades.registry import ImplementationRegistry
from upgrades.utils import _load_yaml, validate_config


def _artifact_source(section: typing.Dict[str, Any], key: str) -> Optional[ArtifactSource]:
    value = section.get(key)
    if value is None:
        return None
    if isinstance(value, dict):
        return ArtifactSource(name=value["name"], version=_optional_str(value.get("version")))
    return ArtifactSource.parse(str(value))


def _optional_str(value: Any) -> Optional[str]:
    # YAML reads versions such as 2.0 as floats
    return None if value is None else str(value)


class UpgradeParameters(NamedTuple):
    """The contents of an upgrade parameters YAML file."""

    name: str
    chain_id: int
    proxy: str
    admin: Optional[ChecksumAddress]
    proxy_contract: str
    implementation: ArtifactSource
    previous: Optional[ArtifactSource]
    artifacts_dir: Path
    records_dir: Path
    registry_filepath: Path
    audit_log_filepath: Path
    poll_interval: float
    timeout: float

    @property
    def is_new_deployment(self) -> bool:
        return self.proxy == NEW_PROXY

    @classmethod
    def from_config(
        cls,
        config: typing.Dict,
        connected_chain_id: Optional[int] = None,
        live_network: bool = False,
    ) -> "UpgradeParameters":
        validate_config(config, connected_chain_id=connected_chain_id, live_network=live_network)

        deployment = config["deployment"]
        proxy = config["proxy"]
        implementation = config["implementation"]
        artifacts = config.get("artifacts") or dict()
        polling = config.get("polling") or dict()

        proxy_address = str(proxy["address"])
        if proxy_address != NEW_PROXY:
            proxy_address = to_checksum_address(proxy_address)
        admin = proxy.get("admin")

        artifacts_dir = Path(artifacts.get("dir", ARTIFACTS_DIR))
        records_dir = Path(artifacts.get("records", RECORDS_DIR))
        return cls(
            name=deployment.get("name", ""),
            chain_id=int(deployment["chain_id"]),
            proxy=proxy_address,
            admin=to_checksum_address(admin) if admin else None,
            proxy_contract=proxy.get("contract", PROXY_CONTRACT_NAME),
            implementation=ArtifactSource(
                name=implementation["name"],
                version=_optional_str(implementation.get("version")),
            ),
            previous=_artifact_source(implementation, "previous"),
            artifacts_dir=artifacts_dir,
            records_dir=records_dir,
            registry_filepath=records_dir
            / artifacts.get("registry", IMPLEMENTATIONS_REGISTRY_FILENAME),
            audit_log_filepath=records_dir / artifacts.get("audit_log", AUDIT_LOG_FILENAME),
            poll_interval=float(polling.get("interval", DEFAULT_POLL_INTERVAL)),
            timeout=float(polling.get("timeout", DEFAULT_CONFIRMATION_TIMEOUT)),
        )

    @classmethod
    def from_yaml(cls, filepath: Path, *args, **kwargs) -> "UpgradeParameters":
        config = _load_yaml(filepath)
        return cls.from_config(config, *args, **kwargs)


class Transactor:
    """
    Represents an ape account plus confirmation of the transactions it signs.
    """

    def __init__(self, account: typing.Optional[AccountAPI] = None, autosign: bool = False):
        if account is None:
            self._account = select_account()
        else:
            self._account = account
        if autosign:
            print("WARNING: Autosign is enabled. Transactions will be signed automatically.")
        self._autosign = autosign
        self._account.set_autosign(autosign)

    def get_account(self) -> AccountAPI:
        """Returns the transactor account."""
        return self._account


class Upgrader(Transactor):
    """
    Represents an ape account plus the upgrade parameters of a single proxy,
    with the orchestrator wired to the connected network.
    """

    def __init__(
        self,
        params: UpgradeParameters,
        path: Optional[Path] = None,
        account: typing.Optional[AccountAPI] = None,
        autosign: bool = False,
    ):
        super().__init__(account, autosign)
        self.params = params
        self.path = path

        account_address = self.get_account().address
        if params.admin and params.admin != account_address:
            raise ValueError(
                f"Account {account_address} is not the configured proxy admin {params.admin}."
            )

        self.artifacts = ArtifactRegistry.from_directory(params.artifacts_dir)
        self.network = ApeNetworkClient(self.get_account())
        self.registry = ImplementationRegistry(params.registry_filepath)
        self.audit_log = UpgradeLog(params.audit_log_filepath)
        self.orchestrator = create_orchestrator(
            network=self.network,
            artifacts=self.artifacts,
            sender=account_address,
            registry=self.registry,
            audit_log=self.audit_log,
            proxy_contract=params.proxy_contract,
            poll_interval=params.poll_interval,
            timeout=params.timeout,
        )
        self._print_upgrade_info()

        if not self._autosign:
            # Confirms the start of the upgrade.
            _continue()

    @classmethod
    def from_yaml(cls, filepath: Path, *args, **kwargs) -> "Upgrader":
        params = UpgradeParameters.from_yaml(
            filepath,
            connected_chain_id=networks.provider.network.chain_id,
            live_network=not is_local_network(),
        )
        return cls(params, filepath, *args, **kwargs)

    def run(
        self,
        proxy: Optional[str] = None,
        implementation: Optional[ArtifactSource] = None,
        previous: Optional[ArtifactSource] = None,
        cancel: Optional[threading.Event] = None,
    ) -> UpgradeRecord:
        """Deploys or upgrades the configured proxy; arguments override the params file."""
        target = proxy or self.params.proxy
        source = implementation or self.params.implementation
        previous = previous or self.params.previous

        if not self._autosign and target != NEW_PROXY:
            self._confirm(target, source, previous)

        return self.orchestrator.upgrade_or_deploy(
            target=target,
            source=source,
            caller=self.get_account().address,
            cancel=cancel,
            previous=previous,
        )

    def _confirm(
        self, target: str, source: ArtifactSource, previous: Optional[ArtifactSource]
    ) -> None:
        record = self.orchestrator.controller.load(target)
        if not record.initialized:
            return
        old_layout = self.orchestrator.current_layout(record, previous)
        artifact = self.artifacts.resolve(source)
        validate(old_layout, artifact.layout)
        _confirm_layout(old_layout, artifact.layout, target, artifact)

    def _print_upgrade_info(self):
        print(
            f"Account: {self.get_account().address}",
            f"Config: {self.path}",
            f"Proxy: {self.params.proxy}",
            f"Implementation: {self.params.implementation}",
            f"Artifacts: {self.params.artifacts_dir} ({len(self.artifacts)} loaded)",
            f"Registry: {self.params.registry_filepath}",
            f"Audit log: {self.params.audit_log_filepath}",
            f"Ecosystem: {networks.provider.network.ecosystem.name}",
            f"Network: {networks.provider.network.name}",
            f"Chain ID: {networks.provider.network.chain_id}",
            sep="\n",
        )
