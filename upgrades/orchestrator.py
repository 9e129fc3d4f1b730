import threading
import time
import typing
from typing import List, Optional

from ape.logging import logger
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from upgrades.artifacts import ArtifactRegistry, ArtifactSource, ImplementationArtifact
from upgrades.audit import UpgradeLog, UpgradeRecord
from upgrades.constants import (
    DEFAULT_CONFIRMATION_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    NEW_PROXY,
    PROXY_CONTRACT_NAME,
)
from upgrades.deployer import ImplementationDeployer, code_hash, validated_bytecode
from upgrades.errors import ArtifactNotFound, LayoutError, NotInitialized, UpgradeCancelled
from upgrades.layout import LayoutDescriptor, diff, validate
from upgrades.network import NetworkClient
from upgrades.proxy import ProxyController, ProxyRecord
from upgrades.registry import ImplementationRegistry

Source = typing.Union[ArtifactSource, str]


def _check_cancelled(cancel: Optional[threading.Event], target: str, step: str) -> None:
    if cancel is not None and cancel.is_set():
        logger.warning(f"Upgrade of {target} cancelled before {step}; nothing was changed.")
        raise UpgradeCancelled(f"Upgrade of {target} cancelled before {step}")


class UpgradeOrchestrator:
    """
    Runs the deploy and upgrade lifecycles of a proxy:
    validate the storage layout, publish the implementation, then repoint.

    Every step gates the next one. Nothing reaches the proxy unless the layout
    is compatible and the implementation is confirmed on chain. The proxy's lease
    is held for the whole upgrade so that upgrades of one proxy never interleave.
    """

    def __init__(
        self,
        artifacts: ArtifactRegistry,
        deployer: ImplementationDeployer,
        controller: ProxyController,
        proxy_artifact: Optional[ImplementationArtifact] = None,
    ):
        self.artifacts = artifacts
        self.deployer = deployer
        self.controller = controller
        self.proxy_artifact = proxy_artifact

    @property
    def leases(self):
        return self.controller.leases

    @property
    def chain_id(self) -> int:
        return self.controller.network.chain_id

    def current_layout(
        self, record: ProxyRecord, previous: Optional[Source] = None
    ) -> LayoutDescriptor:
        """
        Storage layout of the implementation the proxy currently points to.
        An implementation published by other means must be identified with `previous`.
        """
        registry = self.deployer.registry
        entry = registry.find_by_address(self.chain_id, record.implementation)
        if entry is not None:
            return entry.layout

        if previous is None:
            raise ArtifactNotFound(
                f"Storage layout of {record.implementation}, the current implementation of "
                f"{record.address}, is unknown; specify the artifact it was deployed from."
            )
        artifact = self.artifacts.resolve(previous)
        logger.info(f"Importing {artifact.identifier} as implementation {record.implementation}")
        registry.import_artifact(
            chain_id=self.chain_id,
            address=record.implementation,
            artifact=artifact,
            code_hash=code_hash(validated_bytecode(artifact)),
        )
        return artifact.layout

    def check(
        self, proxy_address: str, source: Source, previous: Optional[Source] = None
    ) -> List[LayoutError]:
        """Every storage incompatibility an upgrade of `proxy_address` to `source` would hit."""
        record = self.controller.load(proxy_address)
        old_layout = self.current_layout(record, previous) if record.initialized else None
        return diff(old_layout, self.artifacts.resolve(source).layout)

    def upgrade(
        self,
        proxy_address: str,
        source: Source,
        caller: str,
        cancel: Optional[threading.Event] = None,
        previous: Optional[Source] = None,
    ) -> UpgradeRecord:
        caller = to_checksum_address(caller)
        with self.leases.lease(proxy_address) as proxy_address:
            record = self.controller.load(proxy_address)
            if not record.initialized:
                raise NotInitialized(
                    f"Proxy {proxy_address} has no implementation; it must be initialized first"
                )
            self.controller.authorize(record, caller)
            old_layout = self.current_layout(record, previous)

            artifact = self.artifacts.resolve(source)
            logger.info(f"Validating storage layout of {artifact.identifier}...")
            validate(old_layout, artifact.layout)

            _check_cancelled(cancel, proxy_address, "deployment")
            implementation = self.deployer.deploy(artifact, cancel=cancel)

            _check_cancelled(cancel, proxy_address, "repointing")
            # past this point the upgrade either commits or fails outright
            return self.controller.repoint(proxy_address, implementation.address, caller)

    def deploy_proxy(
        self, source: Source, caller: str, cancel: Optional[threading.Event] = None
    ) -> UpgradeRecord:
        """First deployment: publish the implementation, create a proxy and initialize it."""
        caller = to_checksum_address(caller)
        if self.proxy_artifact is None:
            raise ArtifactNotFound("No proxy artifact is configured for new deployments")
        proxy_bytecode = validated_bytecode(self.proxy_artifact)

        artifact = self.artifacts.resolve(source)
        validate(None, artifact.layout)

        _check_cancelled(cancel, NEW_PROXY, "deployment")
        implementation = self.deployer.deploy(artifact, cancel=cancel)

        _check_cancelled(cancel, NEW_PROXY, "proxy creation")
        proxy = self.controller.create(proxy_bytecode, admin=caller, sender=caller)
        with self.leases.lease(proxy.address):
            return self.controller.initialize(proxy.address, implementation.address, caller)

    def upgrade_or_deploy(
        self,
        target: str,
        source: Source,
        caller: ChecksumAddress,
        cancel: Optional[threading.Event] = None,
        previous: Optional[Source] = None,
    ) -> UpgradeRecord:
        """Dispatches to `deploy_proxy` when `target` is 'new', to `upgrade` otherwise."""
        if target == NEW_PROXY:
            return self.deploy_proxy(source, caller, cancel=cancel)
        return self.upgrade(target, source, caller, cancel=cancel, previous=previous)


def create_orchestrator(
    network: NetworkClient,
    artifacts: ArtifactRegistry,
    sender: ChecksumAddress,
    registry: Optional[ImplementationRegistry] = None,
    audit_log: Optional[UpgradeLog] = None,
    proxy_contract: Optional[str] = PROXY_CONTRACT_NAME,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
    sleep: typing.Callable[[float], None] = time.sleep,
) -> UpgradeOrchestrator:
    """Wires the deployer, proxy controller and orchestrator around one network."""
    deployer = ImplementationDeployer(
        network=network,
        registry=registry or ImplementationRegistry(),
        sender=sender,
        poll_interval=poll_interval,
        timeout=timeout,
        sleep=sleep,
    )
    controller = ProxyController(
        network=network,
        audit_log=audit_log or UpgradeLog(),
        poll_interval=poll_interval,
        timeout=timeout,
        sleep=sleep,
    )
    proxy_artifact = None
    if proxy_contract and proxy_contract in artifacts:
        proxy_artifact = artifacts.resolve(proxy_contract)
    return UpgradeOrchestrator(
        artifacts=artifacts,
        deployer=deployer,
        controller=controller,
        proxy_artifact=proxy_artifact,
    )
