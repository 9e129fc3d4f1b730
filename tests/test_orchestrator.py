import threading

import pytest
from hexbytes import HexBytes

from tests.conftest import ADMIN, PROXY_BYTECODE, STRANGER, publish_uups_proxy
from upgrades.artifacts import ArtifactRegistry
from upgrades.constants import NEW_PROXY
from upgrades.errors import (
    ArtifactNotFound,
    LayoutError,
    LayoutIssue,
    NetworkUnavailable,
    NotInitialized,
    RegistryConflict,
    Unauthorized,
    UpgradeCancelled,
)
from upgrades.local import LocalNetwork
from upgrades.orchestrator import create_orchestrator
from upgrades.proxy import ProxyKind, ProxyState
from upgrades.registry import ImplementationRegistry


def implementation_of(orchestrator, identifier):
    entry = orchestrator.deployer.registry.find_by_identifier(orchestrator.chain_id, identifier)
    return entry.address


def test_first_deployment(orchestrator, local_network, audit_log):
    record = orchestrator.upgrade_or_deploy(NEW_PROXY, "CalsoftStaking@1.0.0", caller=ADMIN)
    assert record.is_initialization

    proxy = orchestrator.controller.load(record.proxy)
    assert proxy.state == ProxyState.ACTIVE
    assert proxy.admin == ADMIN
    assert proxy.implementation == implementation_of(orchestrator, "CalsoftStaking@1.0.0")
    assert record.to_implementation == proxy.implementation
    assert audit_log.records() == [record]

    # implementation, then proxy
    assert len(local_network.published) == 2
    assert local_network.published[1].startswith(bytes(HexBytes(PROXY_BYTECODE)))


def test_upgrade(orchestrator, audit_log, deployed_proxy):
    record = orchestrator.upgrade_or_deploy(
        deployed_proxy.proxy, "CalsoftStaking@2.0.0", caller=ADMIN
    )
    v1 = implementation_of(orchestrator, "CalsoftStaking@1.0.0")
    v2 = implementation_of(orchestrator, "CalsoftStaking@2.0.0")
    assert (record.from_implementation, record.to_implementation) == (v1, v2)
    assert orchestrator.controller.load(deployed_proxy.proxy).implementation == v2
    assert audit_log.records(deployed_proxy.proxy) == [deployed_proxy, record]


def test_upgrade_to_latest_version(orchestrator, deployed_proxy, staking_v2):
    orchestrator.artifacts = ArtifactRegistry(
        [orchestrator.artifacts.resolve("CalsoftStaking@1.0.0"), staking_v2]
    )
    record = orchestrator.upgrade(deployed_proxy.proxy, "CalsoftStaking", caller=ADMIN)
    assert record.to_implementation == implementation_of(orchestrator, "CalsoftStaking@2.0.0")


def test_incompatible_layout_is_never_published(
    orchestrator, local_network, audit_log, deployed_proxy
):
    published = list(local_network.published)
    transactions = list(local_network.transactions)

    with pytest.raises(LayoutError) as error:
        orchestrator.upgrade(deployed_proxy.proxy, "CalsoftStaking@3.0.0", caller=ADMIN)
    assert error.value.reason == LayoutIssue.REMOVED
    assert error.value.to_dict()["component"] == "validator"

    assert local_network.published == published
    assert local_network.transactions == transactions
    assert audit_log.records() == [deployed_proxy]
    assert orchestrator.controller.load(deployed_proxy.proxy).implementation == (
        deployed_proxy.to_implementation
    )


def test_check(orchestrator, deployed_proxy):
    assert orchestrator.check(deployed_proxy.proxy, "CalsoftStaking@2.0.0") == []
    issues = orchestrator.check(deployed_proxy.proxy, "CalsoftStaking@3.0.0")
    assert [issue.label for issue in issues] == ["stakes"]


def test_upgrade_by_stranger(orchestrator, local_network, audit_log, deployed_proxy):
    published = list(local_network.published)
    with pytest.raises(Unauthorized):
        orchestrator.upgrade(deployed_proxy.proxy, "CalsoftStaking@2.0.0", caller=STRANGER)
    assert local_network.published == published
    assert audit_log.records() == [deployed_proxy]


def test_unknown_artifact(orchestrator, local_network, deployed_proxy):
    published = list(local_network.published)
    with pytest.raises(ArtifactNotFound):
        orchestrator.upgrade(deployed_proxy.proxy, "CalsoftStaking@9.0.0", caller=ADMIN)
    assert local_network.published == published


def test_upgrade_uninitialized_proxy(orchestrator):
    proxy = orchestrator.controller.create(HexBytes(PROXY_BYTECODE), admin=ADMIN, sender=ADMIN)
    with pytest.raises(NotInitialized):
        orchestrator.upgrade(proxy.address, "CalsoftStaking@2.0.0", caller=ADMIN)


def test_cancelled_before_deployment(orchestrator, local_network, audit_log, deployed_proxy):
    published = list(local_network.published)
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(UpgradeCancelled):
        orchestrator.upgrade(
            deployed_proxy.proxy, "CalsoftStaking@2.0.0", caller=ADMIN, cancel=cancel
        )
    assert local_network.published == published
    assert audit_log.records() == [deployed_proxy]


def test_cancelled_before_repointing(artifacts, audit_log):
    cancel = threading.Event()

    class CancellingNetwork(LocalNetwork):
        def publish_bytecode(self, bytecode, sender):
            tx_hash = super().publish_bytecode(bytecode, sender)
            if len(self.published) == 3:  # the second implementation
                cancel.set()
            return tx_hash

    network = CancellingNetwork(proxy_creation_code=HexBytes(PROXY_BYTECODE))
    orchestrator = create_orchestrator(
        network, artifacts, sender=ADMIN, audit_log=audit_log, poll_interval=0
    )
    deployed = orchestrator.deploy_proxy("CalsoftStaking@1.0.0", caller=ADMIN)

    with pytest.raises(UpgradeCancelled):
        orchestrator.upgrade(deployed.proxy, "CalsoftStaking@2.0.0", caller=ADMIN, cancel=cancel)
    assert orchestrator.controller.load(deployed.proxy).implementation == (
        deployed.to_implementation
    )
    assert audit_log.records() == [deployed]
    assert audit_log.pending() == []


def test_cancelled_first_deployment(orchestrator, local_network):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(UpgradeCancelled):
        orchestrator.deploy_proxy("CalsoftStaking@1.0.0", caller=ADMIN, cancel=cancel)
    assert local_network.published == []


def test_upgrade_with_unknown_current_implementation(
    local_network, artifacts, audit_log, deployed_proxy
):
    # a fresh registry knows nothing about the proxy's implementation
    orchestrator = create_orchestrator(
        local_network,
        artifacts,
        sender=ADMIN,
        registry=ImplementationRegistry(),
        audit_log=audit_log,
        poll_interval=0,
    )
    with pytest.raises(ArtifactNotFound, match="specify the artifact"):
        orchestrator.upgrade(deployed_proxy.proxy, "CalsoftStaking@2.0.0", caller=ADMIN)

    with pytest.raises(LayoutError):
        orchestrator.upgrade(
            deployed_proxy.proxy,
            "CalsoftStaking@3.0.0",
            caller=ADMIN,
            previous="CalsoftStaking@1.0.0",
        )

    record = orchestrator.upgrade(deployed_proxy.proxy, "CalsoftStaking@2.0.0", caller=ADMIN)
    assert record.from_implementation == deployed_proxy.to_implementation


def test_deploy_without_proxy_artifact(local_network, staking_v1):
    orchestrator = create_orchestrator(
        local_network, ArtifactRegistry([staking_v1]), sender=ADMIN, poll_interval=0
    )
    with pytest.raises(ArtifactNotFound):
        orchestrator.upgrade_or_deploy(NEW_PROXY, "CalsoftStaking", caller=ADMIN)
    assert local_network.published == []


def test_reupgrade_to_current_implementation(orchestrator, local_network, deployed_proxy):
    published = list(local_network.published)
    record = orchestrator.upgrade(deployed_proxy.proxy, "CalsoftStaking@1.0.0", caller=ADMIN)
    assert record.from_implementation == record.to_implementation
    assert local_network.published == published


def test_network_unavailable(orchestrator, local_network, deployed_proxy):
    local_network.offline = True
    with pytest.raises(NetworkUnavailable) as error:
        orchestrator.upgrade(deployed_proxy.proxy, "CalsoftStaking@2.0.0", caller=ADMIN)
    assert error.value.to_dict() == {
        "error": "NetworkUnavailable",
        "component": "proxy-controller",
        "retryable": True,
        "message": f"Local network {local_network.chain_id} is offline",
    }


def test_concurrent_upgrades_of_one_proxy(orchestrator, audit_log, deployed_proxy):
    errors = list()

    def upgrade(source):
        try:
            orchestrator.upgrade(deployed_proxy.proxy, source, caller=ADMIN)
        except Exception as e:
            errors.append(e)

    threads = [
        threading.Thread(target=upgrade, args=(source,))
        for source in ("CalsoftStaking@2.0.0", "CalsoftStaking@1.0.0") * 3
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    records = audit_log.records(deployed_proxy.proxy)
    assert [type(e) for e in errors] == [LayoutError] * len(errors)
    assert len(records) == 1 + len(threads) - len(errors)
    for previous, record in zip(records, records[1:]):
        assert record.from_implementation == previous.to_implementation


def publish_outside(network, artifact):
    """Publishes an implementation the way another deployment tool would."""
    tx_hash = network.publish_bytecode(bytes(HexBytes(artifact.bytecode)), sender=ADMIN)
    return network.get_receipt(tx_hash).contract_address


def test_upgrade_uups_proxy(orchestrator, local_network, audit_log, staking_v1):
    # deployProxy(CalsoftStaking, {kind: "uups"}) followed by upgradeProxy
    v1 = publish_outside(local_network, staking_v1)
    proxy = publish_uups_proxy(local_network, v1, owner=ADMIN)

    record = orchestrator.upgrade(
        proxy, "CalsoftStaking@2.0.0", caller=ADMIN, previous="CalsoftStaking@1.0.0"
    )
    v2 = implementation_of(orchestrator, "CalsoftStaking@2.0.0")
    assert (record.from_implementation, record.to_implementation) == (v1, v2)

    current = orchestrator.controller.load(proxy)
    assert current.kind == ProxyKind.UUPS
    assert current.implementation == v2
    assert implementation_of(orchestrator, "CalsoftStaking@1.0.0") == v1
    assert audit_log.records(proxy) == [record]


def test_uups_upgrade_with_incompatible_layout(orchestrator, local_network, staking_v1):
    proxy = publish_uups_proxy(local_network, publish_outside(local_network, staking_v1))
    published = list(local_network.published)
    with pytest.raises(LayoutError):
        orchestrator.upgrade(
            proxy, "CalsoftStaking@3.0.0", caller=ADMIN, previous="CalsoftStaking@1.0.0"
        )
    assert local_network.published == published


def test_previous_version_registered_at_another_address(
    orchestrator, local_network, audit_log, staking_v1
):
    outside = publish_outside(local_network, staking_v1)
    proxy = orchestrator.controller.create(HexBytes(PROXY_BYTECODE), admin=ADMIN, sender=ADMIN)
    orchestrator.controller.initialize(proxy.address, outside, caller=ADMIN)
    # the same version, published again by this tool for another proxy
    orchestrator.deployer.deploy(staking_v1)
    assert implementation_of(orchestrator, "CalsoftStaking@1.0.0") != outside

    published = list(local_network.published)
    records = audit_log.records()
    with pytest.raises(RegistryConflict) as error:
        orchestrator.upgrade(
            proxy.address, "CalsoftStaking@2.0.0", caller=ADMIN, previous="CalsoftStaking@1.0.0"
        )
    assert error.value.to_dict()["component"] == "registry"
    assert not error.value.retryable
    assert local_network.published == published
    assert audit_log.records() == records
    assert orchestrator.controller.load(proxy.address).implementation == outside
