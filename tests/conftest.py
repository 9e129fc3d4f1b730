import pytest
from eth_utils import to_checksum_address
from hexbytes import HexBytes
from web3.auto import w3

from upgrades.artifacts import ArtifactRegistry, ImplementationArtifact
from upgrades.audit import UpgradeLog
from upgrades.layout import LayoutDescriptor
from upgrades.local import LocalNetwork
from upgrades.orchestrator import create_orchestrator
from upgrades.registry import ImplementationRegistry

# Common constants
ADMIN = to_checksum_address("0x861aa915c785dee04684444560fc7a2ab43a1543")
STRANGER = to_checksum_address("0xee711368eaba106a0cf7a07b33b84cd930331ffd")
GENESIS_TIMESTAMP = 1_700_000_000

PROXY_BYTECODE = "0x60806040526040516103e83803806103e8833981016040819052"
# ERC1967Proxy of the UUPS kind; constructed with (implementation, owner)
UUPS_PROXY_BYTECODE = "0x608060405260405161078d38038061078d8339810160408190526100229161031c565b"

STAKING_V1_LAYOUT = [
    ("_initialized", "uint8"),
    ("_initializing", "bool"),
    ("_owner", "address"),
    ("stakingToken", "contract IERC20"),
    ("totalStaked", "uint256"),
    ("stakes", "mapping(address => uint256)"),
]
STAKING_V2_LAYOUT = STAKING_V1_LAYOUT + [
    ("rewardRate", "uint64"),
    ("rewards", "mapping(address => uint256)"),
]
# drops the stakes mapping
STAKING_BROKEN_LAYOUT = STAKING_V1_LAYOUT[:-1]


# Utility functions
def make_artifact(version, layout, name="CalsoftStaking", bytecode=None):
    if bytecode is None:
        bytecode = "0x6080604052" + f"{name}@{version}".encode().hex()
    return ImplementationArtifact(
        name=name,
        version=version,
        bytecode=bytecode,
        layout=LayoutDescriptor.from_compact(layout),
    )


def publish_uups_proxy(network, implementation, owner=ADMIN):
    """Publishes a UUPS proxy the way an OpenZeppelin `deployProxy` would."""
    constructor_args = w3.codec.encode(["address", "address"], [implementation, owner])
    tx_hash = network.publish_bytecode(
        HexBytes(UUPS_PROXY_BYTECODE) + constructor_args, sender=owner
    )
    return network.get_receipt(tx_hash).contract_address


# Fixtures
@pytest.fixture()
def proxy_artifact():
    return make_artifact("1.0.0", [], name="UpgradeableProxy", bytecode=PROXY_BYTECODE)


@pytest.fixture()
def staking_v1():
    return make_artifact("1.0.0", STAKING_V1_LAYOUT)


@pytest.fixture()
def staking_v2():
    return make_artifact("2.0.0", STAKING_V2_LAYOUT)


@pytest.fixture()
def staking_broken():
    return make_artifact("3.0.0", STAKING_BROKEN_LAYOUT)


@pytest.fixture()
def artifacts(proxy_artifact, staking_v1, staking_v2, staking_broken):
    return ArtifactRegistry([proxy_artifact, staking_v1, staking_v2, staking_broken])


@pytest.fixture()
def local_network():
    return LocalNetwork(
        proxy_creation_code=HexBytes(PROXY_BYTECODE),
        uups_creation_code=HexBytes(UUPS_PROXY_BYTECODE),
        genesis_timestamp=GENESIS_TIMESTAMP,
    )


@pytest.fixture()
def implementations(tmp_path):
    return ImplementationRegistry(tmp_path / "implementations.json")


@pytest.fixture()
def audit_log(tmp_path):
    return UpgradeLog(tmp_path / "upgrades.json")


@pytest.fixture()
def orchestrator(local_network, artifacts, implementations, audit_log):
    return create_orchestrator(
        network=local_network,
        artifacts=artifacts,
        sender=ADMIN,
        registry=implementations,
        audit_log=audit_log,
        poll_interval=0,
        timeout=5,
    )


@pytest.fixture()
def deployer(orchestrator):
    return orchestrator.deployer


@pytest.fixture()
def controller(orchestrator):
    return orchestrator.controller


@pytest.fixture()
def deployed_proxy(orchestrator):
    """A proxy initialized with CalsoftStaking 1.0.0."""
    return orchestrator.deploy_proxy("CalsoftStaking@1.0.0", caller=ADMIN)
