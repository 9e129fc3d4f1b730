from pathlib import Path

from ethpm_types import MethodABI

import upgrades

#
# Filesystem
#

UPGRADES_DIR = Path(upgrades.__file__).parent
PARAMS_DIR = UPGRADES_DIR / "upgrade_params"
ARTIFACTS_DIR = UPGRADES_DIR / "compiled"

# registry and audit log, relative to the project the scripts run from
RECORDS_DIR = Path("upgrade-records")

IMPLEMENTATIONS_REGISTRY_FILENAME = "implementations.json"
AUDIT_LOG_FILENAME = "upgrades.json"

#
# Lifecycle
#

# passed instead of a proxy address to request a first deployment
NEW_PROXY = "new"

DEFAULT_POLL_INTERVAL = 2  # seconds
DEFAULT_CONFIRMATION_TIMEOUT = 120  # seconds
DEFAULT_LEASE_TIMEOUT = 30  # seconds

#
# Proxies
#

PROXY_CONTRACT_NAME = "UpgradeableProxy"

# EIP1967 slots - https://eips.ethereum.org/EIPS/eip-1967
EIP1967_IMPLEMENTATION_SLOT = 0x360894A13BA1A3210667C828492DB98DCA3E2076CC3735A920A3CA505D382BBC
EIP1967_ADMIN_SLOT = 0xB53127684A568B3173AE13B9F8A6016E243E63B6E8EE1178D6A717850B5D6103

INITIALIZE_ABI = MethodABI(
    type="function",
    name="initialize",
    stateMutability="nonpayable",
    inputs=[{"name": "implementation", "type": "address"}],
    outputs=[],
)

UPGRADE_TO_AND_CALL_ABI = MethodABI(
    type="function",
    name="upgradeToAndCall",
    stateMutability="payable",
    inputs=[
        {"name": "newImplementation", "type": "address"},
        {"name": "data", "type": "bytes"},
    ],
    outputs=[],
)

# UUPS proxies keep no admin slot; the implementation's owner authorizes upgrades
OWNER_ABI = MethodABI(
    type="function",
    name="owner",
    stateMutability="view",
    inputs=[],
    outputs=[{"name": "", "type": "address"}],
)

#
# Storage layout
#

STORAGE_SLOT_SIZE = 32  # bytes

# same-width type families that may replace one another in place
COMPATIBLE_TYPE_FAMILIES = (
    frozenset({"address", "address payable", "contract"}),
    frozenset({"enum", "uint8"}),
)
