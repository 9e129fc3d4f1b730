# Usage:
#  > ape run rehearse_upgrade
#
# Replays the configured deployment and upgrade against an in-process chain
# before it is run on a live network.

from upgrades.artifacts import ArtifactRegistry
from upgrades.constants import PARAMS_DIR
from upgrades.deployer import validated_bytecode
from upgrades.layout import describe
from upgrades.local import LocalNetwork
from upgrades.orchestrator import create_orchestrator
from upgrades.params import UpgradeParameters

PARAMS_FILEPATH = PARAMS_DIR / "calsoft" / "upgrade-staking.yml"
REHEARSAL_ADMIN = "0x861aa915C785dEe04684444560fC7A2AB43a1543"


def main():
    params = UpgradeParameters.from_yaml(PARAMS_FILEPATH)
    artifacts = ArtifactRegistry.from_directory(params.artifacts_dir)
    proxy_artifact = artifacts.resolve(params.proxy_contract)
    network = LocalNetwork(proxy_creation_code=validated_bytecode(proxy_artifact))
    orchestrator = create_orchestrator(
        network=network,
        artifacts=artifacts,
        sender=REHEARSAL_ADMIN,
        proxy_contract=params.proxy_contract,
        poll_interval=0,
    )

    # Deploy the current implementation behind a fresh proxy
    previous = params.previous or params.implementation
    deployed = orchestrator.deploy_proxy(previous, caller=REHEARSAL_ADMIN)
    print(f"Deployed {previous} behind proxy {deployed.proxy}")

    # Upgrade it the way the live run would
    upgraded = orchestrator.upgrade(deployed.proxy, params.implementation, caller=REHEARSAL_ADMIN)
    print(
        f"Upgraded proxy {upgraded.proxy} from {upgraded.from_implementation} "
        f"to {upgraded.to_implementation}"
    )
    for line in describe(artifacts.resolve(params.implementation).layout):
        print(f"\t{line}")
