import threading
import time
import typing
from typing import NamedTuple, Optional

from ape.logging import logger
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address
from hexbytes import HexBytes
from web3 import Web3

from upgrades.artifacts import ImplementationArtifact
from upgrades.constants import DEFAULT_CONFIRMATION_TIMEOUT, DEFAULT_POLL_INTERVAL
from upgrades.errors import CompilationInvalid, NetworkUnavailable, UpgradeCancelled
from upgrades.network import (
    NetworkClient,
    NetworkError,
    TransactionReverted,
    wait_for_receipt,
)
from upgrades.registry import ImplementationRegistry, RegistryEntry


class PublishedImplementation(NamedTuple):
    artifact: ImplementationArtifact
    address: ChecksumAddress
    tx_hash: Optional[str]
    block_number: Optional[int]
    reused: bool = False


def validated_bytecode(artifact: ImplementationArtifact) -> HexBytes:
    """Decodes the artifact's bytecode; raises CompilationInvalid if it cannot be published."""
    try:
        bytecode = HexBytes(artifact.bytecode)
    except (TypeError, ValueError):
        if "__" in str(artifact.bytecode):
            raise CompilationInvalid(f"{artifact.identifier} bytecode has unlinked libraries")
        raise CompilationInvalid(f"{artifact.identifier} bytecode is not valid hex")
    if not bytecode:
        raise CompilationInvalid(
            f"{artifact.identifier} has no bytecode; is it an abstract contract or an interface?"
        )
    return bytecode


def code_hash(bytecode: bytes) -> str:
    return Web3.keccak(bytecode).hex()


class ImplementationDeployer:
    """
    Publishes implementation contracts and waits for their confirmation.
    An artifact whose bytecode and layout were already published on the
    connected chain is reused instead of being published again.
    """

    def __init__(
        self,
        network: NetworkClient,
        registry: ImplementationRegistry,
        sender: ChecksumAddress,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        sleep: typing.Callable[[float], None] = time.sleep,
    ):
        self.network = network
        self.registry = registry
        self.sender = to_checksum_address(sender)
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._sleep = sleep

    def find_existing(
        self, artifact: ImplementationArtifact, bytecode_hash: str
    ) -> Optional[RegistryEntry]:
        entry = self.registry.find(
            chain_id=self.network.chain_id,
            code_hash=bytecode_hash,
            layout_digest=artifact.layout.digest(),
        )
        if entry is None:
            return None
        try:
            code = self.network.get_code(entry.address)
        except NetworkError as e:
            raise NetworkUnavailable(str(e)) from e
        if not code:
            logger.warning(
                f"Registered {entry.identifier} at {entry.address} has no code; redeploying."
            )
            self.registry.remove(entry)
            return None
        return entry

    def deploy(
        self, artifact: ImplementationArtifact, cancel: Optional[threading.Event] = None
    ) -> PublishedImplementation:
        bytecode = validated_bytecode(artifact)
        bytecode_hash = code_hash(bytecode)

        existing = self.find_existing(artifact, bytecode_hash)
        if existing is not None:
            logger.info(
                f"(i) Reusing {existing.identifier} already published at {existing.address}"
            )
            return PublishedImplementation(
                artifact=artifact,
                address=existing.address,
                tx_hash=existing.tx_hash,
                block_number=existing.block_number,
                reused=True,
            )

        published = self.registry.find_by_identifier(self.network.chain_id, artifact.identifier)
        if published is not None:
            # same identifier, different content
            raise CompilationInvalid(
                f"{artifact.identifier} was already published at {published.address} with "
                "different bytecode or layout; publish it under a new version."
            )

        if cancel is not None and cancel.is_set():
            raise UpgradeCancelled(f"Deployment of {artifact.identifier} cancelled")

        logger.info(f"Publishing {artifact.identifier} ({len(bytecode)} bytes)...")
        try:
            tx_hash = self.network.publish_bytecode(bytecode, sender=self.sender)
        except NetworkError as e:
            raise NetworkUnavailable(str(e)) from e
        except TransactionReverted as e:
            raise CompilationInvalid(f"Creation of {artifact.identifier} reverted: {e}") from e

        receipt = wait_for_receipt(
            self.network,
            tx_hash,
            timeout=self.timeout,
            poll_interval=self.poll_interval,
            sleep=self._sleep,
        )
        if not receipt.succeeded or not receipt.contract_address:
            raise CompilationInvalid(f"Creation of {artifact.identifier} failed in {tx_hash}")

        address = to_checksum_address(receipt.contract_address)
        self.registry.add(
            RegistryEntry(
                chain_id=self.network.chain_id,
                name=artifact.name,
                version=artifact.version,
                address=address,
                code_hash=bytecode_hash,
                layout_digest=artifact.layout.digest(),
                storage_layout=artifact.layout.to_storage_layout(),
                tx_hash=receipt.tx_hash,
                block_number=receipt.block_number,
                deployer=self.sender,
            )
        )
        logger.success(f"{artifact.identifier} published at {address}")
        return PublishedImplementation(
            artifact=artifact,
            address=address,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
        )
