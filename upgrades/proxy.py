import time
import typing
from enum import Enum
from typing import Dict, NamedTuple, Optional

from ape.logging import get_logger, logger
from ape.utils import EMPTY_BYTES32, ZERO_ADDRESS
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address
from ethpm_types import MethodABI
from hexbytes import HexBytes
from web3.auto import w3

from upgrades.audit import EventSink, UpgradeLog, UpgradeRecord
from upgrades.constants import (
    DEFAULT_CONFIRMATION_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    EIP1967_ADMIN_SLOT,
    EIP1967_IMPLEMENTATION_SLOT,
    INITIALIZE_ABI,
    OWNER_ABI,
    UPGRADE_TO_AND_CALL_ABI,
)
from upgrades.errors import (
    PROXY_CONTROLLER,
    AlreadyInitialized,
    CompilationInvalid,
    NetworkUnavailable,
    NotInitialized,
    ProxyNotFound,
    TransactionFailed,
    Unauthorized,
)
from upgrades.lease import LeaseManager
from upgrades.network import (
    ContractCall,
    NetworkClient,
    NetworkError,
    TransactionReverted,
    wait_for_receipt,
)

security_logger = get_logger("upgrades.security")


class ProxyState(Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"


class ProxyKind(Enum):
    ADMIN_SLOT = "admin-slot"
    UUPS = "uups"


class ProxyRecord(NamedTuple):
    """Snapshot of a proxy's EIP-1967 state."""

    address: ChecksumAddress
    implementation: ChecksumAddress
    initialized: bool
    admin: ChecksumAddress
    kind: ProxyKind = ProxyKind.ADMIN_SLOT

    @property
    def state(self) -> ProxyState:
        return ProxyState.ACTIVE if self.initialized else ProxyState.UNINITIALIZED


def _word_to_address(word: bytes) -> ChecksumAddress:
    return to_checksum_address(bytes(word)[-20:])


class ProxyController:
    """
    Sole writer of proxy implementation pointers.

    A pointer change and its audit entry are committed together under the
    proxy's lease: the change is staged in the audit log, submitted, confirmed
    by reading the implementation slot back, and only then committed.
    """

    def __init__(
        self,
        network: NetworkClient,
        audit_log: UpgradeLog,
        leases: Optional[LeaseManager] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
        sleep: typing.Callable[[float], None] = time.sleep,
    ):
        self.network = network
        self.audit_log = audit_log
        self.leases = leases if leases is not None else LeaseManager()
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._sleep = sleep
        self._records: Dict[ChecksumAddress, ProxyRecord] = dict()

    def subscribe(self, sink: EventSink) -> None:
        self.audit_log.subscribe(sink)

    def _read(self, address: ChecksumAddress, slot: int) -> bytes:
        try:
            return self.network.read_storage(address, slot)
        except NetworkError as e:
            raise NetworkUnavailable(str(e), component=PROXY_CONTROLLER) from e

    def _read_owner(self, address: ChecksumAddress) -> Optional[ChecksumAddress]:
        try:
            data = self.network.call(address, OWNER_ABI)
        except NetworkError as e:
            raise NetworkUnavailable(str(e), component=PROXY_CONTROLLER) from e
        except TransactionReverted:
            return None
        if len(data) != 32:
            return None
        (owner,) = w3.codec.decode(["address"], data)
        return to_checksum_address(owner)

    def load(self, address: str) -> ProxyRecord:
        """
        Reads the proxy's admin and implementation from chain state.
        The admin is the EIP-1967 admin slot, or, for a UUPS proxy which
        leaves that slot empty, the `owner()` of its implementation.
        """
        with self.leases.lease(address) as address:
            admin_word = self._read(address, EIP1967_ADMIN_SLOT)
            word = self._read(address, EIP1967_IMPLEMENTATION_SLOT)
            initialized = word != EMPTY_BYTES32
            if admin_word != EMPTY_BYTES32:
                admin, kind = _word_to_address(admin_word), ProxyKind.ADMIN_SLOT
            else:
                admin = self._read_owner(address) if initialized else None
                if admin is None or admin == ZERO_ADDRESS:
                    raise ProxyNotFound(
                        f"Admin slot for contract at {address} is empty and it has no owner. "
                        "Are you sure this is an EIP1967-compatible proxy?"
                    )
                kind = ProxyKind.UUPS
            record = ProxyRecord(
                address=address,
                implementation=_word_to_address(word) if initialized else ZERO_ADDRESS,
                initialized=initialized,
                admin=admin,
                kind=kind,
            )
            self._records[address] = record
        return record

    def current(self, address: str) -> ProxyRecord:
        """Last committed record of a proxy, loading it on first use."""
        with self.leases.lease(address) as address:
            return self._records.get(address) or self.load(address)

    def create(
        self, proxy_bytecode: bytes, admin: ChecksumAddress, sender: ChecksumAddress
    ) -> ProxyRecord:
        """Publishes a new, uninitialized proxy administered by `admin`."""
        admin = to_checksum_address(admin)
        constructor_args = w3.codec.encode(["address"], [admin])
        logger.info(f"Deploying proxy administered by {admin}...")
        try:
            tx_hash = self.network.publish_bytecode(
                HexBytes(proxy_bytecode) + constructor_args, sender=to_checksum_address(sender)
            )
        except NetworkError as e:
            raise NetworkUnavailable(str(e), component=PROXY_CONTROLLER) from e
        except TransactionReverted as e:
            raise CompilationInvalid(
                f"Proxy creation reverted: {e}", component=PROXY_CONTROLLER
            ) from e

        receipt = wait_for_receipt(
            self.network,
            tx_hash,
            timeout=self.timeout,
            poll_interval=self.poll_interval,
            sleep=self._sleep,
            component=PROXY_CONTROLLER,
        )
        if not receipt.succeeded or not receipt.contract_address:
            raise CompilationInvalid(
                f"Proxy creation failed in {tx_hash}", component=PROXY_CONTROLLER
            )

        record = self.load(receipt.contract_address)
        if record.admin != admin:
            raise TransactionFailed(
                f"Proxy at {record.address} reports admin {record.admin}, expected {admin}"
            )
        logger.success(f"Proxy deployed at {record.address}")
        return record

    def authorize(self, record: ProxyRecord, caller: ChecksumAddress) -> None:
        if caller != record.admin:
            security_logger.warning(
                f"UNAUTHORIZED upgrade attempt on proxy {record.address} by {caller} "
                f"(admin is {record.admin})"
            )
            raise Unauthorized(proxy=record.address, caller=caller, admin=record.admin)

    def initialize(
        self, address: str, implementation: str, caller: str
    ) -> UpgradeRecord:
        """
        One-way UNINITIALIZED -> ACTIVE transition; sets the first implementation.
        Raises AlreadyInitialized for a proxy that already has one.
        """
        implementation = to_checksum_address(implementation)
        caller = to_checksum_address(caller)
        with self.leases.lease(address) as address:
            record = self.load(address)
            if record.initialized:
                raise AlreadyInitialized(
                    f"Proxy {address} is already initialized with {record.implementation}"
                )
            self.authorize(record, caller)
            return self._commit(record, implementation, caller, INITIALIZE_ABI, (implementation,))

    def repoint(self, address: str, new_implementation: str, caller: str) -> UpgradeRecord:
        """
        Points an ACTIVE proxy at a new implementation.
        Only the proxy admin may do so; unauthorized calls never reach the chain.
        """
        new_implementation = to_checksum_address(new_implementation)
        caller = to_checksum_address(caller)
        with self.leases.lease(address) as address:
            record = self.load(address)
            self.authorize(record, caller)
            if not record.initialized:
                raise NotInitialized(f"Proxy {address} has no implementation yet")
            args = (new_implementation, b"")
            return self._commit(record, new_implementation, caller, UPGRADE_TO_AND_CALL_ABI, args)

    def _reconcile(self, address: ChecksumAddress) -> None:
        """Resolves this proxy's pending audit entries left by an interrupted commit."""
        for pending in self.audit_log.pending():
            if pending.proxy != address:
                continue
            word = self._read(address, EIP1967_IMPLEMENTATION_SLOT)
            if _word_to_address(word) == pending.to_implementation:
                logger.warning(f"Recovering unrecorded upgrade of {address}")
                self.audit_log.commit(pending, timestamp=int(time.time()))
            else:
                self.audit_log.discard(pending)

    def _commit(
        self,
        record: ProxyRecord,
        implementation: ChecksumAddress,
        caller: ChecksumAddress,
        method: MethodABI,
        args: typing.Tuple,
    ) -> UpgradeRecord:
        self._reconcile(record.address)
        pending = self.audit_log.stage(
            proxy=record.address,
            from_implementation=record.implementation,
            to_implementation=implementation,
            initiator=caller,
        )
        call = ContractCall(to=record.address, method=method, args=args, sender=caller)
        try:
            receipt = self.network.submit_transaction(call)
        except TransactionReverted as e:
            self.audit_log.discard(pending)
            raise TransactionFailed(f"{method.name} on {record.address} reverted: {e}") from e
        except NetworkError as e:
            # the transaction may or may not have landed; the staged entry is
            # resolved against the chain by the next commit or `reconcile`
            raise NetworkUnavailable(str(e), component=PROXY_CONTROLLER) from e

        pointer = _word_to_address(self._read(record.address, EIP1967_IMPLEMENTATION_SLOT))
        if not receipt.succeeded or pointer != implementation:
            self.audit_log.discard(pending)
            raise TransactionFailed(
                f"{method.name} on {record.address} did not take effect "
                f"(implementation is {pointer}, expected {implementation})"
            )

        upgrade_record = self.audit_log.commit(
            pending, timestamp=receipt.timestamp, tx_hash=receipt.tx_hash
        )
        self._records[record.address] = record._replace(
            implementation=implementation, initialized=True
        )
        logger.success(
            f"Proxy {record.address} now points to {implementation} "
            f"(was {record.implementation})"
        )
        return upgrade_record
