import threading
import uuid
from pathlib import Path
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from ape.logging import logger
from ape.utils import ZERO_ADDRESS
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from upgrades.constants import EIP1967_IMPLEMENTATION_SLOT
from upgrades.utils import _load_json, _write_json


class UpgradeRecord(NamedTuple):
    """A committed change of a proxy's implementation."""

    proxy: ChecksumAddress
    from_implementation: ChecksumAddress
    to_implementation: ChecksumAddress
    timestamp: int
    initiator: ChecksumAddress
    tx_hash: Optional[str] = None

    @property
    def is_initialization(self) -> bool:
        return self.from_implementation == ZERO_ADDRESS


class PendingUpgrade(NamedTuple):
    """An implementation change that was requested but is not yet known to be on chain."""

    id: str
    proxy: ChecksumAddress
    from_implementation: ChecksumAddress
    to_implementation: ChecksumAddress
    initiator: ChecksumAddress


class UpgradeEvent(NamedTuple):
    proxy: ChecksumAddress
    old_implementation: ChecksumAddress
    new_implementation: ChecksumAddress
    timestamp: int


EventSink = Callable[[UpgradeEvent], None]


class UpgradeLog:
    """
    Append-only audit trail of proxy upgrades.

    Changes are staged before their transaction is submitted and committed once
    the new pointer is confirmed, so an interrupted run leaves a pending entry
    behind instead of an unrecorded upgrade (see `reconcile`).
    """

    def __init__(self, filepath: Optional[Path] = None):
        self.filepath = filepath
        self._lock = threading.Lock()
        self._records: List[UpgradeRecord] = list()
        self._pending: Dict[str, PendingUpgrade] = dict()
        self._sinks: List[EventSink] = list()
        if filepath is not None and filepath.exists():
            self._load(filepath)

    def _load(self, filepath: Path) -> None:
        data = _load_json(filepath)
        self._records = [UpgradeRecord(**record) for record in data.get("records", [])]
        for item in data.get("pending", []):
            pending = PendingUpgrade(**item)
            self._pending[pending.id] = pending

    def _persist(self) -> None:
        if self.filepath is None:
            return
        data = {
            "records": [record._asdict() for record in self._records],
            "pending": [pending._asdict() for pending in self._pending.values()],
        }
        _write_json(data, self.filepath)

    def subscribe(self, sink: EventSink) -> None:
        """Registers a callable notified with an UpgradeEvent after every commit."""
        self._sinks.append(sink)

    def records(self, proxy: Optional[ChecksumAddress] = None) -> List[UpgradeRecord]:
        with self._lock:
            if proxy is None:
                return list(self._records)
            proxy = to_checksum_address(proxy)
            return [record for record in self._records if record.proxy == proxy]

    def pending(self) -> List[PendingUpgrade]:
        with self._lock:
            return list(self._pending.values())

    def stage(
        self,
        proxy: ChecksumAddress,
        from_implementation: ChecksumAddress,
        to_implementation: ChecksumAddress,
        initiator: ChecksumAddress,
    ) -> PendingUpgrade:
        pending = PendingUpgrade(
            id=uuid.uuid4().hex,
            proxy=to_checksum_address(proxy),
            from_implementation=to_checksum_address(from_implementation),
            to_implementation=to_checksum_address(to_implementation),
            initiator=to_checksum_address(initiator),
        )
        with self._lock:
            self._pending[pending.id] = pending
            try:
                self._persist()
            except Exception:
                del self._pending[pending.id]
                raise
        return pending

    def discard(self, pending: PendingUpgrade) -> None:
        with self._lock:
            if self._pending.pop(pending.id, None) is not None:
                self._persist()

    def commit(
        self, pending: PendingUpgrade, timestamp: int, tx_hash: Optional[str] = None
    ) -> UpgradeRecord:
        record = UpgradeRecord(
            proxy=pending.proxy,
            from_implementation=pending.from_implementation,
            to_implementation=pending.to_implementation,
            timestamp=int(timestamp),
            initiator=pending.initiator,
            tx_hash=tx_hash,
        )
        with self._lock:
            if pending.id not in self._pending:
                raise ValueError(f"Upgrade {pending.id} is not pending")
            del self._pending[pending.id]
            self._records.append(record)
            try:
                self._persist()
            except Exception:
                self._records.pop()
                self._pending[pending.id] = pending
                raise

        self._notify(record)
        return record

    def _notify(self, record: UpgradeRecord) -> None:
        event = UpgradeEvent(
            proxy=record.proxy,
            old_implementation=record.from_implementation,
            new_implementation=record.to_implementation,
            timestamp=record.timestamp,
        )
        for sink in self._sinks:
            try:
                sink(event)
            except Exception as e:
                # the record is already durable; sinks only mirror it
                logger.warning(f"Upgrade event sink {sink!r} failed: {e}")

    def reconcile(
        self, network, timestamp: int
    ) -> Tuple[List[UpgradeRecord], List[PendingUpgrade]]:
        """
        Resolves pending entries left by an interrupted run against the chain:
        committed if the proxy points at the staged implementation, discarded otherwise.
        """
        committed, discarded = list(), list()
        for pending in self.pending():
            word = network.read_storage(pending.proxy, EIP1967_IMPLEMENTATION_SLOT)
            if to_checksum_address(word[-20:]) == pending.to_implementation:
                committed.append(self.commit(pending, timestamp=timestamp))
            else:
                self.discard(pending)
                discarded.append(pending)
        return committed, discarded
