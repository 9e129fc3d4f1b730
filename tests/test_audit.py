import json

import pytest
from ape.utils import EMPTY_BYTES32, ZERO_ADDRESS
from eth_utils import to_checksum_address

from tests.conftest import ADMIN, STRANGER
from upgrades.audit import UpgradeLog
from upgrades.constants import EIP1967_IMPLEMENTATION_SLOT

PROXY = to_checksum_address("0x9f8bdd838d5a6a90f921b11b65a4e7cd9adbc808")
V1 = to_checksum_address("0x5fbdb2315678afecb367f032d93f642f64180aa3")
V2 = to_checksum_address("0xe7f1725e7734ce288f8367e1bb143e90bb3f0512")


class ImplementationSlots:
    """Answers implementation slot reads from a fixed mapping of proxy to implementation."""

    def __init__(self, pointers):
        self.pointers = pointers

    def read_storage(self, address, slot):
        assert slot == EIP1967_IMPLEMENTATION_SLOT
        implementation = self.pointers.get(address)
        if implementation is None:
            return EMPTY_BYTES32
        return bytes(12) + bytes.fromhex(implementation[2:])


def test_commit(tmp_path):
    filepath = tmp_path / "upgrades.json"
    audit_log = UpgradeLog(filepath)
    pending = audit_log.stage(PROXY, ZERO_ADDRESS, V1, initiator=ADMIN)
    assert audit_log.pending() == [pending]
    assert audit_log.records() == []

    record = audit_log.commit(pending, timestamp=1_700_000_000, tx_hash="0xabc")
    assert record.is_initialization
    assert record.to_implementation == V1
    assert audit_log.pending() == []
    assert audit_log.records(PROXY) == [record]

    data = json.loads(filepath.read_text())
    assert data["pending"] == []
    assert data["records"] == [record._asdict()]

    reloaded = UpgradeLog(filepath)
    assert reloaded.records() == [record]


def test_records_by_proxy():
    audit_log = UpgradeLog()
    first = audit_log.commit(audit_log.stage(PROXY, ZERO_ADDRESS, V1, ADMIN), timestamp=1)
    audit_log.commit(audit_log.stage(STRANGER, ZERO_ADDRESS, V2, ADMIN), timestamp=2)
    assert audit_log.records(PROXY.lower()) == [first]
    assert len(audit_log.records()) == 2


def test_discard(tmp_path):
    filepath = tmp_path / "upgrades.json"
    audit_log = UpgradeLog(filepath)
    pending = audit_log.stage(PROXY, V1, V2, initiator=ADMIN)
    audit_log.discard(pending)
    assert audit_log.pending() == []
    assert UpgradeLog(filepath).pending() == []

    with pytest.raises(ValueError):
        audit_log.commit(pending, timestamp=1)
    assert audit_log.records() == []


def test_pending_entries_survive_restart(tmp_path):
    filepath = tmp_path / "upgrades.json"
    pending = UpgradeLog(filepath).stage(PROXY, V1, V2, initiator=ADMIN)
    assert UpgradeLog(filepath).pending() == [pending]


def test_reconcile(tmp_path):
    filepath = tmp_path / "upgrades.json"
    audit_log = UpgradeLog(filepath)
    landed = audit_log.stage(PROXY, V1, V2, initiator=ADMIN)
    lost = audit_log.stage(STRANGER, ZERO_ADDRESS, V1, initiator=ADMIN)

    network = ImplementationSlots({PROXY: V2})
    committed, discarded = UpgradeLog(filepath).reconcile(network, timestamp=42)
    assert [(r.proxy, r.to_implementation, r.timestamp) for r in committed] == [(PROXY, V2, 42)]
    assert discarded == [lost]

    reloaded = UpgradeLog(filepath)
    assert reloaded.pending() == []
    assert reloaded.records()[0].from_implementation == landed.from_implementation


def test_failing_sink_does_not_lose_the_record(tmp_path):
    audit_log = UpgradeLog(tmp_path / "upgrades.json")
    events = list()

    def broken_sink(event):
        raise RuntimeError("sink is down")

    audit_log.subscribe(broken_sink)
    audit_log.subscribe(events.append)

    record = audit_log.commit(audit_log.stage(PROXY, V1, V2, ADMIN), timestamp=7)
    assert audit_log.records() == [record]
    assert [(e.old_implementation, e.new_implementation, e.timestamp) for e in events] == [
        (V1, V2, 7)
    ]


def test_failed_write_keeps_entry_pending(tmp_path):
    filepath = tmp_path / "upgrades.json"
    audit_log = UpgradeLog(filepath)
    pending = audit_log.stage(PROXY, V1, V2, initiator=ADMIN)

    # the log cannot be replaced while its path is a directory
    filepath.unlink()
    filepath.mkdir()
    with pytest.raises(OSError):
        audit_log.commit(pending, timestamp=1)
    assert audit_log.pending() == [pending]
    assert audit_log.records() == []
