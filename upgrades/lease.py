import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from upgrades.constants import DEFAULT_LEASE_TIMEOUT
from upgrades.errors import LeaseUnavailable


class LeaseManager:
    """
    Exclusive, re-entrant leases keyed by proxy address. Only one thread may
    change a given proxy's implementation at a time; different proxies proceed
    independently.

    A proxy's lock is kept only while some thread holds or waits for its lease.
    """

    def __init__(self, timeout: float = DEFAULT_LEASE_TIMEOUT):
        self.timeout = timeout
        self._guard = threading.Lock()
        # address -> [lock, number of threads holding or waiting for it]
        self._locks: Dict[ChecksumAddress, List] = dict()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, address: ChecksumAddress) -> threading.RLock:
        with self._guard:
            entry = self._locks.setdefault(address, [threading.RLock(), 0])
            entry[1] += 1
            return entry[0]

    def _checkin(self, address: ChecksumAddress) -> None:
        with self._guard:
            entry = self._locks[address]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[address]

    @contextmanager
    def lease(self, address: str, timeout: Optional[float] = None) -> Iterator[ChecksumAddress]:
        address = to_checksum_address(address)
        lock = self._checkout(address)
        try:
            timeout = self.timeout if timeout is None else timeout
            if not lock.acquire(timeout=timeout):
                raise LeaseUnavailable(f"Could not acquire the upgrade lease for {address}")
            try:
                yield address
            finally:
                lock.release()
        finally:
            self._checkin(address)
