import threading
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional

from ape.logging import logger
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from upgrades.artifacts import ImplementationArtifact
from upgrades.errors import RegistryConflict
from upgrades.layout import LayoutDescriptor
from upgrades.utils import _load_json, _write_json

ChainId = int
ContractName = str


class RegistryEntry(NamedTuple):
    """Represents a single published implementation."""

    chain_id: ChainId
    name: ContractName
    version: str
    address: ChecksumAddress
    code_hash: str
    layout_digest: str
    storage_layout: Dict[str, Any]
    tx_hash: Optional[str]
    block_number: Optional[int]
    deployer: Optional[str]

    @property
    def identifier(self) -> str:
        return f"{self.name}@{self.version}"

    @property
    def layout(self) -> LayoutDescriptor:
        return LayoutDescriptor.from_storage_layout(self.storage_layout)


def read_registry(filepath: Path) -> List[RegistryEntry]:
    data = _load_json(filepath)
    registry_entries = list()
    for chain_id, entries in data.items():
        for identifier, artifacts in entries.items():
            name, _, version = identifier.partition("@")
            registry_entry = RegistryEntry(
                chain_id=int(chain_id),
                name=name,
                version=version,
                address=artifacts["address"],
                code_hash=artifacts["code_hash"],
                layout_digest=artifacts["layout_digest"],
                storage_layout=artifacts["storage_layout"],
                tx_hash=artifacts.get("tx_hash"),
                block_number=artifacts.get("block_number"),
                deployer=artifacts.get("deployer"),
            )
            registry_entries.append(registry_entry)
    return registry_entries


def write_registry(entries: List[RegistryEntry], filepath: Path) -> Path:
    """Writes an implementations registry, replacing the file atomically."""

    # Sort registry entries to enforce common order
    entries = sorted(entries, key=lambda entry: (str(entry.chain_id), entry.identifier))

    data = defaultdict(dict)
    for entry in entries:
        data[str(entry.chain_id)][entry.identifier] = {
            "address": entry.address,
            "code_hash": entry.code_hash,
            "layout_digest": entry.layout_digest,
            "storage_layout": entry.storage_layout,
            "tx_hash": entry.tx_hash,
            "block_number": entry.block_number,
            "deployer": entry.deployer,
        }

    return _write_json(data, filepath)


class ImplementationRegistry:
    """
    Record of implementations published per chain, keyed by artifact identifier.
    Without a filepath the registry lives in memory.
    """

    def __init__(self, filepath: Optional[Path] = None):
        self.filepath = filepath
        self._lock = threading.Lock()
        self._entries: List[RegistryEntry] = list()
        if filepath is not None and filepath.exists():
            self._entries = read_registry(filepath)

    def entries(self, chain_id: Optional[ChainId] = None) -> List[RegistryEntry]:
        with self._lock:
            return [e for e in self._entries if chain_id is None or e.chain_id == chain_id]

    def find(
        self, chain_id: ChainId, code_hash: str, layout_digest: str
    ) -> Optional[RegistryEntry]:
        """Returns an implementation with identical bytecode and layout, if one was published."""
        for entry in self.entries(chain_id):
            if entry.code_hash == code_hash and entry.layout_digest == layout_digest:
                return entry
        return None

    def find_by_identifier(self, chain_id: ChainId, identifier: str) -> Optional[RegistryEntry]:
        for entry in self.entries(chain_id):
            if entry.identifier == identifier:
                return entry
        return None

    def find_by_address(
        self, chain_id: ChainId, address: ChecksumAddress
    ) -> Optional[RegistryEntry]:
        address = to_checksum_address(address)
        for entry in self.entries(chain_id):
            if entry.address == address:
                return entry
        return None

    def add(self, entry: RegistryEntry) -> RegistryEntry:
        with self._lock:
            for existing in self._entries:
                same_key = (existing.chain_id, existing.identifier) == (
                    entry.chain_id,
                    entry.identifier,
                )
                if not same_key:
                    continue
                if existing.address != entry.address:
                    raise RegistryConflict(
                        f"{entry.identifier} is already registered on chain {entry.chain_id} "
                        f"at {existing.address}"
                    )
                return existing

            self._entries.append(entry)
            if self.filepath is not None:
                write_registry(self._entries, self.filepath)
                logger.info(f"(i) Registered {entry.identifier} at {entry.address}")
        return entry

    def remove(self, entry: RegistryEntry) -> None:
        """Forgets an entry whose contract no longer exists (e.g. a reset local chain)."""
        with self._lock:
            self._entries = [e for e in self._entries if e != entry]
            if self.filepath is not None:
                write_registry(self._entries, self.filepath)

    def import_artifact(
        self,
        chain_id: ChainId,
        address: ChecksumAddress,
        artifact: ImplementationArtifact,
        code_hash: str,
    ) -> RegistryEntry:
        """Registers an implementation that was published outside of this tool."""
        entry = RegistryEntry(
            chain_id=chain_id,
            name=artifact.name,
            version=artifact.version,
            address=to_checksum_address(address),
            code_hash=code_hash,
            layout_digest=artifact.layout.digest(),
            storage_layout=artifact.layout.to_storage_layout(),
            tx_hash=None,
            block_number=None,
            deployer=None,
        )
        return self.add(entry)
