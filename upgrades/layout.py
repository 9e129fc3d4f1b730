import json
import re
import typing
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Sequence, Tuple

from web3 import Web3

from upgrades.constants import COMPATIBLE_TYPE_FAMILIES, STORAGE_SLOT_SIZE
from upgrades.errors import LayoutError, LayoutIssue

# solc storage encodings
INPLACE = "inplace"
MAPPING = "mapping"
DYNAMIC_ARRAY = "dynamic_array"
BYTES = "bytes"

_INTEGER = re.compile(r"^u?int(\d*)$")
_FIXED_BYTES = re.compile(r"^bytes(\d+)$")
_MAPPING = re.compile(r"^mapping\((.+?) => (.+)\)$")
_STATIC_ARRAY = re.compile(r"\[(\d+)\]$")


class StorageType(NamedTuple):
    """A type as described by the solc `storageLayout.types` table."""

    label: str
    encoding: str = INPLACE
    number_of_bytes: int = STORAGE_SLOT_SIZE
    members: Tuple["LayoutEntry", ...] = ()
    base: Optional["StorageType"] = None
    key: Optional["StorageType"] = None
    value: Optional["StorageType"] = None

    @property
    def family(self) -> str:
        """
        The label without any user-defined name,
        e.g. 'contract IERC20' -> 'contract', 'address payable' -> 'address payable'.
        """
        for prefix in ("contract ", "enum ", "struct "):
            if self.label.startswith(prefix):
                return prefix.strip()
        return self.label

    @property
    def is_struct(self) -> bool:
        return self.family == "struct"

    @property
    def is_static_array(self) -> bool:
        return self.encoding == INPLACE and self.base is not None

    @property
    def length(self) -> Optional[int]:
        match = _STATIC_ARRAY.search(self.label)
        return int(match.group(1)) if match else None


class LayoutEntry(NamedTuple):
    label: str
    slot: int
    offset: int
    type: StorageType

    @property
    def size(self) -> int:
        return self.type.number_of_bytes

    @property
    def position(self) -> Tuple[int, int]:
        return self.slot, self.offset


class LayoutDescriptor:
    """Ordered description of a contract's persistent storage variables."""

    def __init__(self, entries: Sequence[LayoutEntry]):
        self.entries = tuple(entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[LayoutEntry]:
        return iter(self.entries)

    def __getitem__(self, index):
        return self.entries[index]

    def __eq__(self, other) -> bool:
        return isinstance(other, LayoutDescriptor) and self.entries == other.entries

    def __repr__(self) -> str:
        labels = ", ".join(f"{e.label}:{e.type.label}" for e in self.entries)
        return f"LayoutDescriptor({labels})"

    def labels(self) -> List[str]:
        return [entry.label for entry in self.entries]

    def appended(self, *variables: Any) -> "LayoutDescriptor":
        """Returns a copy of this layout with extra variables packed after the last one."""
        slot, offset = _next_position(self.entries[-1]) if self.entries else (0, 0)
        return LayoutDescriptor(self.entries + tuple(_pack(variables, slot, offset)))

    @classmethod
    def from_storage_layout(cls, storage_layout: Dict[str, Any]) -> "LayoutDescriptor":
        """Loads a layout from solc's `storageLayout` output."""
        types = storage_layout.get("types") or dict()
        cache: Dict[str, StorageType] = dict()
        entries = [
            _entry_from_solc(item, types, cache) for item in storage_layout.get("storage", [])
        ]
        return cls(entries)

    @classmethod
    def from_compact(cls, variables: Sequence[Any]) -> "LayoutDescriptor":
        """
        Builds a layout from an ordered list of (label, type) pairs, or single-key
        dictionaries as written in YAML artifacts, packing variables into slots
        the same way solc does.
        """
        return cls(_pack(variables, slot=0, offset=0))

    def to_storage_layout(self) -> Dict[str, Any]:
        """Serializes the layout back into solc's `storageLayout` format."""
        types: Dict[str, Any] = dict()
        storage = [_entry_to_solc(entry, types) for entry in self.entries]
        return {"storage": storage, "types": types}

    def digest(self) -> str:
        canonical = json.dumps(self.to_storage_layout(), sort_keys=True, separators=(",", ":"))
        return Web3.keccak(text=canonical).hex()


#
# Type parsing
#


def parse_type(label: str) -> StorageType:
    """Parses a solidity type label into a StorageType (compact artifacts only)."""
    label = label.strip()
    match = _MAPPING.match(label)
    if match:
        key, value = parse_type(match.group(1)), parse_type(match.group(2))
        return StorageType(label=label, encoding=MAPPING, key=key, value=value)
    if label.endswith("[]"):
        return StorageType(label=label, encoding=DYNAMIC_ARRAY, base=parse_type(label[:-2]))
    match = _STATIC_ARRAY.search(label)
    if match:
        base = parse_type(label[: match.start()])
        length = int(match.group(1))
        return StorageType(
            label=label, number_of_bytes=_static_array_size(base, length), base=base
        )
    if label in ("string", "bytes"):
        return StorageType(label=label, encoding=BYTES)

    match = _INTEGER.match(label)
    if match:
        bits = int(match.group(1) or 256)
        return StorageType(label=label, number_of_bytes=bits // 8)
    match = _FIXED_BYTES.match(label)
    if match:
        return StorageType(label=label, number_of_bytes=int(match.group(1)))
    if label == "bool":
        return StorageType(label=label, number_of_bytes=1)
    if label in ("address", "address payable") or label.startswith("contract "):
        return StorageType(label=label, number_of_bytes=20)
    if label.startswith("enum "):
        return StorageType(label=label, number_of_bytes=1)

    raise ValueError(f"Unsupported type '{label}' in compact layout")


def _static_array_size(base: StorageType, length: int) -> int:
    """Bytes taken by `base[length]`; small elements share slots, the array fills whole slots."""
    if _is_packable(base):
        per_slot = STORAGE_SLOT_SIZE // base.number_of_bytes
        return -(-length // per_slot) * STORAGE_SLOT_SIZE
    slots_per_element = max(1, -(-base.number_of_bytes // STORAGE_SLOT_SIZE))
    return length * slots_per_element * STORAGE_SLOT_SIZE


def _is_packable(storage_type: StorageType) -> bool:
    return storage_type.encoding == INPLACE and storage_type.number_of_bytes < STORAGE_SLOT_SIZE


def _next_position(entry: LayoutEntry) -> Tuple[int, int]:
    """First (slot, offset) free after `entry`."""
    end = entry.offset + entry.size
    if _is_packable(entry.type) and end < STORAGE_SLOT_SIZE:
        return entry.slot, end
    return entry.slot + max(1, -(-entry.size // STORAGE_SLOT_SIZE)), 0


def _pack(variables: Sequence[Any], slot: int, offset: int) -> List[LayoutEntry]:
    entries = list()
    for variable in variables:
        label, type_label = _compact_variable(variable)
        storage_type = parse_type(type_label)
        size = storage_type.number_of_bytes
        if offset and (not _is_packable(storage_type) or offset + size > STORAGE_SLOT_SIZE):
            slot, offset = slot + 1, 0
        entry = LayoutEntry(label=label, slot=slot, offset=offset, type=storage_type)
        entries.append(entry)
        slot, offset = _next_position(entry)
    return entries


def _compact_variable(variable: Any) -> Tuple[str, str]:
    if isinstance(variable, dict):
        if len(variable) != 1:
            raise ValueError(f"Malformed layout variable {variable}")
        return list(variable.items())[0]
    label, type_label = variable
    return label, type_label


def _type_from_solc(type_id: str, types: Dict[str, Any], cache: Dict[str, StorageType]):
    if type_id in cache:
        return cache[type_id]
    try:
        info = types[type_id]
    except KeyError:
        raise ValueError(f"Type '{type_id}' missing from storage layout types")

    def resolve(key: str) -> Optional[StorageType]:
        return _type_from_solc(info[key], types, cache) if key in info else None

    storage_type = StorageType(
        label=info["label"],
        encoding=info.get("encoding", INPLACE),
        number_of_bytes=int(info.get("numberOfBytes", STORAGE_SLOT_SIZE)),
        members=tuple(_entry_from_solc(m, types, cache) for m in info.get("members", ())),
        base=resolve("base"),
        key=resolve("key"),
        value=resolve("value"),
    )
    cache[type_id] = storage_type
    return storage_type


def _entry_from_solc(item: Dict[str, Any], types, cache) -> LayoutEntry:
    return LayoutEntry(
        label=item["label"],
        slot=int(item["slot"]),
        offset=int(item.get("offset", 0)),
        type=_type_from_solc(item["type"], types, cache),
    )


def _type_id(storage_type: StorageType) -> str:
    name = re.sub(r"[^A-Za-z0-9]+", "_", storage_type.label).strip("_")
    return f"t_{name}_{storage_type.encoding}"


def _type_to_solc(storage_type: StorageType, types: Dict[str, Any]) -> str:
    type_id = _type_id(storage_type)
    if type_id in types:
        return type_id
    info: Dict[str, Any] = {
        "encoding": storage_type.encoding,
        "label": storage_type.label,
        "numberOfBytes": str(storage_type.number_of_bytes),
    }
    types[type_id] = info
    for key in ("base", "key", "value"):
        nested = getattr(storage_type, key)
        if nested is not None:
            info[key] = _type_to_solc(nested, types)
    if storage_type.members:
        info["members"] = [_entry_to_solc(member, types) for member in storage_type.members]
    return type_id


def _entry_to_solc(entry: LayoutEntry, types: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "label": entry.label,
        "slot": str(entry.slot),
        "offset": entry.offset,
        "type": _type_to_solc(entry.type, types),
    }


#
# Compatibility
#


def _same_family(old: StorageType, new: StorageType) -> bool:
    if old.family == new.family:
        return True
    return any(
        old.family in family and new.family in family for family in COMPATIBLE_TYPE_FAMILIES
    )


def is_storage_compatible(old: StorageType, new: StorageType) -> bool:
    """Returns True if `new` can occupy the storage written as `old` without reinterpretation."""
    if old.encoding != new.encoding:
        return False

    if old.encoding == MAPPING:
        return is_storage_compatible(old.key, new.key) and is_storage_compatible(
            old.value, new.value
        )
    if old.encoding == DYNAMIC_ARRAY:
        return is_storage_compatible(old.base, new.base)
    if old.encoding == BYTES:
        return old.label == new.label

    if old.number_of_bytes != new.number_of_bytes:
        return False
    if old.is_struct or new.is_struct:
        if not (old.is_struct and new.is_struct) or len(old.members) != len(new.members):
            return False
        return all(
            o.position == n.position and is_storage_compatible(o.type, n.type)
            for o, n in zip(old.members, new.members)
        )
    if old.is_static_array or new.is_static_array:
        if not (old.is_static_array and new.is_static_array) or old.length != new.length:
            return False
        return is_storage_compatible(old.base, new.base)

    return old.label == new.label or _same_family(old, new)


def _occurrence_keys(layout: LayoutDescriptor) -> List[Tuple[str, int]]:
    """
    (label, n) for the n-th variable named `label`. Inherited contracts
    may repeat a name, e.g. the `__gap` of every upgradeable base contract.
    """
    seen: Dict[str, int] = dict()
    keys = list()
    for entry in layout:
        keys.append((entry.label, seen.get(entry.label, 0)))
        seen[entry.label] = seen.get(entry.label, 0) + 1
    return keys


def diff(
    old_layout: Optional[LayoutDescriptor], new_layout: LayoutDescriptor
) -> List[LayoutError]:
    """Returns every incompatibility between two layouts, in storage order."""
    if old_layout is None:
        return list()

    issues = list()
    old_keys, new_keys = _occurrence_keys(old_layout), _occurrence_keys(new_layout)
    old_positions = {key: index for index, key in enumerate(old_keys)}
    new_positions = {key: index for index, key in enumerate(new_keys)}

    for index, (old_entry, new_entry) in enumerate(zip(old_layout, new_layout)):
        moved = (
            new_positions.get(old_keys[index], index) != index
            or old_positions.get(new_keys[index], index) != index
            or old_entry.position != new_entry.position
        )
        if moved:
            reason = LayoutIssue.REORDERED
        elif not is_storage_compatible(old_entry.type, new_entry.type):
            reason = LayoutIssue.TYPE_MISMATCH
        else:
            continue
        issues.append(
            LayoutError(
                index=index,
                old_type=old_entry.type.label,
                new_type=new_entry.type.label,
                reason=reason,
                label=old_entry.label,
            )
        )

    for index in range(len(new_layout), len(old_layout)):
        old_entry = old_layout[index]
        new_index = new_positions.get(old_keys[index])
        reason = LayoutIssue.REMOVED if new_index is None else LayoutIssue.REORDERED
        new_type = None if new_index is None else new_layout[new_index].type.label
        issues.append(
            LayoutError(
                index=index,
                old_type=old_entry.type.label,
                new_type=new_type,
                reason=reason,
                label=old_entry.label,
            )
        )

    return issues


def validate(old_layout: Optional[LayoutDescriptor], new_layout: LayoutDescriptor) -> None:
    """
    Checks that `new_layout` preserves every storage variable of `old_layout`.
    Variables appended after the old layout are always accepted; there is
    nothing to check for a first deployment (`old_layout` is None).
    """
    issues = diff(old_layout, new_layout)
    if issues:
        raise issues[0]


def describe(layout: LayoutDescriptor) -> typing.List[str]:
    return [
        f"[{index}] slot {entry.slot}+{entry.offset}: {entry.label} ({entry.type.label})"
        for index, entry in enumerate(layout)
    ]
