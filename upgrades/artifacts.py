import re
import typing
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Tuple

from upgrades.errors import ArtifactNotFound
from upgrades.layout import LayoutDescriptor
from upgrades.utils import _load_json, _load_yaml

ContractName = str
Version = str

DEFAULT_VERSION = "0.0.0"
VERSION_SEPARATOR = "@"


class ImplementationArtifact(NamedTuple):
    """Compiled implementation contract; never modified once published."""

    name: ContractName
    version: Version
    bytecode: str
    layout: LayoutDescriptor

    @property
    def identifier(self) -> str:
        return f"{self.name}{VERSION_SEPARATOR}{self.version}"


class ArtifactSource(NamedTuple):
    """A request for an artifact by name and, optionally, version."""

    name: ContractName
    version: Optional[Version] = None

    @classmethod
    def parse(cls, value: str) -> "ArtifactSource":
        """Parses 'Name' or 'Name@version'."""
        name, _, version = value.partition(VERSION_SEPARATOR)
        if not name:
            raise ValueError(f"Malformed artifact identifier '{value}'")
        return cls(name=name, version=version or None)

    def __str__(self) -> str:
        return f"{self.name}{VERSION_SEPARATOR}{self.version or 'latest'}"


def _version_key(version: Version) -> Tuple:
    parts = re.split(r"[.\-+]", version)
    return tuple((0, int(part), "") if part.isdigit() else (1, 0, part) for part in parts)


def _bytecode_from_json(data: typing.Dict) -> str:
    bytecode = data.get("bytecode", "")
    if isinstance(bytecode, dict):
        # foundry / hardhat style {"object": "0x..."}
        bytecode = bytecode.get("object", "")
    return bytecode


def artifact_from_json(data: typing.Dict) -> ImplementationArtifact:
    """Reads a compiled artifact that carries solc's `storageLayout` output."""
    try:
        name = data["contractName"]
        storage_layout = data["storageLayout"]
    except KeyError as e:
        raise ValueError(f"Compiled artifact is missing the {e} field.")
    return ImplementationArtifact(
        name=name,
        version=str(data.get("version", DEFAULT_VERSION)),
        bytecode=_bytecode_from_json(data),
        layout=LayoutDescriptor.from_storage_layout(storage_layout),
    )


def artifact_from_yaml(data: typing.Dict) -> ImplementationArtifact:
    """Reads a compact artifact: name, version, bytecode and an ordered `layout` list."""
    try:
        name = data["name"]
        bytecode = data["bytecode"]
    except KeyError as e:
        raise ValueError(f"Artifact is missing the {e} field.")
    if not isinstance(bytecode, str):
        # YAML reads an unquoted 0x... value as an integer
        raise ValueError(f"Bytecode of {name} must be a quoted hex string.")
    return ImplementationArtifact(
        name=name,
        version=str(data.get("version", DEFAULT_VERSION)),
        bytecode=bytecode,
        layout=LayoutDescriptor.from_compact(data.get("layout") or list()),
    )


class ArtifactRegistry:
    """Typed lookup of implementation artifacts by contract name and version."""

    def __init__(self, artifacts: typing.Iterable[ImplementationArtifact] = ()):
        self._artifacts: Dict[Tuple[ContractName, Version], ImplementationArtifact] = dict()
        for artifact in artifacts:
            self.register(artifact)

    def __len__(self) -> int:
        return len(self._artifacts)

    def __contains__(self, source) -> bool:
        try:
            self.resolve(source)
        except ArtifactNotFound:
            return False
        return True

    def register(self, artifact: ImplementationArtifact) -> None:
        key = (artifact.name, artifact.version)
        existing = self._artifacts.get(key)
        if existing is not None and existing != artifact:
            raise ValueError(
                f"Conflicting artifacts registered for {artifact.identifier}; "
                "publish a new version instead of modifying an existing one."
            )
        self._artifacts[key] = artifact

    def versions(self, name: ContractName) -> List[Version]:
        versions = [version for (n, version) in self._artifacts if n == name]
        return sorted(versions, key=_version_key)

    def resolve(
        self, source: typing.Union[ArtifactSource, str], version: Optional[Version] = None
    ) -> ImplementationArtifact:
        """Returns the artifact for `source`; the latest version if none is specified."""
        if isinstance(source, str):
            source = ArtifactSource.parse(source)
        version = version or source.version
        if version is None:
            versions = self.versions(source.name)
            if not versions:
                raise ArtifactNotFound(f"No artifact found for contract '{source.name}'")
            version = versions[-1]
        try:
            return self._artifacts[(source.name, version)]
        except KeyError:
            raise ArtifactNotFound(
                f"No artifact found for {source.name}{VERSION_SEPARATOR}{version}"
            )

    @classmethod
    def from_directory(cls, directory: Path) -> "ArtifactRegistry":
        """Loads every compiled (JSON) and compact (YAML) artifact below a directory."""
        if not directory.is_dir():
            raise ValueError(f"Artifacts directory {directory} does not exist.")

        registry = cls()
        for filepath in sorted(directory.rglob("*")):
            if filepath.suffix == ".json":
                data = _load_json(filepath)
                if "contractName" not in data:
                    continue  # not a compiled artifact (e.g. a registry)
                registry.register(artifact_from_json(data))
            elif filepath.suffix in (".yml", ".yaml"):
                registry.register(artifact_from_yaml(_load_yaml(filepath)))
        return registry
