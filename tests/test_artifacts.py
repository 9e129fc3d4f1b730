import json

import pytest

from tests.conftest import STAKING_V1_LAYOUT, make_artifact
from upgrades.artifacts import (
    ArtifactRegistry,
    ArtifactSource,
    artifact_from_json,
    artifact_from_yaml,
)
from upgrades.constants import ARTIFACTS_DIR
from upgrades.errors import ArtifactNotFound
from upgrades.layout import validate


def test_artifact_source():
    assert ArtifactSource.parse("CalsoftStaking@2.0.0") == ArtifactSource("CalsoftStaking", "2.0.0")
    assert ArtifactSource.parse("CalsoftStaking") == ArtifactSource("CalsoftStaking", None)
    assert str(ArtifactSource("CalsoftStaking")) == "CalsoftStaking@latest"
    with pytest.raises(ValueError):
        ArtifactSource.parse("@1.0.0")


def test_resolve_latest_version():
    registry = ArtifactRegistry(
        make_artifact(version, STAKING_V1_LAYOUT) for version in ("1.0.0", "10.0.0", "2.0.0")
    )
    assert registry.versions("CalsoftStaking") == ["1.0.0", "2.0.0", "10.0.0"]
    assert registry.resolve("CalsoftStaking").version == "10.0.0"
    assert registry.resolve("CalsoftStaking@2.0.0").version == "2.0.0"
    assert registry.resolve(ArtifactSource("CalsoftStaking"), version="1.0.0").version == "1.0.0"
    assert "CalsoftStaking@10.0.0" in registry
    assert "CalsoftStaking@3.0.0" not in registry


def test_unknown_artifact():
    registry = ArtifactRegistry([make_artifact("1.0.0", STAKING_V1_LAYOUT)])
    with pytest.raises(ArtifactNotFound) as error:
        registry.resolve("CalsoftStaking@9.9.9")
    assert error.value.to_dict()["component"] == "artifacts"

    with pytest.raises(ArtifactNotFound):
        registry.resolve("Coordinator")


def test_published_artifacts_are_immutable():
    artifact = make_artifact("1.0.0", STAKING_V1_LAYOUT)
    registry = ArtifactRegistry([artifact])
    registry.register(artifact)  # same artifact again
    assert len(registry) == 1

    modified = artifact._replace(bytecode="0x60806040")
    with pytest.raises(ValueError, match="new version"):
        registry.register(modified)


def test_artifact_from_json():
    data = {
        "contractName": "CalsoftStaking",
        "version": "1.1.0",
        "bytecode": {"object": "0x6080604052"},
        "storageLayout": {
            "storage": [
                {"label": "owner", "offset": 0, "slot": "0", "type": "t_address"},
            ],
            "types": {
                "t_address": {"encoding": "inplace", "label": "address", "numberOfBytes": "20"},
            },
        },
    }
    artifact = artifact_from_json(data)
    assert artifact.identifier == "CalsoftStaking@1.1.0"
    assert artifact.bytecode == "0x6080604052"
    assert artifact.layout.labels() == ["owner"]

    del data["storageLayout"]
    with pytest.raises(ValueError, match="storageLayout"):
        artifact_from_json(data)


def test_artifact_from_yaml_requires_quoted_bytecode():
    with pytest.raises(ValueError, match="quoted"):
        artifact_from_yaml({"name": "CalsoftStaking", "version": "1.0.0", "bytecode": 0x6080})
    with pytest.raises(ValueError, match="bytecode"):
        artifact_from_yaml({"name": "CalsoftStaking", "version": "1.0.0"})


def test_from_directory(tmp_path):
    compiled = {
        "contractName": "CalsoftStaking",
        "version": "1.0.0",
        "bytecode": "0x6080604052",
        "storageLayout": {"storage": [], "types": {}},
    }
    (tmp_path / "build").mkdir()
    (tmp_path / "build" / "CalsoftStaking.json").write_text(json.dumps(compiled))
    # registries and audit logs share the directory and are skipped
    (tmp_path / "implementations.json").write_text(json.dumps({"5": {}}))
    (tmp_path / "CalsoftStaking-2.0.0.yml").write_text(
        "name: CalsoftStaking\n"
        "version: 2.0.0\n"
        'bytecode: "0x60806040526001"\n'
        "layout:\n"
        "  - owner: address\n"
    )

    registry = ArtifactRegistry.from_directory(tmp_path)
    assert registry.versions("CalsoftStaking") == ["1.0.0", "2.0.0"]
    assert registry.resolve("CalsoftStaking").layout.labels() == ["owner"]

    with pytest.raises(ValueError):
        ArtifactRegistry.from_directory(tmp_path / "missing")


def test_bundled_artifacts():
    registry = ArtifactRegistry.from_directory(ARTIFACTS_DIR)
    assert registry.versions("CalsoftStaking") == ["1.0.0", "2.0.0"]
    assert "UpgradeableProxy" in registry

    v1 = registry.resolve("CalsoftStaking@1.0.0")
    v2 = registry.resolve("CalsoftStaking@2.0.0")
    validate(v1.layout, v2.layout)
