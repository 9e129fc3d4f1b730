import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from ape.logging import logger

STANDARD_JSON_FORMAT = {"indent": 4, "separators": (",", ": ")}


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def _load_json(filepath: Path) -> dict:
    """Loads a JSON file."""
    with open(filepath, "r") as file:
        return json.load(file)


def _write_json(data: Any, filepath: Path) -> Path:
    """
    Writes JSON through a temporary file in the same directory so readers
    never observe a partially written file.
    """
    filepath.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=filepath.parent, suffix=".temp.json")
    try:
        with os.fdopen(fd, "w") as file:
            json.dump(data, file, **STANDARD_JSON_FORMAT)
        os.replace(temp_path, filepath)
    except Exception:
        Path(temp_path).unlink(missing_ok=True)
        raise
    return filepath


def validate_config(
    config: Dict, connected_chain_id: Optional[int] = None, live_network: bool = False
) -> None:
    """
    Checks the sections of an upgrade parameters file and, when connected
    to a live network, that it targets the connected chain.
    """
    logger.info("Validating parameters YAML...")

    deployment = config.get("deployment")
    if not deployment:
        raise ValueError("deployment is not set in params file.")

    config_chain_id = deployment.get("chain_id")
    if not config_chain_id:
        raise ValueError("chain_id is not set in params file.")

    proxy = config.get("proxy")
    if not proxy or not proxy.get("address"):
        raise ValueError("proxy address is not set in params file.")

    implementation = config.get("implementation")
    if not implementation or not implementation.get("name"):
        raise ValueError("implementation name is not set in params file.")

    config_chain_id = int(config_chain_id)
    chain_mismatch = connected_chain_id is not None and config_chain_id != connected_chain_id
    if chain_mismatch and live_network:
        raise ValueError(
            f"chain_id in params file ({config_chain_id}) does not match "
            f"chain_id of current network ({connected_chain_id})."
        )
