"""
Durable JSON documents on local disk.

Writes go to a sibling temp file that is then renamed over the target, so a
crash mid-write leaves the previous document intact.
"""
import json
import logging
import os
from pathlib import Path

from core.exceptions import PersistenceError

logger = logging.getLogger(__name__)


def ensure_parent_dir(path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def read_document(path: str | Path) -> dict | None:
    """
    Load a JSON object from disk.

    Returns None when the file does not exist yet. Raises PersistenceError when
    the file exists but cannot be read or is not a JSON object.
    """
    path = Path(path)
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise PersistenceError(f"cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise PersistenceError(f"{path} does not contain a JSON object")
    return data


def write_document(path: str | Path, data: dict):
    """Atomically replace `path` with `data` serialized as JSON."""
    path = Path(path)
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except (OSError, TypeError, ValueError) as e:
        raise PersistenceError(f"cannot write {path}: {e}") from e
