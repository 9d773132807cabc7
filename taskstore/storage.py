"""JSON file helpers shared by the stores.

Index and data files are replaced whole: the new content is written to a
temporary file in the same directory and moved into place with
``os.replace``, so a crash mid-write leaves the previous file intact.
Concurrent writers are not serialized; the last writer wins.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .exceptions import StorageError

logger = logging.getLogger("taskstore.storage")


def read_json(path: Path, default: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Load a JSON object from ``path``.

    Returns a copy of ``default`` (or an empty dict) when the file does not
    exist. Unreadable or malformed files raise :class:`StorageError`.
    """
    if not path.exists():
        return dict(default or {})
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error(f"Failed to read {path}: {e}")
        raise StorageError(f"Failed to read {path.name}: {e}") from e
    if not isinstance(data, dict):
        raise StorageError(f"Failed to read {path.name}: expected a JSON object")
    return data


def write_json(path: Path, data: Dict[str, Any]) -> None:
    """Atomically replace ``path`` with ``data`` serialized as indented JSON."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
                f.write("\n")
            os.replace(tmp_path, path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write {path}: {e}")
        raise StorageError(f"Failed to write {path.name}: {e}") from e
    logger.debug(f"Wrote {path}")


def remove_tree(path: Path) -> None:
    """Recursively delete a directory; a missing directory is not an error."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return
    except OSError as e:
        logger.error(f"Failed to remove {path}: {e}")
        raise StorageError(f"Failed to remove {path.name}: {e}") from e


def copy_tree(source: Path, destination: Path) -> None:
    try:
        shutil.copytree(source, destination, dirs_exist_ok=True)
    except OSError as e:
        logger.error(f"Failed to copy {source} to {destination}: {e}")
        raise StorageError(f"Failed to copy {source.name}: {e}") from e


def backup_stamp(moment: Optional[datetime] = None) -> str:
    """Second-precision UTC timestamp with colons dashed, e.g. ``2026-10-17T12-30-05``."""
    moment = moment or datetime.now(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S").replace(":", "-")


def backup_path(directory: Path, prefix: str, sanitized_name: str, stamp: Optional[str] = None) -> Path:
    """Return a not-yet-existing backup file path in ``directory``.

    Two backups of the same entity within one second get ``-1``, ``-2``, ...
    suffixes instead of overwriting each other.
    """
    stamp = stamp or backup_stamp()
    candidate = directory / f"{prefix}_{sanitized_name}_{stamp}.json"
    counter = 1
    while candidate.exists():
        candidate = directory / f"{prefix}_{sanitized_name}_{stamp}-{counter}.json"
        counter += 1
    return candidate


def write_backup(directory: Path, prefix: str, sanitized_name: str, payload: Dict[str, Any]) -> Path:
    """Write a backup snapshot and return its path."""
    path = backup_path(directory, prefix, sanitized_name)
    write_json(path, payload)
    logger.info(f"Backup written: {path}")
    return path
