"""
store.py

Atomic on-disk persistence of profiles.

One file per profile, <data_dir>/<name>.json, holding the canonical
single-element array [ {key: value, ...} ] that vMix polls. Writes go to a
temporary file in the same directory and are os.replace()d over the target,
so a reader opening the target sees either the old or the new file, never a
partial one.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from .errors import ParseError, StorageError, ValidationError

log = logging.getLogger(__name__)

PROFILE_NAME_RE = re.compile(r"[a-zA-Z0-9_-]+")
PROFILE_SUFFIX = ".json"


def is_valid_profile_name(name) -> bool:
    return isinstance(name, str) and PROFILE_NAME_RE.fullmatch(name) is not None


def check_profile_name(name) -> str:
    if not is_valid_profile_name(name):
        raise ValidationError("Invalid profile name")
    return name


def decode_profile(raw) -> dict:
    """Parse the canonical file content (bytes or str) into the item mapping."""
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
    except ValueError as e:
        raise ParseError() from e
    if not isinstance(data, list):
        raise ParseError()
    if not data:
        return {}
    items = data[0]
    if not isinstance(items, dict):
        raise ParseError()
    return items


def encode_profile(items: dict) -> str:
    return json.dumps([items], indent=2, ensure_ascii=False)


class AtomicStore:
    def __init__(self, data_dir):
        self.data_dir = Path(data_dir)
        self._locks: Dict[str, asyncio.Lock] = {}

    def ensure_dir(self) -> None:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError.from_os_error(e) from e

    def profile_path(self, name: str) -> Path:
        return self.data_dir / f"{check_profile_name(name)}{PROFILE_SUFFIX}"

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    # -----------------------------
    # Blocking helpers (run via asyncio.to_thread)
    # -----------------------------
    def _read_sync(self, path: Path) -> Optional[dict]:
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError.from_os_error(e) from e
        return decode_profile(raw)

    def _write_sync(self, path: Path, payload: str) -> None:
        self.ensure_dir()
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=str(path.parent))
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as e:
            raise StorageError.from_os_error(e) from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    def _delete_sync(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError.from_os_error(e) from e

    def _list_sync(self) -> List[str]:
        try:
            names = [p.stem for p in self.data_dir.glob(f"*{PROFILE_SUFFIX}") if p.is_file()]
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageError.from_os_error(e) from e
        return sorted(n for n in names if is_valid_profile_name(n))

    # -----------------------------
    # Public API
    # -----------------------------
    async def read(self, name: str) -> Optional[dict]:
        """Return the profile's items, or None when the profile does not exist."""
        path = self.profile_path(name)
        try:
            return await asyncio.to_thread(self._read_sync, path)
        except ParseError:
            log.error("Failed to parse profile data: %s", path)
            raise
        except StorageError as e:
            log.error("Failed to read profile data: %s (%s)", path, e.detail)
            raise

    async def write(self, name: str, items: dict) -> Path:
        path = self.profile_path(name)
        payload = encode_profile(items)
        async with self._lock_for(name):
            try:
                await asyncio.to_thread(self._write_sync, path, payload)
            except StorageError as e:
                log.error("Atomic write failed: %s (%s)", path, e.detail)
                raise
        log.debug("Data written to %s", path)
        return path

    async def delete(self, name: str) -> bool:
        """Remove the profile file. Missing file is success; returns whether a file was removed."""
        path = self.profile_path(name)
        async with self._lock_for(name):
            removed = await asyncio.to_thread(self._delete_sync, path)
        log.debug("Deleted file: %s (existed=%s)", path, removed)
        return removed

    async def list_profiles(self) -> List[str]:
        return await asyncio.to_thread(self._list_sync)
