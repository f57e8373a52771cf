"""
service.py

ProfileService: the one object that owns profile state for a process.

It holds the AtomicStore, the ProfileCache and the ChangeNotifier and runs
every mutation as read -> modify -> persist -> invalidate cache -> notify.
Validation always happens in the same order:

  1. profile name shape
  2. required fields
  3. existence / conflict against the current items
  4. persistence
  5. cache invalidation and change notification

Steps 1-3 never touch storage. Step 5 only runs after step 4 succeeded.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import List, Optional

from .cache import CacheKey, ProfileCache
from .config import Config
from .errors import Conflict, NotFound, ParseError, ValidationError
from .notifier import ChangeNotifier
from .render import content_type, filter_items, format_data, is_scalar, normalize_format, validate_data
from .store import AtomicStore, check_profile_name

log = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


# A request body field that was not sent at all (null is a real value).
MISSING = _Missing()


@dataclass
class Rendered:
    body: str
    content_type: str
    etag: str
    cached: bool = False


def _check_key(key) -> str:
    if not isinstance(key, str) or not key:
        raise ValidationError("Key and value are required")
    return key


def _check_value(value, message: str = "Value is required"):
    if value is MISSING:
        raise ValidationError(message)
    if not is_scalar(value):
        raise ValidationError("Value must be a string, number, boolean, or null")
    return value


class ProfileService:
    def __init__(self, store: AtomicStore, cache: Optional[ProfileCache] = None,
                 notifier: Optional[ChangeNotifier] = None):
        self.store = store
        self.cache = cache if cache is not None else ProfileCache()
        self.notifier = notifier if notifier is not None else ChangeNotifier()

    @classmethod
    def from_config(cls, cfg: Config) -> "ProfileService":
        store = AtomicStore(cfg.data_dir())
        store.ensure_dir()
        return cls(store, ProfileCache(cfg.CACHE_EXPIRY_SECONDS), ChangeNotifier())

    def _path_key(self, name: str) -> str:
        return str(self.store.profile_path(name))

    async def _persist(self, name: str, items: dict) -> None:
        await self.store.write(name, items)
        # no await between the write completing and these two
        self.cache.invalidate(self._path_key(name))
        await self.notifier.publish(name, items)

    # -----------------------------
    # Reads
    # -----------------------------
    async def list_profiles(self) -> List[str]:
        return await self.store.list_profiles()

    async def get_items(self, profile: str) -> dict:
        check_profile_name(profile)
        items = await self.store.read(profile)
        return dict(items) if items is not None else {}

    async def render(self, profile: str, fmt: Optional[str] = None,
                     include: Optional[str] = None, exclude: Optional[str] = None) -> Rendered:
        """Formatted payload for the polling endpoint. A missing profile renders empty."""
        check_profile_name(profile)
        norm = normalize_format(fmt)
        path = self._path_key(profile)
        key = CacheKey(path, norm, include or "", exclude or "")

        entry = self.cache.get(key)
        if entry is not None:
            log.debug("Cache hit for %s", key)
            return Rendered(entry.body, entry.content_type, f'"{entry.timestamp}"', cached=True)

        generation = self.cache.generation(path)
        items = await self.store.read(profile)
        if items is None:
            log.debug("Profile %s not found", profile)
            return Rendered(format_data([{}], norm), content_type(norm), f'"{time.time()}"')

        try:
            body = format_data(filter_items([items], include, exclude), norm)
        except ValidationError as e:
            log.error("Stored data for %s failed validation: %s", profile, e.message)
            raise ParseError() from e

        entry = self.cache.put(key, body, content_type(norm), generation=generation)
        stamp = entry.timestamp if entry is not None else time.time()
        log.debug("Read profile %s from file", profile)
        return Rendered(body, content_type(norm), f'"{stamp}"')

    # -----------------------------
    # Item mutations
    # -----------------------------
    async def add_item(self, profile: str, key, value=MISSING) -> dict:
        check_profile_name(profile)
        _check_key(key)
        _check_value(value, "Key and value are required")

        items = await self.get_items(profile)
        if key in items:
            log.warning("Key %s already exists in profile %s", key, profile)
            raise Conflict("Key already exists")

        items[key] = value
        await self._persist(profile, items)
        log.info("Added item %s to profile %s", key, profile)
        return items

    async def _load_existing(self, profile: str, key: str) -> dict:
        items = await self.store.read(profile)
        if items is None:
            log.debug("Profile %s not found", profile)
            raise NotFound("Profile not found")
        if key not in items:
            log.warning("Key %s not found in profile %s", key, profile)
            raise NotFound("Key not found")
        return dict(items)

    async def update_item(self, profile: str, key, value=MISSING) -> dict:
        check_profile_name(profile)
        _check_key(key)
        _check_value(value)

        items = await self._load_existing(profile, key)
        items[key] = value
        await self._persist(profile, items)
        log.info("Updated item %s in profile %s", key, profile)
        return items

    async def delete_item(self, profile: str, key) -> dict:
        check_profile_name(profile)
        _check_key(key)

        items = await self._load_existing(profile, key)
        del items[key]
        await self._persist(profile, items)
        log.info("Deleted item %s from profile %s", key, profile)
        return items

    # -----------------------------
    # Whole-profile operations (editor save / delete)
    # -----------------------------
    async def save_profile(self, profile: str, items) -> dict:
        check_profile_name(profile)
        if not isinstance(items, dict):
            raise ValidationError("Items must be an object")
        validate_data(items)

        items = dict(items)
        await self._persist(profile, items)
        log.info("Saved profile %s (%d items)", profile, len(items))
        return items

    async def delete_profile(self, profile: str) -> bool:
        check_profile_name(profile)
        if self.notifier.snapshot(profile) is None:
            # cold start: subscribers still need to hear which keys went away
            try:
                existing = await self.store.read(profile)
            except ParseError:
                existing = None
            if existing:
                self.notifier.record(profile, existing)
        removed = await self.store.delete(profile)
        self.cache.invalidate(self._path_key(profile))
        await self.notifier.publish(profile, {})
        self.notifier.forget(profile)
        log.info("Deleted profile %s (existed=%s)", profile, removed)
        return removed
