"""
notifier.py

Change fan-out to WebSocket subscribers.

After every successful persist the notifier diffs the new items against the
last state it saw for that profile and sends only the delta. Removed keys
are reported as null. No-op writes send nothing. There is no event queue:
a subscriber only ever sees the latest delta (latest value wins).
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Dict, Optional, Set

log = logging.getLogger(__name__)

_MISSING = object()


def _same(a, b) -> bool:
    # True and 1 are different values for a vMix title; 1 and 1.0 are not.
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    return a == b


def compute_changes(previous: dict, current: dict) -> dict:
    changes = {}
    for key, value in current.items():
        old = previous.get(key, _MISSING)
        if old is _MISSING or not _same(old, value):
            changes[key] = value
    for key in previous:
        if key not in current:
            changes[key] = None
    return changes


def update_message(profile_name: str, changes: dict) -> str:
    return json.dumps({"type": "dataUpdate", "profileName": profile_name, "changes": changes},
                      ensure_ascii=False)


class ChangeNotifier:
    def __init__(self):
        self._snapshots: Dict[str, dict] = {}
        self._clients: Set = set()

    # -----------------------------
    # Subscribers
    # -----------------------------
    def subscribe(self, ws) -> None:
        self._clients.add(ws)

    def unsubscribe(self, ws) -> None:
        self._clients.discard(ws)

    @property
    def subscriber_count(self) -> int:
        return len(self._clients)

    def clients(self) -> list:
        return list(self._clients)

    # -----------------------------
    # Snapshots
    # -----------------------------
    def snapshot(self, profile_name: str) -> Optional[dict]:
        snap = self._snapshots.get(profile_name)
        return dict(snap) if snap is not None else None

    def forget(self, profile_name: str) -> None:
        self._snapshots.pop(profile_name, None)

    def record(self, profile_name: str, items: dict) -> dict:
        """Diff against the last snapshot and replace it, with no await in between."""
        previous = self._snapshots.get(profile_name) or {}
        changes = compute_changes(previous, items)
        self._snapshots[profile_name] = dict(items)
        return changes

    async def broadcast(self, payload: str) -> int:
        if not self._clients:
            return 0
        targets = [ws for ws in self._clients if not ws.closed]
        results = await asyncio.gather(*(ws.send_str(payload) for ws in targets), return_exceptions=True)
        sent = 0
        for ws, res in zip(targets, results):
            if isinstance(res, Exception):
                log.warning("Dropping subscriber after send failure: %s", res)
                self._clients.discard(ws)
            else:
                sent += 1
        return sent

    async def publish(self, profile_name: str, items: dict) -> int:
        """Record the new state and push the delta. Returns subscribers reached."""
        changes = self.record(profile_name, items)
        if not changes:
            log.debug("No changes detected for profile: %s, skipping update broadcast", profile_name)
            return 0
        sent = await self.broadcast(update_message(profile_name, changes))
        log.debug("Sent data update to %d clients for profile: %s", sent, profile_name)
        return sent

    async def close_all(self) -> None:
        for ws in self.clients():
            try:
                await ws.close()
            except Exception as e:
                log.debug("Subscriber close failed: %s", e)
        self._clients.clear()
