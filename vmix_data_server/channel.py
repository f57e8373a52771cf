"""
channel.py

Request/response bridge from other threads (the Tk editor) into the event
loop that owns the ProfileService.

Each call gets a correlation id and a concurrent.futures.Future; the loop
side pulls requests off an asyncio.Queue, runs the named service operation
and resolves the future with the result or the exception. The caller never
touches service state directly.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

from .service import ProfileService

log = logging.getLogger(__name__)

# Operations a caller may request.
OPERATIONS = (
    "list_profiles",
    "get_items",
    "save_profile",
    "delete_profile",
    "add_item",
    "update_item",
    "delete_item",
)


class ChannelClosed(RuntimeError):
    pass


@dataclass
class Request:
    id: int
    op: str
    kwargs: dict = field(default_factory=dict)


class ServiceChannel:
    def __init__(self, service: ProfileService):
        self.service = service
        self._ids = itertools.count(1)
        self._pending: Dict[int, concurrent.futures.Future] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._closed = False
        self.ready = threading.Event()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # -----------------------------
    # Caller side (any thread)
    # -----------------------------
    def submit(self, op: str, **kwargs) -> concurrent.futures.Future:
        if op not in OPERATIONS:
            raise ValueError(f"Unknown operation: {op}")
        loop, q = self._loop, self._queue
        if self._closed or loop is None or q is None:
            raise ChannelClosed("Service channel is not running")

        req = Request(next(self._ids), op, kwargs)
        fut: concurrent.futures.Future = concurrent.futures.Future()
        self._pending[req.id] = fut
        loop.call_soon_threadsafe(q.put_nowait, req)
        return fut

    def call(self, op: str, timeout: Optional[float] = 10.0, **kwargs):
        """Blocking call; re-raises whatever the service raised."""
        return self.submit(op, **kwargs).result(timeout=timeout)

    # -----------------------------
    # Loop side
    # -----------------------------
    def _resolve(self, req_id: int, result=None, error: Optional[BaseException] = None) -> None:
        fut = self._pending.pop(req_id, None)
        if fut is None or fut.done():
            log.warning("Channel: reply for unknown request %s", req_id)
            return
        if error is not None:
            fut.set_exception(error)
        else:
            fut.set_result(result)

    async def _handle(self, req: Request) -> None:
        try:
            result = await getattr(self.service, req.op)(**req.kwargs)
        except Exception as e:
            self._resolve(req.id, error=e)
        else:
            self._resolve(req.id, result)

    async def serve(self) -> None:
        """Run on the service loop until close()."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._closed = False
        self.ready.set()
        try:
            while True:
                req = await self._queue.get()
                if req is None:
                    break
                await self._handle(req)
        finally:
            self._closed = True
            self.ready.clear()
            for req_id in list(self._pending):
                self._resolve(req_id, error=ChannelClosed("Service channel closed"))

    def close(self) -> None:
        loop, q = self._loop, self._queue
        if loop is not None and q is not None and not self._closed:
            loop.call_soon_threadsafe(q.put_nowait, None)
