"""
client.py

WebSocket subscriber for the data server.

Keeps one connection alive: sends {"type": "ping"} every CLIENT_PING_SECONDS
and treats a missing pong by the next ping as a dead link. On disconnect it
reconnects with exponential backoff (base * multiplier ** (attempt - 1),
capped) and gives up after CLIENT_RECONNECT_MAX_ATTEMPTS consecutive failures.
Updates for other profiles are filtered out here; the server sends all of them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional, Union

import aiohttp

from .config import Config

log = logging.getLogger(__name__)

UpdateCallback = Callable[[str, dict], Union[None, Awaitable[None]]]

STATE_IDLE = "idle"
STATE_CONNECTING = "connecting"
STATE_CONNECTED = "connected"
STATE_WAITING = "waiting"
STATE_STOPPED = "stopped"
STATE_GAVE_UP = "gave_up"


def reconnect_delay(attempt: int, base: float = 1.0, multiplier: float = 2.0, cap: float = 30.0) -> float:
    """Delay before reconnect attempt number `attempt` (1-based)."""
    delay = float(base) * (float(multiplier) ** max(0, attempt - 1))
    return min(float(cap), delay)


def ws_url(base_url: str) -> str:
    if base_url.startswith("https://"):
        return "wss://" + base_url[len("https://"):].rstrip("/") + "/ws"
    if base_url.startswith("http://"):
        return "ws://" + base_url[len("http://"):].rstrip("/") + "/ws"
    return base_url


class DataSubscriber:
    def __init__(self, url: str, on_update: UpdateCallback, cfg: Optional[Config] = None,
                 profile_name: Optional[str] = None, api_key: str = "",
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.cfg = cfg or Config()
        self.url = url
        self.on_update = on_update
        self.profile_name = profile_name
        self.api_key = api_key
        self._sleep = sleep

        self.state = STATE_IDLE
        self.attempts = 0  # consecutive failures
        self.connected = asyncio.Event()
        self._stopping = False
        self._awaiting_pong = False
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    def stop(self) -> None:
        self._stopping = True
        self.state = STATE_STOPPED
        if self._ws is not None and not self._ws.closed:
            asyncio.ensure_future(self._ws.close())

    async def _dispatch(self, data: dict) -> None:
        mtype = data.get("type")
        if mtype == "pong":
            self._awaiting_pong = False
        elif mtype == "welcome":
            log.info("Subscriber: %s", data.get("message", ""))
        elif mtype == "dataUpdate":
            name = data.get("profileName")
            if self.profile_name and name != self.profile_name:
                return
            res = self.on_update(name, data.get("changes") or {})
            if asyncio.iscoroutine(res):
                await res

    async def _heartbeat(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        interval = float(self.cfg.CLIENT_PING_SECONDS)
        while not ws.closed:
            await asyncio.sleep(interval)
            if ws.closed:
                return
            if self._awaiting_pong:
                log.warning("Subscriber: no pong within %.0fs, dropping connection", interval)
                await ws.close()
                return
            self._awaiting_pong = True
            await ws.send_str(json.dumps({"type": "ping"}))

    async def _run_connection(self, session: aiohttp.ClientSession) -> None:
        headers = {"x-api-key": self.api_key} if self.api_key else None
        async with session.ws_connect(self.url, headers=headers, autoping=True) as ws:
            self._ws = ws
            self.attempts = 0
            self._awaiting_pong = False
            self.state = STATE_CONNECTED
            self.connected.set()
            log.info("Subscriber connected to %s", self.url)

            beat = asyncio.ensure_future(self._heartbeat(ws))
            try:
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        try:
                            data = json.loads(msg.data)
                        except ValueError:
                            log.warning("Subscriber: bad message %r", msg.data[:80])
                            continue
                        if isinstance(data, dict):
                            await self._dispatch(data)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        break
            finally:
                beat.cancel()
                try:
                    await beat
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    log.warning("Subscriber heartbeat failed: %s", e)
                self.connected.clear()
                self._ws = None

    async def run(self, session: Optional[aiohttp.ClientSession] = None) -> str:
        """Run until stop() or until reconnect attempts are exhausted. Returns the final state."""
        own_session = session is None
        if own_session:
            session = aiohttp.ClientSession()
        max_attempts = int(self.cfg.CLIENT_RECONNECT_MAX_ATTEMPTS)
        try:
            while not self._stopping:
                self.state = STATE_CONNECTING
                try:
                    await self._run_connection(session)
                except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                    log.warning("Subscriber connection failed: %s", e)
                if self._stopping:
                    break

                self.attempts += 1
                if self.attempts > max_attempts:
                    self.state = STATE_GAVE_UP
                    log.error("Subscriber: giving up after %d reconnect attempts", max_attempts)
                    break

                delay = reconnect_delay(
                    self.attempts,
                    self.cfg.CLIENT_RECONNECT_BASE_SECONDS,
                    self.cfg.CLIENT_RECONNECT_MULTIPLIER,
                    self.cfg.CLIENT_RECONNECT_MAX_SECONDS,
                )
                self.state = STATE_WAITING
                log.info("Subscriber: reconnecting in %.1fs (attempt %d/%d)", delay, self.attempts, max_attempts)
                await self._sleep(delay)
        finally:
            if own_session:
                await session.close()
        if self._stopping:
            self.state = STATE_STOPPED
        return self.state
