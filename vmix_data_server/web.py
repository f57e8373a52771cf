"""
web.py

HTTP + WebSocket front of the data server (aiohttp).

vMix polls GET /api/data/<profile>; the editor and scripts use /api/items
and /api/profiles; subscribers connect a WebSocket to / (or /ws) and get a
dataUpdate message for every change of every profile.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from aiohttp import WSMsgType, web

from . import APP_DISPLAY, APP_NAME, APP_VERSION
from .config import Config
from .errors import ProfileError, ValidationError
from .service import MISSING, ProfileService
from .store import check_profile_name

log = logging.getLogger(__name__)

LOOPBACK_ADDRESSES = ("127.0.0.1", "::1", "::ffff:127.0.0.1")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,POST,PUT,DELETE,OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type,x-api-key",
}

WELCOME_MESSAGE = "Connected to vMix Data Server"


def is_loopback(remote: Optional[str]) -> bool:
    return (remote or "") in LOOPBACK_ADDRESSES


def is_authorized(remote: Optional[str], headers, query, api_key: str) -> bool:
    """Loopback peers always pass; everyone else needs the shared key."""
    if is_loopback(remote):
        return True
    supplied = headers.get("x-api-key") or query.get("api_key") or ""
    return bool(api_key) and supplied == api_key


async def _json_body(request: web.Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON")
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


class WebServer:
    def __init__(self, cfg: Config, service: ProfileService):
        self.cfg = cfg
        self.service = service
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    # -----------------------------
    # Middlewares
    # -----------------------------
    def _middlewares(self):
        cfg = self.cfg

        @web.middleware
        async def cors(request, handler):
            if not cfg.CORS_ENABLED:
                return await handler(request)
            if request.method == "OPTIONS":
                return web.Response(status=204, headers=CORS_HEADERS)
            try:
                resp = await handler(request)
            except web.HTTPException as e:
                e.headers.update(CORS_HEADERS)
                raise
            if not resp.prepared:
                resp.headers.update(CORS_HEADERS)
            return resp

        @web.middleware
        async def request_log(request, handler):
            log.info("%s %s", request.method, request.path)
            return await handler(request)

        @web.middleware
        async def access_control(request, handler):
            if not is_authorized(request.remote, request.headers, request.query, cfg.API_KEY):
                log.warning("Unauthorized access attempt from %s", request.remote)
                return web.json_response({"error": "Forbidden: Invalid API key"}, status=403)
            return await handler(request)

        @web.middleware
        async def errors(request, handler):
            try:
                return await handler(request)
            except ProfileError as e:
                return web.json_response({"error": e.message}, status=e.http_status)
            except web.HTTPException:
                raise
            except Exception:
                log.exception("Unhandled error for %s %s", request.method, request.path)
                return web.json_response({"error": "Internal server error"}, status=500)

        return [cors, request_log, access_control, errors]

    # -----------------------------
    # App
    # -----------------------------
    def build_app(self) -> web.Application:
        service = self.service
        cfg = self.cfg

        async def api_data(request):
            name = request.match_info["profileName"]
            q = request.query
            out = await service.render(name, q.get("format", "json"), q.get("include"), q.get("exclude"))
            resp = web.Response(
                body=out.body.encode("utf-8"),
                headers={
                    "Content-Type": out.content_type,
                    "ETag": out.etag,
                    "Cache-Control": "no-cache",
                },
            )
            if cfg.COMPRESSION_ENABLED:
                resp.enable_compression()
            return resp

        async def api_get_items(request):
            items = await service.get_items(request.match_info["profileName"])
            return web.json_response({"items": items})

        async def api_add_item(request):
            name = request.match_info["profileName"]
            check_profile_name(name)  # name shape first, before the body
            data = await _json_body(request)
            items = await service.add_item(name, data.get("key"), data.get("value", MISSING))
            return web.json_response({"message": "Item added successfully", "items": items}, status=201)

        async def api_update_item(request):
            name = request.match_info["profileName"]
            check_profile_name(name)
            data = await _json_body(request)
            items = await service.update_item(name, request.match_info["key"], data.get("value", MISSING))
            return web.json_response({"message": "Item updated successfully", "items": items})

        async def api_delete_item(request):
            items = await service.delete_item(request.match_info["profileName"], request.match_info["key"])
            return web.json_response({"message": "Item deleted successfully", "items": items})

        async def api_list_profiles(request):
            return web.json_response({"profiles": await service.list_profiles()})

        async def api_save_profile(request):
            name = request.match_info["profileName"]
            check_profile_name(name)
            data = await _json_body(request)
            items = await service.save_profile(name, data.get("items", MISSING))
            return web.json_response({"message": "Profile saved successfully", "items": items})

        async def api_delete_profile(request):
            await service.delete_profile(request.match_info["profileName"])
            return web.json_response({"message": "Profile deleted successfully"})

        async def ws_handler(request):
            ws = web.WebSocketResponse(heartbeat=float(cfg.WS_HEARTBEAT_SECONDS))
            await ws.prepare(request)

            await ws.send_str(json.dumps({"type": "welcome", "message": WELCOME_MESSAGE}))
            service.notifier.subscribe(ws)
            log.info("New WebSocket client connected (%d total)", service.notifier.subscriber_count)

            try:
                async for msg in ws:
                    if msg.type == WSMsgType.TEXT:
                        try:
                            data = json.loads(msg.data)
                        except ValueError as e:
                            log.error("Error parsing WebSocket message: %s", e)
                            continue
                        if isinstance(data, dict) and data.get("type") == "ping":
                            await ws.send_str(json.dumps({"type": "pong"}))
                            log.debug("Received ping from client, sent pong response")
                    elif msg.type == WSMsgType.ERROR:
                        log.error("WebSocket error: %s", ws.exception())
                        break
            finally:
                service.notifier.unsubscribe(ws)
                log.info("WebSocket client disconnected")

            return ws

        async def index(request):
            if request.headers.get("Upgrade", "").lower() == "websocket":
                return await ws_handler(request)
            return web.json_response({
                "name": APP_NAME,
                "version": APP_VERSION,
                "subscribers": service.notifier.subscriber_count,
            })

        async def favicon(request):
            # avoid noisy 404s
            return web.Response(status=204)

        app = web.Application(middlewares=self._middlewares())
        app.add_routes([
            web.get("/", index),
            web.get("/ws", ws_handler),
            web.get("/favicon.ico", favicon),
            web.get("/api/data/{profileName}", api_data),
            web.get("/api/items/{profileName}", api_get_items),
            web.post("/api/items/{profileName}", api_add_item),
            web.put("/api/items/{profileName}/{key}", api_update_item),
            web.delete("/api/items/{profileName}/{key}", api_delete_item),
            web.get("/api/profiles", api_list_profiles),
            web.put("/api/profiles/{profileName}", api_save_profile),
            web.delete("/api/profiles/{profileName}", api_delete_profile),
        ])
        return app

    # -----------------------------
    # Lifecycle
    # -----------------------------
    async def start(self) -> None:
        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, host=self.cfg.HOST, port=int(self.cfg.PORT))
        try:
            await site.start()
        except OSError as e:
            await runner.cleanup()
            log.error("Failed to start server on %s:%s: %s", self.cfg.HOST, self.cfg.PORT, e)
            raise

        self._runner = runner
        self._site = site
        log.info("%s listening at %s", APP_DISPLAY, self.cfg.base_url())

    async def stop(self) -> None:
        try:
            await self.service.notifier.close_all()
            if self._runner:
                await self._runner.cleanup()
        finally:
            self._runner = None
            self._site = None
