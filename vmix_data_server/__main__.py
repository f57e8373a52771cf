"""
Command line entry point.

  vmix-data-server                   run the HTTP/WebSocket server (headless)
  vmix-data-server --desktop         run it with the desktop profile editor
  vmix-data-server watch <profile>   print live changes of one profile
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from . import APP_DISPLAY
from .client import DataSubscriber, ws_url
from .config import Config, load_config
from .runlog import setup_logging
from .service import ProfileService
from .web import WebServer

log = logging.getLogger("vmix_data_server")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="vmix-data-server", description=APP_DISPLAY)
    p.add_argument("--config", default="", help="JSON overrides file")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)
    p.add_argument("--data-dir", default=None)
    p.add_argument("--log-level", default=None)
    p.add_argument("--desktop", action="store_true", help="open the desktop profile editor")

    sub = p.add_subparsers(dest="command")
    watch = sub.add_parser("watch", help="subscribe and print changes")
    watch.add_argument("profile", nargs="?", default=None, help="only this profile")
    watch.add_argument("--url", default=None, help="server base URL (default from config)")
    watch.add_argument("--api-key", default=None)
    return p


def config_from_args(args: argparse.Namespace) -> Config:
    cfg = load_config(args.config)
    if args.host is not None:
        cfg.HOST = args.host
    if args.port is not None:
        cfg.PORT = args.port
    if args.data_dir is not None:
        cfg.DATA_DIR = args.data_dir
    if args.log_level is not None:
        cfg.LOG_LEVEL = args.log_level
    if args.desktop:
        cfg.DESKTOP_ENABLED = True
    return cfg


async def serve(cfg: Config) -> None:
    service = ProfileService.from_config(cfg)
    server = WebServer(cfg, service)
    await server.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass  # Windows: KeyboardInterrupt ends asyncio.run instead
    try:
        await stop.wait()
    finally:
        log.info("Shutting down")
        await server.stop()


async def watch(cfg: Config, profile: Optional[str], url: Optional[str], api_key: Optional[str]) -> str:
    def _print(name: str, changes: dict) -> None:
        print(json.dumps({"profileName": name, "changes": changes}, ensure_ascii=False), flush=True)

    sub = DataSubscriber(ws_url(url or cfg.base_url()), _print, cfg=cfg,
                         profile_name=profile, api_key=api_key if api_key is not None else cfg.API_KEY)
    return await sub.run()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = config_from_args(args)

    if args.command == "watch":
        cfg.LOG_TO_FILE_ENABLED = False
        setup_logging(cfg)
        try:
            state = asyncio.run(watch(cfg, args.profile, args.url, args.api_key))
        except KeyboardInterrupt:
            return 0
        return 0 if state != "gave_up" else 1

    run_log = setup_logging(cfg)
    if run_log:
        log.info("Run log file: %s", run_log)
    log.info("%s starting (data dir: %s)", APP_DISPLAY, cfg.data_dir())

    if cfg.DESKTOP_ENABLED:
        from .desktop import App  # tkinter only needed here

        App(cfg).run()
        return 0

    try:
        asyncio.run(serve(cfg))
    except KeyboardInterrupt:
        pass
    except OSError:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
