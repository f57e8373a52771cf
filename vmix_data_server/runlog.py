"""Run logging: console + per-run log file with retention + recent-lines buffer."""

from __future__ import annotations

import datetime as dt
import glob
import logging
import os
from collections import deque
from typing import List, Optional

from .config import Config

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"

_buffer_handler: Optional["BufferHandler"] = None


class BufferHandler(logging.Handler):
    """Keeps the last N formatted lines (desktop log pane reads these)."""

    def __init__(self, maxlen: int = 400):
        super().__init__()
        self.lines = deque(maxlen=maxlen)
        self.version = 0

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.lines.append(self.format(record))
            self.version += 1
        except Exception:
            self.handleError(record)


def recent_lines(n: Optional[int] = None) -> List[str]:
    if _buffer_handler is None:
        return []
    lines = list(_buffer_handler.lines)
    return lines[-n:] if n else lines


def buffer_version() -> int:
    return _buffer_handler.version if _buffer_handler is not None else 0


def cleanup_old_logs(base_dir: str, prefix: str, retention: int) -> int:
    """Keep only the most recent N run logs. Returns how many were removed."""
    files = glob.glob(os.path.join(base_dir, f"{prefix}_run_*.log"))
    if len(files) <= retention:
        return 0

    # oldest first
    files.sort(key=os.path.getmtime)
    count = 0
    for fpath in files[:-retention] if retention > 0 else files:
        try:
            os.remove(fpath)
            count += 1
        except OSError:
            pass
    return count


def setup_logging(cfg: Config) -> Optional[str]:
    """Configure the root logger once. Returns the run log path (or None)."""
    global _buffer_handler

    root = logging.getLogger()
    root.setLevel(getattr(logging, (cfg.LOG_LEVEL or "INFO").upper(), logging.INFO))
    if _buffer_handler is not None and _buffer_handler in root.handlers:
        return None

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    _buffer_handler = BufferHandler(cfg.LOG_BUFFER_LINES)
    _buffer_handler.setFormatter(logging.Formatter("[%(asctime)s] %(message)s", "%H:%M:%S"))
    root.addHandler(_buffer_handler)

    if not cfg.LOG_TO_FILE_ENABLED:
        return None

    run_log_path = None
    try:
        base_dir = cfg.log_dir()
        os.makedirs(base_dir, exist_ok=True)
        removed = cleanup_old_logs(base_dir, cfg.LOG_RUN_FILE_PREFIX, max(0, cfg.LOG_RETENTION_COUNT - 1))
        ts = dt.datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        run_log_path = os.path.join(base_dir, f"{cfg.LOG_RUN_FILE_PREFIX}_run_{ts}.log")
        file_handler = logging.FileHandler(run_log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
        if removed:
            logging.getLogger(__name__).info("Cleanup: removed %d old log files.", removed)
    except OSError as e:
        logging.getLogger(__name__).warning("File logging disabled: %s", e)
        run_log_path = None
    return run_log_path
