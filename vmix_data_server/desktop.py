"""
desktop.py

Desktop profile editor (Tkinter).

The Tk window runs on the main thread. The data server (HTTP + WebSocket)
and the ServiceChannel run on an asyncio loop in a worker thread; the window
only ever talks to profile data through the channel, and results come back
to the UI thread through a queue drained by _ui_pump.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import re
import threading
import tkinter as tk
from tkinter import messagebox, scrolledtext, simpledialog, ttk
from typing import Callable, List, Optional, Tuple

from . import APP_DISPLAY, runlog
from .channel import ChannelClosed, ServiceChannel
from .config import Config
from .errors import ProfileError
from .service import ProfileService
from .store import is_valid_profile_name
from .web import WebServer

log = logging.getLogger(__name__)

VALUE_TYPES = ("string", "number", "boolean", "null")
_INT_RE = re.compile(r"[+-]?\d+")


def value_type(value) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    return "string"


def parse_value(text: str, vtype: str):
    """Turn an editor cell into a Scalar according to its declared type."""
    if vtype == "null":
        return None
    if vtype == "boolean":
        t = text.strip().lower()
        if t in ("true", "1", "yes", "on"):
            return True
        if t in ("false", "0", "no", "off", ""):
            return False
        raise ValueError(f"'{text}' is not a boolean")
    if vtype == "number":
        t = text.strip()
        if _INT_RE.fullmatch(t):
            return int(t)
        return float(t)  # ValueError propagates to the caller
    return text


def display_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class App:
    def __init__(self, cfg: Config):
        self.cfg = cfg
        self.root = tk.Tk()
        self.root.title(APP_DISPLAY)
        self.root.geometry("820x680")
        self.root.minsize(640, 480)

        self.running = True

        # UI thread safety: worker thread never touches Tk widgets directly
        self._ui_actions = queue.Queue()
        self._log_version = 0
        self._save_after_id = None

        self.current_profile = ""
        self._rows: List[Tuple[ttk.Frame, tk.StringVar, tk.StringVar, tk.StringVar]] = []

        self.service = ProfileService.from_config(cfg)
        self.channel = ServiceChannel(self.service)

        self._build_ui()
        self._ui_pump()

        self.thread = threading.Thread(target=self._runner, daemon=True)
        self.thread.start()

        self.root.protocol("WM_DELETE_WINDOW", self._on_close)
        self.root.after(100, self._wait_for_channel)

    # -----------------------------
    # UI
    # -----------------------------
    def _build_ui(self):
        style = ttk.Style()
        style.theme_use("clam")
        style.configure("Title.TLabel", font=("Segoe UI", 14, "bold"))
        style.configure("Danger.TButton", background="#F44336", foreground="white")
        style.map("Danger.TButton", background=[("active", "#C62828")])

        main = ttk.Frame(self.root, padding=12)
        main.pack(fill="both", expand=True)

        ttk.Label(main, text=APP_DISPLAY, style="Title.TLabel").pack(anchor="w")

        top = ttk.Frame(main)
        top.pack(fill="x", pady=(8, 0))
        ttk.Label(top, text="Profile:").pack(side="left")
        self.profile_var = tk.StringVar()
        self.profile_combo = ttk.Combobox(top, textvariable=self.profile_var, state="readonly", width=30)
        self.profile_combo.pack(side="left", padx=6)
        self.profile_combo.bind("<<ComboboxSelected>>", lambda _e: self._select_profile(self.profile_var.get()))
        ttk.Button(top, text="New", command=self._new_profile).pack(side="left", padx=4)
        ttk.Button(top, text="Delete", style="Danger.TButton", command=self._delete_profile).pack(side="left", padx=4)

        url_row = ttk.Frame(main)
        url_row.pack(fill="x", pady=(8, 0))
        ttk.Label(url_row, text="vMix URL:").pack(side="left")
        self.url_var = tk.StringVar()
        url_entry = ttk.Entry(url_row, textvariable=self.url_var, state="readonly")
        url_entry.pack(side="left", fill="x", expand=True, padx=6)
        url_entry.bind("<Button-1>", lambda _e: self._copy_url())

        self.fields_frame = fields_frame = ttk.LabelFrame(main, text="Data fields")
        fields_frame.pack(fill="both", expand=True, pady=(12, 0))
        self.rows_frame = ttk.Frame(fields_frame, padding=6)
        self.rows_frame.pack(fill="both", expand=True)

        ttk.Button(main, text="Add field", command=lambda: self._add_row()).pack(anchor="w", pady=(8, 0))

        log_frame = ttk.LabelFrame(main, text="Log")
        log_frame.pack(fill="both", expand=False, pady=(12, 0))
        self.log_text = scrolledtext.ScrolledText(log_frame, height=8, font=("Consolas", 9), state="disabled")
        self.log_text.pack(fill="both", expand=True, padx=6, pady=6)

    def _add_row(self, key: str = "", value=""):
        row = ttk.Frame(self.rows_frame)
        row.pack(fill="x", pady=2)
        key_var = tk.StringVar(value=key)
        val_var = tk.StringVar(value=display_value(value))
        type_var = tk.StringVar(value=value_type(value))
        ttk.Entry(row, textvariable=key_var, width=24).pack(side="left")
        ttk.Entry(row, textvariable=val_var).pack(side="left", fill="x", expand=True, padx=6)
        ttk.Combobox(row, textvariable=type_var, values=VALUE_TYPES, state="readonly", width=9).pack(side="left")
        entry = (row, key_var, val_var, type_var)
        ttk.Button(row, text="Remove", command=lambda: self._remove_row(entry)).pack(side="left", padx=(6, 0))
        for var in (key_var, val_var, type_var):
            var.trace_add("write", lambda *_: self._schedule_save())
        self._rows.append(entry)

    def _remove_row(self, entry):
        if entry in self._rows:
            self._rows.remove(entry)
            entry[0].destroy()
            self._save_now()

    def _clear_rows(self):
        for row, *_ in self._rows:
            row.destroy()
        self._rows = []

    def _copy_url(self):
        self.root.clipboard_clear()
        self.root.clipboard_append(self.url_var.get())

    def _ui_action(self, fn: Callable[[], None]):
        """Enqueue a callable to run on the Tkinter/UI thread."""
        self._ui_actions.put(fn)

    def _ui_pump(self):
        """Runs on UI thread; executes queued UI actions and refreshes the log pane."""
        try:
            while True:
                fn = self._ui_actions.get_nowait()
                try:
                    fn()
                except tk.TclError as e:
                    log.debug("UI action failed: %s", e)
        except queue.Empty:
            pass

        version = runlog.buffer_version()
        if version != self._log_version:
            self._log_version = version
            self.log_text.config(state="normal")
            self.log_text.delete("1.0", "end")
            self.log_text.insert("end", "\n".join(runlog.recent_lines(200)) + "\n")
            self.log_text.see("end")
            self.log_text.config(state="disabled")

        if self.running:
            self.root.after(50, self._ui_pump)

    def _alert(self, what: str, err: BaseException):
        msg = err.message if isinstance(err, ProfileError) else str(err)
        log.error("%s failed: %s", what, msg)
        messagebox.showerror(APP_DISPLAY, f"{what} failed: {msg}")

    def _call(self, what: str, op: str, on_ok: Optional[Callable] = None, **kwargs):
        """Submit a channel request; the reply is handled on the UI thread."""
        try:
            fut = self.channel.submit(op, **kwargs)
        except ChannelClosed as e:
            self._alert(what, e)
            return

        def _done(f):
            err = f.exception()
            if err is not None:
                self._ui_action(lambda: self._alert(what, err))
            elif on_ok is not None:
                result = f.result()
                self._ui_action(lambda: on_ok(result))

        fut.add_done_callback(_done)

    # -----------------------------
    # Profile actions
    # -----------------------------
    def _wait_for_channel(self):
        if self.channel.ready.is_set():
            self._load_profiles()
        elif self.running:
            self.root.after(100, self._wait_for_channel)

    def _load_profiles(self, select: str = ""):
        def _ok(profiles):
            names = list(profiles) or ["default"]
            if select and select not in names:
                names.append(select)
            self.profile_combo.configure(values=names)
            self._select_profile(select or names[0])

        self._call("Loading profiles", "list_profiles", _ok)

    def _select_profile(self, name: str):
        if self._save_after_id is not None:
            self.root.after_cancel(self._save_after_id)
            self._save_now()
        self.current_profile = name
        self.profile_var.set(name)
        self.url_var.set(f"{self.cfg.base_url()}/api/data/{name}")
        self.fields_frame.configure(text=f"Data fields ({name})")

        def _ok(items):
            self._clear_rows()
            for k, v in items.items():
                self._add_row(k, v)

        self._call(f"Loading profile {name}", "get_items", _ok, profile=name)

    def _new_profile(self):
        name = simpledialog.askstring(APP_DISPLAY, "New profile name (letters, numbers, - and _ only):",
                                      parent=self.root)
        if not name:
            return
        if not is_valid_profile_name(name):
            messagebox.showerror(APP_DISPLAY, "Invalid name. Use only letters, numbers, underscores and hyphens.")
            return
        if name in (self.profile_combo.cget("values") or ()):
            messagebox.showerror(APP_DISPLAY, "A profile with that name already exists.")
            return
        self._call(f"Creating profile {name}", "save_profile",
                   lambda _items: self._load_profiles(select=name), profile=name, items={})

    def _delete_profile(self):
        name = self.current_profile
        if not name:
            return
        if not messagebox.askyesno(APP_DISPLAY, f'Delete profile "{name}"? This cannot be undone.'):
            return
        self._call(f"Deleting profile {name}", "delete_profile", lambda _r: self._load_profiles(), profile=name)

    def _collect_items(self) -> dict:
        items = {}
        for _row, key_var, val_var, type_var in self._rows:
            key = key_var.get().strip()
            if key:  # rows without a key are not saved
                items[key] = parse_value(val_var.get(), type_var.get())
        return items

    def _schedule_save(self):
        if self._save_after_id is not None:
            self.root.after_cancel(self._save_after_id)
        self._save_after_id = self.root.after(int(self.cfg.DESKTOP_SAVE_DEBOUNCE_MS), self._save_now)

    def _save_now(self):
        self._save_after_id = None
        if not self.current_profile:
            return
        try:
            items = self._collect_items()
        except ValueError as e:
            self._alert(f"Saving profile {self.current_profile}", e)
            return
        self._call(f"Saving profile {self.current_profile}", "save_profile",
                   profile=self.current_profile, items=items)

    # -----------------------------
    # Worker thread
    # -----------------------------
    async def _serve(self):
        web_server = WebServer(self.cfg, self.service)
        started = False
        try:
            await web_server.start()
            started = True
        except OSError as e:
            self._ui_action(lambda: self._alert("Starting the data server", e))
        try:
            await self.channel.serve()
        finally:
            if started:
                await web_server.stop()

    def _runner(self):
        try:
            asyncio.run(self._serve())
        except Exception:
            log.exception("Server loop crashed")

    def _on_close(self):
        # 1. Signal stop
        self.running = False
        self.channel.close()

        # 2. Wait for worker thread to finish (closes subscribers and the listener)
        if self.thread.is_alive():
            self.thread.join(timeout=2.0)

        # 3. Destroy UI
        self.root.destroy()

    def run(self):
        self.root.mainloop()
