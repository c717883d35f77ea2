#!/usr/bin/env python3
"""
Console Logging Module for LP Ledger Sync
Rich-console log lines with emoji level markers and key=value context.
Debug lines are only printed when debug mode is on.

Version: 2.0.0
Developer: 8roku8.hl
"""

import threading
from datetime import datetime

from rich.console import Console
from rich.markup import escape

console = Console(stderr=True)

_LEVELS = {
    "debug": ("🔍", "dim"),
    "info": ("ℹ️ ", "cyan"),
    "warning": ("⚠️ ", "yellow"),
    "error": ("❌", "red"),
}

_debug_mode = False
_print_lock = threading.Lock()


def set_debug_mode(enabled):
    """Enable or disable debug output for every logger"""
    global _debug_mode
    _debug_mode = bool(enabled)


def is_debug_mode():
    return _debug_mode


def format_context(context):
    """Render context as key=value pairs (big ints stay exact)"""
    parts = []
    for key, value in context.items():
        if value is None:
            value = "null"
        parts.append(f"{key}={value}")
    return " ".join(parts)


class LedgerLogger:
    """Component logger printing to the shared rich console"""

    def __init__(self, name):
        self.name = name

    def _emit(self, level, message, context):
        icon, style = _LEVELS[level]
        timestamp = datetime.now().strftime("%H:%M:%S")
        line = f"{timestamp} {icon} [{self.name}] {message}"
        if context:
            line += f"  {format_context(context)}"
        with _print_lock:
            console.print(f"[{style}]{escape(line)}[/{style}]")

    def debug(self, message, **context):
        if _debug_mode:
            self._emit("debug", message, context)

    def info(self, message, **context):
        self._emit("info", message, context)

    def warning(self, message, **context):
        self._emit("warning", message, context)

    def error(self, message, **context):
        self._emit("error", message, context)


def get_logger(name):
    return LedgerLogger(name)
