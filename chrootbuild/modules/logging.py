# chrootbuild/modules/logging.py
# -*- coding: utf-8 -*-
"""
chroot-build logging

Features:
 - Configured from modules.config (logging section)
 - Console color formatter
 - Rotating file handler
 - Module-level configurable log levels (module_levels)
 - Streaming of child process output (build logs) through the same handlers
"""

from __future__ import annotations

import sys
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from chrootbuild.modules.config import DEFAULTS, get_config

_ROOT_NAME = "chrootbuild"
DEFAULT_FORMAT = "[%(asctime)s] [%(levelname)s] [%(cb_module)s] %(message)s"


# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",    # light gray
        logging.INFO: "\033[36m",     # cyan
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",    # red
        logging.CRITICAL: "\033[41;37m",  # white on red
    }
    RESET = "\033[0m"

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.color = color

    def format(self, record):
        msg = super().format(record)
        if self.color:
            color = self.COLORS.get(record.levelno, "")
            return f"{color}{msg}{self.RESET}"
        return msg


class _ModuleNameFilter(logging.Filter):
    """Records from plain loggers get their logger name as module."""

    def filter(self, record):
        if not hasattr(record, "cb_module"):
            name = record.name
            if name.startswith(_ROOT_NAME + "."):
                name = name[len(_ROOT_NAME) + 1:]
            record.cb_module = name
        return True


class ModuleLevelFilter(logging.Filter):
    def __init__(self, module_levels: Dict[str, str]):
        super().__init__()
        self.module_levels = {m: getattr(logging, lvl.upper(), logging.INFO) for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        mod = getattr(record, "cb_module", None)
        if mod and mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True


# ----------------------
# BuildLogger (singleton)
# ----------------------
class BuildLogger:
    _instance = None
    _singleton_lock = threading.Lock()

    def __new__(cls):
        with cls._singleton_lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._inited = False
        return cls._instance

    def __init__(self):
        if self._inited:
            return
        self._lock = threading.RLock()
        self._root = logging.getLogger(_ROOT_NAME)
        self._root.propagate = False
        self._handlers: List[logging.Handler] = []
        self._module_filter: Optional[ModuleLevelFilter] = None
        self._console_level = logging.INFO
        # no config file is read at import time; reload_config() applies it
        self._apply_config(dict(DEFAULTS["logging"]))
        self._inited = True

    def _apply_config(self, cfg: Dict[str, Any]):
        with self._lock:
            for h in list(self._handlers):
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()
            self._module_filter = ModuleLevelFilter(cfg.get("module_levels") or {})

            fmt = cfg.get("format") or DEFAULT_FORMAT
            datefmt = cfg.get("datefmt", "%H:%M:%S")
            self._console_level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)

            ch = logging.StreamHandler(sys.stderr)
            ch.setLevel(self._console_level)
            ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=bool(cfg.get("color", True)) and sys.stderr.isatty()))
            self._add_handler(ch)

            if cfg.get("file"):
                file_path = Path(cfg["file"]).expanduser()
                file_path.parent.mkdir(parents=True, exist_ok=True)
                fh = logging.handlers.RotatingFileHandler(
                    str(file_path),
                    maxBytes=cfg.get("max_size_bytes") or 10 * 1024 * 1024,
                    backupCount=int(cfg.get("backups", 5)),
                    encoding="utf-8",
                )
                fh.setLevel(logging.DEBUG)
                fh.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
                self._add_handler(fh)

            self._root.setLevel(logging.DEBUG)

    def _add_handler(self, handler: logging.Handler):
        handler.addFilter(_ModuleNameFilter())
        handler.addFilter(self._module_filter)
        self._root.addHandler(handler)
        self._handlers.append(handler)

    def reload_config(self):
        self._apply_config(get_config().merged.get("logging", {}))

    def set_debug(self, enabled: bool = True):
        """--debug: console shows DEBUG records."""
        with self._lock:
            level = logging.DEBUG if enabled else self._console_level
            for h in self._handlers:
                if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler):
                    h.setLevel(level)

    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'cb_module' into records."""
        return logging.LoggerAdapter(self._root, {"cb_module": module_name})

    def stream_build_output(self, module: str, line: str):
        self.get_logger(module).info(line.rstrip("\n"))


# ----------------------
# Public factory
# ----------------------
def _global() -> BuildLogger:
    return BuildLogger()


def get_logger(module: str) -> logging.LoggerAdapter:
    return _global().get_logger(module)


def stream_build_output(module: str, line: str):
    return _global().stream_build_output(module, line)


def set_debug(enabled: bool = True):
    return _global().set_debug(enabled)


def reload_config():
    return _global().reload_config()
