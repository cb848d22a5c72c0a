"""Logging setup for Inkwell runs.

Each run logs to a rotating ``inkwell.log`` file. The console only shows
warnings and errors so it does not interleave with the streamed report.
"""

from __future__ import annotations

import logging
import logging.handlers
from dataclasses import dataclass
from pathlib import Path
from typing import Any

__all__ = ["LOG_FILENAME", "LoggingOptions", "setup_logging"]

LOG_FILENAME = "inkwell.log"
_DEFAULT_LOG_DIR = Path.home() / ".inkwell" / "logs"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_QUIET_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "anthropic", "openai")
_INSTALLED: list[logging.Handler] = []


@dataclass(slots=True, frozen=True)
class LoggingOptions:
    """Where and how verbosely a run logs."""

    level: int = logging.INFO
    log_dir: Path | None = None
    console: bool = True
    max_bytes: int = 1_000_000
    backup_count: int = 3

    @classmethod
    def from_settings(cls, settings: Any, *, debug: bool = False, console: bool = True) -> "LoggingOptions":
        """Build options from :class:`~inkwell.services.settings.Settings`.

        ``debug`` forces debug level on top of ``settings.debug_logging``.
        """

        log_dir = getattr(settings, "log_dir", None)
        verbose = debug or bool(getattr(settings, "debug_logging", False))
        return cls(
            level=logging.DEBUG if verbose else logging.INFO,
            log_dir=Path(log_dir).expanduser() if log_dir else None,
            console=console,
        )

    @property
    def log_path(self) -> Path:
        return (self.log_dir or _DEFAULT_LOG_DIR) / LOG_FILENAME


def setup_logging(options: LoggingOptions | None = None) -> Path:
    """Install the file (and console) handlers described by *options*.

    Calling it again swaps out the handlers from the previous call, so the
    CLI can reconfigure once settings are known. Returns the log file path.
    """

    opts = options or LoggingOptions()
    log_path = opts.log_path
    log_path.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    _remove_installed(root)

    formatter = logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT)
    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=opts.max_bytes, backupCount=opts.backup_count, encoding="utf-8"
    )
    file_handler.setLevel(opts.level)
    file_handler.setFormatter(formatter)
    _INSTALLED.append(file_handler)

    if opts.console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(max(opts.level, logging.WARNING))
        console_handler.setFormatter(formatter)
        _INSTALLED.append(console_handler)

    for handler in _INSTALLED:
        root.addHandler(handler)
    root.setLevel(opts.level)
    logging.captureWarnings(True)

    quiet_level = max(opts.level, logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)
    return log_path


def _remove_installed(root: logging.Logger) -> None:
    while _INSTALLED:
        handler = _INSTALLED.pop()
        root.removeHandler(handler)
        handler.close()
