"""Logging helpers for diffscout.

Every record carries the session key of the analysis that emitted it, so the
interleaved output of concurrent analyses and their subagents can be told
apart in one log file. Outside any analysis the key renders as ``-``.
"""

from __future__ import annotations

import contextlib
import contextvars
import logging
import logging.handlers
import os
from pathlib import Path
from typing import Iterator

__all__ = ["SessionFilter", "current_session", "session_context", "setup_logging"]

_DEFAULT_LOG_DIR = Path.home() / ".diffscout" / "logs"
_LOG_FILE_NAME = "diffscout.log"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_NO_SESSION = "-"
_CONFIGURED = False
_LOG_PATH: Path | None = None

_SESSION_KEY: contextvars.ContextVar[str] = contextvars.ContextVar("diffscout_session", default=_NO_SESSION)


def current_session() -> str:
    return _SESSION_KEY.get()


@contextlib.contextmanager
def session_context(key: str) -> Iterator[None]:
    """Tag records logged inside the block (and tasks it spawns) with *key*."""

    token = _SESSION_KEY.set(key)
    try:
        yield
    finally:
        _SESSION_KEY.reset(token)


class SessionFilter(logging.Filter):
    """Adds ``record.session`` for the ``%(session)s`` format field."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session = _SESSION_KEY.get()
        return True


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    log_file: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging with a rotating file handler and optional stderr output.

    ``log_file`` names the file directly and wins over ``log_dir`` and the
    ``DIFFSCOUT_LOG_DIR`` environment variable.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    log_path = _resolve_log_path(log_dir, log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(session)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    session_filter = SessionFilter()

    handlers: list[logging.Handler] = []
    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(level)
    handlers.append(file_handler)

    if console:
        # stdout carries the analysis text, so diagnostics go to stderr.
        console_handler = logging.StreamHandler()
        console_handler.setLevel(max(level, logging.WARNING))
        handlers.append(console_handler)

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(session_filter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def _resolve_log_path(log_dir: Path | str | None, log_file: Path | str | None) -> Path:
    if log_file:
        return Path(log_file).expanduser()
    env_override = os.environ.get("DIFFSCOUT_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser() / _LOG_FILE_NAME


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
