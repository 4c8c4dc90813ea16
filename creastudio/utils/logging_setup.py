"""
Process-wide logging for the studio.

Every record carries the request context it was emitted under: the chat
session, the provider's video job, the catalog tool and the UI panel. The
context lives in contextvars, so a worker thread has to enter its own
`log_context`.
"""

from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

LOG_FORMAT = (
    "%(asctime)s | %(levelname)s | %(name)s | %(session_id)s | %(job_id)s | %(tool)s | %(panel_id)s | %(message)s"
)
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

LOG_SESSION_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("log_session_id", default=None)
LOG_JOB_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("log_job_id", default=None)
LOG_TOOL: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("log_tool", default=None)
LOG_PANEL_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("log_panel_id", default=None)

CONTEXT_FIELDS: Dict[str, contextvars.ContextVar] = {
    "session_id": LOG_SESSION_ID,
    "job_id": LOG_JOB_ID,
    "tool": LOG_TOOL,
    "panel_id": LOG_PANEL_ID,
}

# HTTP client chatter: one line per poll request otherwise
NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "google_genai")

_CONFIGURED_FLAG = "_studio_logging_configured"


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in CONTEXT_FIELDS.items():
            setattr(record, name, var.get() or "-")
        return True


@contextmanager
def log_context(**fields: Optional[str]) -> Iterator[None]:
    """Tag records inside the block; a None value leaves that field as it was."""
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise TypeError(f"Unknown log context field(s): {', '.join(sorted(unknown))}")
    tokens = [(CONTEXT_FIELDS[name], CONTEXT_FIELDS[name].set(value)) for name, value in fields.items() if value is not None]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def parse_level(level: Union[int, str, None], default: int = logging.INFO) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level or "").strip().upper())
    return value if isinstance(value, int) else default


def configure_logging(
    log_file: str = "logs/studio.log",
    level: Union[int, str] = logging.INFO,
    enable_console: bool = False,
    max_bytes: int = 5_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> logging.Logger:
    root = logging.getLogger()
    if getattr(root, _CONFIGURED_FLAG, False) and not force:
        return root

    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    context_filter = ContextFilter()

    # Root-logger filters skip records propagated from child loggers, so the
    # filter sits on each handler.
    handlers = [RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")]
    if enable_console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)
        root.addHandler(handler)

    root.setLevel(parse_level(level))
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.captureWarnings(True)
    setattr(root, _CONFIGURED_FLAG, True)
    return root
