"""Structured logging setup."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog

from mce.config import LoggingConfig

_CONFIGURED = False


def configure_logging(config: LoggingConfig | None = None, *, force: bool = False) -> None:
    """Configure process-wide structlog output. Safe to call more than once."""
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    cfg = config or LoggingConfig()
    level = getattr(logging, str(cfg.level).upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter("%(message)s")
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "_mce", False) for h in root.handlers):
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(formatter)
        stream._mce = True  # type: ignore[attr-defined]
        root.addHandler(stream)
    if cfg.log_path:
        path = Path(cfg.log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler._mce = True  # type: ignore[attr-defined]
        root.addHandler(file_handler)

    renderer = (
        structlog.processors.JSONRenderer()
        if cfg.json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def reset_logging() -> None:
    """Undo configure_logging: drop our handlers and restore structlog defaults."""
    global _CONFIGURED
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_mce", False):
            root.removeHandler(handler)
    structlog.reset_defaults()
    _CONFIGURED = False


def get_logger(name: str):
    return structlog.get_logger(name)


def preview(text: str | None, limit: int = 80) -> str:
    """Single-line truncation of user text for log fields."""
    flat = " ".join(str(text or "").split())
    return flat if len(flat) <= limit else flat[: limit - 3] + "..."
