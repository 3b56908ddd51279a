"""Logging configuration helpers for the Tasseo workers."""

from __future__ import annotations

import logging
import os
from typing import Any, MutableMapping


def _resolve_level(level_name: str) -> int:
    return getattr(logging, level_name.upper(), logging.INFO)


def configure_logging(level_name: str | None = None) -> None:
    """Configure root logging using LOG_LEVEL and a concise format."""
    level = _resolve_level(level_name or os.getenv("LOG_LEVEL", "INFO"))
    formatter = _build_formatter()
    root_logger = logging.getLogger()

    if root_logger.handlers:
        root_logger.setLevel(level)
        for handler in root_logger.handlers:
            handler.setLevel(level)
            handler.setFormatter(formatter)
    else:
        logging.basicConfig(level=level)
        for handler in logging.getLogger().handlers:
            handler.setFormatter(formatter)

    # Quiet noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _build_formatter() -> logging.Formatter:
    pattern = "%(asctime)s %(levelname)s %(name)s job_id=%(job_id)s identity=%(identity)s %(message)s"
    return logging.Formatter(pattern, defaults={"job_id": "-", "identity": "-"})


class JobLogAdapter(logging.LoggerAdapter):
    """Attaches job_id / identity to every record emitted while handling a job."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def job_logger(logger: logging.Logger, *, job_id: Any, identity: Any) -> JobLogAdapter:
    return JobLogAdapter(logger, {"job_id": job_id, "identity": identity})
