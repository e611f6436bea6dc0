"""Structured logging helper shared by the job engine and adapters."""

from __future__ import annotations

import logging
from typing import Any


def structured_log(
    logger: logging.Logger,
    level: str,
    event: str,
    /,
    **fields: Any,
) -> None:
    """Emit a structured log entry.

    The event name is passed as the log message; ``JsonLogFormatter`` picks it
    up through ``record.getMessage()``, so it is not duplicated into ``extra``.

    Usage:
        structured_log(logger, "info", "jobs.phase_started", job_id=job_id, phase="links")
    """
    exc_info = fields.pop("exc_info", None)
    log_method = getattr(logger, level.lower())
    log_method(event, extra=fields, exc_info=exc_info)
