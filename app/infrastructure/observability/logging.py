"""
Structured logging for the API and the queue worker processes.

Every line is JSON with the process role, the queue identifiers bound by
the worker (prospect_id, entry_id, entry_kind) and, for entries, the job
that produced it. Local development can switch to the console renderer.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory

_JOB_BY_ENTRY_KIND = {
    "activity": "activity_queue",
    "opportunity_reprocessing": "reprocessing_sweep",
}


def setup_logging(log_level: str = "INFO", *, role: str = "api", json_logs: bool = True) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        role: Process role stamped on every line (api, activity_queue, queue_cleanup)
        json_logs: JSON output; False renders key=value lines for a terminal
    """
    renderer = (
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _role_stamper(role),
            _add_queue_context,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
        force=True,
    )

    # Per-request client logs would drown the queue worker's output
    for noisy in ("httpx", "httpcore", "openai", "psycopg.pool", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _role_stamper(role: str):
    def stamp_role(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("role", role)
        return event_dict

    return stamp_role


def _add_queue_context(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Derive the job from the queue entry kind bound by the worker."""
    kind = event_dict.get("entry_kind")
    if kind in _JOB_BY_ENTRY_KIND and "job" not in event_dict:
        event_dict["job"] = _JOB_BY_ENTRY_KIND[kind]
    return event_dict


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
