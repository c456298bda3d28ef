"""Logging for the Aether usage service.

Emits structured log records to stdout and appends them to an append-only
log file for local review.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from aether_usage.usage import UsageSnapshot

logger = logging.getLogger("aether")


def setup_logging(log_file: str) -> None:
    """Configure the service logger with stdout and file handlers.

    Args:
        log_file: Path to the append-only log file.
    """
    logger.setLevel(logging.INFO)

    if not logger.handlers:
        stdout_handler = logging.StreamHandler()
        stdout_handler.setLevel(logging.INFO)
        stdout_fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        stdout_handler.setFormatter(stdout_fmt)
        logger.addHandler(stdout_handler)

        log_path = Path(log_file)
        os.makedirs(log_path.parent, exist_ok=True)
        file_handler = logging.FileHandler(log_path, mode="a")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(stdout_fmt)
        logger.addHandler(file_handler)


def log_event(
    *,
    user_id: Optional[str],
    action: str,
    outcome: str,
    usage: Optional[UsageSnapshot] = None,
    detail: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
    request_id: Optional[str] = None
) -> None:
    """Log a single business event as one JSON line.

    Args:
        user_id: The user the event concerns.
        action: What was attempted (e.g. "consume", "insight").
        outcome: Short outcome label (e.g. "allowed", "period_limit_reached").
        usage: The user's standing after the event, for quota decisions.
        detail: Extra structured fields.
        error: Error message if something failed.
        request_id: Service-assigned request ID.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "user_id": user_id,
        "action": action,
        "outcome": outcome,
    }

    if usage is not None:
        record["usage"] = {
            "tier": usage.tier.value,
            "kind": usage.kind.value,
            "used": usage.used,
            "limit": usage.limit,
            "remaining": usage.remaining,
            "period": "{}..{}".format(usage.period_start, usage.period_end),
        }

    if detail:
        record["detail"] = detail

    if error:
        record["error"] = error

    logger.info(json.dumps(record, default=str))
