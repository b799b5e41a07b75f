"""Centralized logging service using loguru."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from tangotales.config import settings

# Remove default handler
logger.remove()

# Add console handler with color
logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

# Add file handler
if settings.log_to_file:
    LOG_DIR = Path(settings.log_dir)
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logger.add(
        LOG_DIR / "tangotales_{time:YYYY-MM-DD}.log",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
        level="DEBUG",
        rotation="00:00",
        retention="7 days",
        compression="zip",
    )

# Reduce noise from network/SDK libraries
for logger_name in (
    "httpx",
    "httpcore",
    "hpack",
    "google_genai",
    "google_genai.models",
    "asyncio",
):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    """Log a Gemini API call."""
    call_data = {
        "timestamp": _now(),
        "model": model,
        "caller": caller,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
        "duration_ms": duration_ms,
        "status": status,
        "error": error,
    }
    if error:
        logger.error(f"LLM_CALL_FAILED: {call_data}")
    else:
        logger.info(f"LLM_CALL: {call_data}")


def log_phase(
    subject_id: str,
    phase: str,
    status: str,
    data: Optional[dict] = None,
) -> None:
    """Log one enrichment phase transition."""
    phase_data = {
        "timestamp": _now(),
        "subject_id": subject_id,
        "phase": phase,
        "status": status,
        "data": data,
    }
    if status == "fallback":
        logger.warning(f"ENRICHMENT_PHASE: {phase_data}")
    else:
        logger.info(f"ENRICHMENT_PHASE: {phase_data}")


def log_link_validation(
    url: str,
    is_valid: bool,
    http_status: Optional[int] = None,
    duration_ms: int = 0,
    error: Optional[str] = None,
) -> None:
    """Log a single link probe."""
    probe_data = {
        "timestamp": _now(),
        "url": url,
        "is_valid": is_valid,
        "http_status": http_status,
        "duration_ms": duration_ms,
        "error": error,
    }
    if is_valid:
        logger.debug(f"LINK_VALIDATION: {probe_data}")
    else:
        logger.info(f"LINK_VALIDATION_FAILED: {probe_data}")


def log_store_operation(
    operation: str,
    subject_id: str,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Log a subject store operation."""
    op_data = {
        "timestamp": _now(),
        "operation": operation,
        "subject_id": subject_id,
        "status": status,
        "details": details,
        "error": error,
    }
    if error:
        logger.error(f"STORE_OPERATION_FAILED: {op_data}")
    else:
        logger.info(f"STORE_OPERATION: {op_data}")


def log_event(
    event_type: str,
    message: str,
    **kwargs: Any,
) -> None:
    """Log a generic event."""
    event_data = {
        "timestamp": _now(),
        "event_type": event_type,
        "message": message,
        **kwargs,
    }
    logger.info(f"EVENT: {event_data}")
