"""Loguru sinks and structured log helpers for research runs."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from awardprobe.config import settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"

NOISY_LOGGERS = (
    "httpx",
    "httpcore",
    "hpack",
    "openai._base_client",
    "asyncpg",
    "asyncio",
)

_configured = False


def configure_logging(log_dir: str | Path | None = None) -> None:
    """Install the console and daily file sinks once per process."""
    global _configured
    if _configured:
        return

    directory = Path(log_dir or settings.log_dir)
    directory.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=settings.app_log_level.upper(), colorize=True)
    logger.add(
        directory / "awardprobe_{time:YYYY-MM-DD}.log",
        format=FILE_FORMAT,
        level="DEBUG",
        rotation="00:00",
        retention="14 days",
        compression="zip",
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(settings.noisy_log_level.upper())
    _configured = True


def _emit(tag: str, level: str, **fields: Any) -> None:
    record = {"timestamp": datetime.now(timezone.utc).isoformat(), **fields}
    logger.opt(depth=2).log(level, f"{tag}: {record}")


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    _emit(
        "LLM_CALL_FAILED" if error else "LLM_CALL",
        "ERROR" if error else "INFO",
        model=model,
        caller=caller,
        tokens={"input": input_tokens, "output": output_tokens},
        duration_ms=duration_ms,
        status=status,
        error=error,
    )


def log_research_step(
    award_id: str,
    step_type: str,
    status: str,
    data: Optional[dict] = None,
) -> None:
    """One orchestrator transition or recorded finding."""
    _emit("RESEARCH_STEP", "INFO", award_id=award_id, step=step_type, status=status, data=data)


def log_store_operation(
    operation: str,
    key: str,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    # Successful reads and writes happen per finding; keep them out of the console.
    _emit(
        "STORE_FAILED" if error else "STORE",
        "ERROR" if error else "DEBUG",
        operation=operation,
        key=key,
        status=status,
        details=details,
        error=error,
    )


def log_event(event_type: str, message: str, **kwargs) -> None:
    _emit("EVENT", "INFO", event_type=event_type, message=message, **kwargs)


configure_logging()
