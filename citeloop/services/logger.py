"""Loguru sinks plus the structured records citeloop writes for LLM calls, provider calls and run steps.

A structured record is one line: a tag followed by a JSON object. Records written by
`log_research_step` carry the run id, so a single run can be grepped out of the daily file.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from citeloop.config import settings

LOG_DIR = Path(settings.log_dir)
CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> <level>{level: <7}</level> "
    "<cyan>{extra[run_id]}</cyan> {name}:{line} {message}"
)
FILE_FORMAT = "{time:YYYY-MM-DDTHH:mm:ss.SSSZ} {level} run={extra[run_id]} {name}:{function}:{line} {message}"
QUIET_LOGGERS = ("httpx", "httpcore", "hpack", "openai._base_client", "trafilatura", "asyncio")


def configure_logging() -> None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logger.remove()
    logger.configure(extra={"run_id": "-"})
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=settings.app_log_level.upper(), colorize=True)
    logger.add(
        LOG_DIR / "citeloop_{time:YYYY-MM-DD}.log",
        format=FILE_FORMAT,
        level="DEBUG",
        rotation="00:00",
        retention="7 days",
        compression="zip",
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(settings.noisy_log_level.upper())


configure_logging()


def _record(tag: str, level: str, payload: dict[str, Any], run_id: Optional[str] = None) -> None:
    fields = {key: value for key, value in payload.items() if value is not None}
    target = logger.bind(run_id=run_id) if run_id else logger
    # depth=2 attributes the line to whoever called the public helper
    target.opt(depth=2).log(level, "{} {}", tag, json.dumps(fields, default=str))


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    """One completion request. Failures log at WARNING since every agent has a fallback."""
    _record(
        "LLM_CALL_FAILED" if error else "LLM_CALL",
        "WARNING" if error else "INFO",
        {
            "model": model,
            "caller": caller,
            "tokens": {"input": input_tokens, "output": output_tokens},
            "duration_ms": duration_ms,
            "status": status,
            "error": error,
        },
    )


def log_provider_call(
    provider: str,
    operation: str,
    status: str,
    results: int = 0,
    duration_ms: int = 0,
    error: Optional[str] = None,
) -> None:
    _record(
        "PROVIDER_CALL_FAILED" if error else "PROVIDER_CALL",
        "WARNING" if error else "DEBUG",
        {
            "provider": provider,
            "operation": operation,
            "status": status,
            "results": results,
            "duration_ms": duration_ms,
            "error": error,
        },
    )


def log_research_step(
    run_id: str,
    step_type: str,
    status: str,
    data: Optional[dict] = None,
) -> None:
    """A stage boundary of one run: rounds, workers, synthesis, gate, routing."""
    _record("RESEARCH_STEP", "INFO", {"step": step_type, "status": status, "data": data}, run_id=run_id)
