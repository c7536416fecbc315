"""
Centralized logging for BSC Alpha Engine.

Per-component log files under logs/<Module_Folder>/ with a human-readable
format, plus one JSON-lines trace log that follows a trade from scan to
ledger:

    candidates_ranked -> sizing_decision -> execution_confirmed

Usage:
    from bot_logging.logger_manager import log_trace, setup_module_logger

    logger = setup_module_logger("exit_engine", "exit_engine.log", module_folder="Exit_Engine_Logs")
    log_trace("sizing_decision", request_id, "engine", {"allocation": "191.36"})
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from config.loader import get_config

_PROJECT_ROOT = Path(__file__).parent.parent

_logging_cfg = get_config().get_app_config().get("logging", {})

_LOG_DIR = str(_PROJECT_ROOT / _logging_cfg.get("log_dir", "logs"))
_TRACE_FOLDER: str = _logging_cfg.get("module_folders", {}).get("deep_dive", "Deep_Dive_Logs")

# Extra attributes copied from ``extra={...}`` into JSON records.
_CONTEXT_KEYS = ("symbol", "asset_id", "execution_id", "source", "tx_hash", "error")


# ============================================================================
# FORMATTERS
# ============================================================================


class JSONFormatter(logging.Formatter):
    """One JSON object per line; a ``trace`` extra is merged in at top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _CONTEXT_KEYS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        trace = getattr(record, "trace", None)
        if isinstance(trace, dict):
            entry.update(trace)
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-22s | %(message)s"
    DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

    def __init__(self) -> None:
        super().__init__(fmt=self.FORMAT, datefmt=self.DATE_FORMAT)


# ============================================================================
# LOGGER FACTORY
# ============================================================================

_logger_cache: dict[str, logging.Logger] = {}


def setup_module_logger(
    name: str,
    log_file: str,
    level: int = logging.INFO,
    module_folder: str | None = None,
    use_json_formatter: bool = False,
) -> logging.Logger:
    """
    Create (or return the cached) file logger for one component.

    Args:
        name: Logger name, unique per component.
        log_file: File name, placed inside ``module_folder`` when given.
        level: Logging level (default INFO).
        module_folder: Subfolder of the log dir, e.g. "Execution_Logs".
        use_json_formatter: Write JSON lines instead of the human format.
    """
    cache_key = f"{name}:{module_folder}:{log_file}"
    cached = _logger_cache.get(cache_key)
    if cached is not None:
        return cached

    logger = logging.getLogger(name)
    logger.setLevel(level)
    # Each component owns its file; nothing goes to the root logger.
    logger.propagate = False

    if not logger.handlers:
        folder = os.path.join(_LOG_DIR, module_folder) if module_folder else _LOG_DIR
        os.makedirs(folder, exist_ok=True)

        handler = logging.FileHandler(os.path.join(folder, log_file), mode="a", encoding="utf-8")
        handler.setLevel(level)
        handler.setFormatter(JSONFormatter() if use_json_formatter else HumanReadableFormatter())
        logger.addHandler(handler)

    _logger_cache[cache_key] = logger
    return logger


# ============================================================================
# TRADE TRACE
# ============================================================================

_trace_logger: logging.Logger | None = None


def _get_trace_logger() -> logging.Logger:
    global _trace_logger
    if _trace_logger is None:
        _trace_logger = setup_module_logger(
            "trade_trace", "trade_trace.log", module_folder=_TRACE_FOLDER, use_json_formatter=True
        )
    return _trace_logger


def log_trace(
    event: str,
    trace_id: str,
    stage: str,
    data: Any,
    next_stage: str | None = None,
) -> None:
    """
    Append one step of a trade's path to the trace log.

    ``trace_id`` ties steps together: the scan number for ranked batches,
    the execution id from sizing onwards.
    """
    _get_trace_logger().info(
        event,
        extra={
            "trace": {
                "event": event,
                "trace_id": trace_id,
                "stage": stage,
                "next_stage": next_stage,
                "data": data,
            }
        },
    )
