from __future__ import annotations

import json
import logging
import sys
from logging import LogRecord
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace

_STDLIB_RECORD_FIELDS = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime", "taskName"}

# Third-party loggers that are chatty at INFO.
_QUIET_LOGGERS = {
    "sqlalchemy.engine": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "apscheduler.executors.default": logging.WARNING,
}

_TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level> | {extra}"
)


class InterceptHandler(logging.Handler):
    """Route stdlib logging (SQLAlchemy, APScheduler, Alembic) into Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            message = record.getMessage()
        except Exception:  # pragma: no cover - malformed format strings
            message = str(record.msg)

        context = {key: value for key, value in vars(record).items() if key not in _STDLIB_RECORD_FIELDS}
        target = logger.bind(stdlib_logger=record.name, **context)
        target.opt(depth=6, exception=record.exc_info).log(level, message.replace("{", "{{").replace("}", "}}"))


def build_log_payload(record: Dict[str, Any], metadata: Dict[str, str]) -> Dict[str, Any]:
    """Flatten a Loguru record into the JSON document shipped to the log pipeline."""

    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        **metadata,
    }

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    payload.update(record["extra"])

    if record["exception"] is not None:
        payload["exception"] = repr(record["exception"].value)
    return payload


def configure_logging(
    *,
    service_name: str,
    environment: str,
    version: str,
    level: str = "INFO",
) -> None:
    """Install the Loguru sinks and bridge stdlib logging into them.

    Development gets colourised text on stderr; every other environment emits
    one JSON document per line on stdout, tagged with service metadata and the
    active OpenTelemetry span.
    """

    logger.remove()
    if environment == "development":
        logger.add(sys.stderr, level=level, format=_TEXT_FORMAT, backtrace=True, diagnose=False)
    else:
        metadata = {"service": service_name, "environment": environment, "version": version}

        def _sink(message: "logger.Message") -> None:
            sys.stdout.write(json.dumps(build_log_payload(message.record, metadata), default=str) + "\n")

        logger.add(_sink, level=level, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)


__all__ = ["InterceptHandler", "build_log_payload", "configure_logging"]
