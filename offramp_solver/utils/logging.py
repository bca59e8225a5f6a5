"""Structured logging setup.

Every record leaving the process carries the emitting service ("solver" or
"attestor") plus any fields bound with `bind_log_fields` (solver address,
chain id). Secrets passed as `extra` are masked before formatting.
"""

import logging
import sys
from typing import Any, TextIO

import structlog
from pythonjsonlogger import jsonlogger

# Third-party loggers that are chatty at INFO.
_NOISY_LOGGERS = ("httpx", "httpcore", "web3", "urllib3", "uvicorn.access")

# `extra` keys whose values never reach a log line.
REDACTED_KEYS = frozenset(
    {
        "api_key",
        "api_secret",
        "authorization",
        "private_key",
        "solver_private_key",
        "witness_private_key",
        "x-solver-api-key",
    }
)
REDACTED = "***"

_bound_fields: dict[str, Any] = {}


def bind_log_fields(**fields: Any) -> None:
    """Attach fields to every subsequent record (e.g. solver=0x...)."""
    _bound_fields.update(fields)


class _SolverContextFilter(logging.Filter):
    """Stamps service and bound fields onto records, masking secrets."""

    def __init__(self, service: str) -> None:
        super().__init__()
        self.service = service

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "service"):
            record.service = self.service
        for key, value in _bound_fields.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        for key in REDACTED_KEYS:
            if getattr(record, key, None) is not None:
                setattr(record, key, REDACTED)
        return True


def _add_bound_fields(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key, value in _bound_fields.items():
        event_dict.setdefault(key, value)
    for key in REDACTED_KEYS & event_dict.keys():
        event_dict[key] = REDACTED
    return event_dict


def setup_logging(
    level: str = "INFO",
    fmt: str = "json",
    service: str = "solver",
    stream: TextIO | None = None,
) -> None:
    """Setup structured logging.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        fmt: "json" for machine-readable output, "console" for humans.
        service: Value of the `service` field on every record.
        stream: Output stream; stdout by default.
    """
    log_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(log_level)
    handler.addFilter(_SolverContextFilter(service))

    if fmt == "json":
        formatter = jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(service)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _add_bound_fields,
            structlog.processors.UnicodeDecoder(),
            (
                structlog.processors.JSONRenderer()
                if fmt == "json"
                else structlog.dev.ConsoleRenderer()
            ),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.info(f"Logging configured: level={level}, format={fmt}")
