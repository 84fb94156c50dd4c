# src/devenv/core/logging.py
from __future__ import annotations

import datetime as dt
import logging
import os
import sys
from typing import Tuple

import structlog

from devenv.core.ctx import get_ctx

# Context fields we want present on every record
CTX_FIELDS: Tuple[str, ...] = (
    "phase",
    "service",
    "resource",
)

# Keep a handle to the original factory
_old_factory = logging.getLogRecordFactory()


def _record_factory(*args, **kwargs):
    """
    Global LogRecord factory that attaches context fields to *every* record,
    so formatters like '%(service)s' won't explode for third-party logs.
    """
    rec: logging.LogRecord = _old_factory(*args, **kwargs)
    ctx = get_ctx()

    for f in CTX_FIELDS:
        if not hasattr(rec, f):
            rec.__dict__[f] = ctx.get(f)

    return rec


logging.setLogRecordFactory(_record_factory)


class _SafeFormatter(logging.Formatter):
    """ISO8601 UTC timestamps and resilience to missing context fields."""
    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "asctime"):
            record.asctime = dt.datetime.now(dt.timezone.utc).isoformat(timespec="seconds")
        for f in CTX_FIELDS:
            if not hasattr(record, f):
                record.__dict__[f] = None
        return super().format(record)


def _json_formatter() -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.ExtraAdder(),
            structlog.processors.TimeStamper(fmt="iso"),
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
    )


def _build_handler() -> logging.Handler:
    h = logging.StreamHandler(sys.stderr)
    fmt = os.getenv(
        "LOG_FORMAT",
        "%(asctime)s %(levelname)s %(name)s "
        "phase=%(phase)s service=%(service)s resource=%(resource)s "
        "msg=%(message)s"
    )
    if fmt.strip().lower() == "json":
        h.setFormatter(_json_formatter())
    else:
        h.setFormatter(_SafeFormatter(fmt))
    return h


def configure_logging(level: str | None = None) -> None:
    root = logging.getLogger()
    if not root.handlers:
        root.addHandler(_build_handler())
    root.setLevel(level or os.getenv("LOG_LEVEL", "INFO"))

    # Calm down noisy libs
    for noisy in ("botocore", "boto3", "urllib3", "httpx", "httpcore", "docker", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
