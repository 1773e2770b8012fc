"""Structured JSON logging configuration.

When DEBUG=true, logs in human-readable format for local development.
When DEBUG=false, logs as single-line JSON for production log aggregators.

Every handler carries a SensitiveValueFilter so an SSN interpolated into a
log message by mistake is masked before it reaches any sink.
"""

import json
import logging
import re
import sys
from datetime import datetime, timezone

from config import get_settings

# 123-45-6789, 123 45 6789 and bare 123456789, not inside longer tokens
# such as hex digests
_SSN_LIKE = re.compile(r"(?<![0-9A-Za-z])\d{3}[- ]?\d{2}[- ]?\d{4}(?![0-9A-Za-z])")
SSN_MASK = "***-**-****"


def redact_ssns(text: str) -> str:
    """Replace anything shaped like an SSN with a fixed mask."""
    return _SSN_LIKE.sub(SSN_MASK, text)


class SensitiveValueFilter(logging.Filter):
    """Mask SSN-shaped values in the rendered log message."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_ssns(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = redact_ssns(self.formatException(record.exc_info))

        user_id = getattr(record, "user_id", None)
        if user_id is not None:
            payload["user_id"] = user_id

        return json.dumps(payload, default=str)


def setup_logging() -> None:
    """Configure root logger based on the DEBUG setting."""
    settings = get_settings()

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if settings.debug else logging.INFO)

    # Remove any pre-existing handlers
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(SensitiveValueFilter())

    if settings.debug:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
                datefmt="%H:%M:%S",
            )
        )
    else:
        handler.setFormatter(JSONFormatter())

    root.addHandler(handler)

    # Quiet down noisy libraries in production
    if not settings.debug:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
        logging.getLogger("aiosqlite").setLevel(logging.WARNING)
        logging.getLogger("alembic").setLevel(logging.WARNING)
