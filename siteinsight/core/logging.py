"""SiteInsight: Structured JSON Logging.

Provider error bodies and httpx exception text can echo request headers or
form fields, so every rendered message and traceback passes through
`redact_secrets` before it is written.
"""

import json
import logging
import re
import sys
from datetime import datetime, timezone

from siteinsight.config import settings

REDACTED = "[REDACTED]"

_SECRET_PATTERNS = [
    # Authorization: Bearer <token>
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+"),
    # access_token=..., "refresh_token": "...", client_secret=...
    re.compile(
        r"(?i)((?:access_token|refresh_token|client_secret|id_token)[\"']?\s*[:=]\s*[\"']?)"
        r"[^\s\"'&,}]+"
    ),
    # Google OAuth access tokens (ya29.) and refresh tokens (1//)
    re.compile(r"()\bya29\.[A-Za-z0-9._-]+"),
    re.compile(r"()\b1//[A-Za-z0-9._-]{10,}"),
]

EXTRA_FIELDS = ("site_id", "provider", "job", "duration_ms", "status_code")


def redact_secrets(text: str) -> str:
    """Mask bearer tokens and OAuth secrets embedded in free text."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda m: f"{m.group(1)}{REDACTED}", text)
    return text


class JSONFormatter(logging.Formatter):
    """Produces structured JSON log lines for production observability."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_secrets(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = redact_secrets(self.formatException(record.exc_info))
        for key in EXTRA_FIELDS:
            if hasattr(record, key):
                value = getattr(record, key)
                log_entry[key] = redact_secrets(value) if isinstance(value, str) else value
        return json.dumps(log_entry, ensure_ascii=False)


def get_logger(name: str) -> logging.Logger:
    """Return a named logger with structured JSON handler."""
    logger = logging.getLogger(f"siteinsight.{name}")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return logger
