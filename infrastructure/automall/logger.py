"""
Structured JSON Logging for Automall provisioning
=================================================
One JSON line per log record, so a deploy run can be grepped or shipped to
CloudWatch Logs Insights as-is.

Usage:
  from automall.logger import get_logger
  logger = get_logger(__name__)
  logger.info("Resource ready", extra={"resource_id": "db", "action": "created"})

Output:
  {"timestamp":"2024-01-01T00:00:00Z","level":"INFO","logger":"automall.backend",
   "message":"Resource ready","resource_id":"db","action":"created"}

Credential-looking extra fields are replaced with "***" before serialization.
"""
from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

# Standard logging.LogRecord fields we don't want in the output
_STDLIB_FIELDS = {
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "created", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "message", "taskName",
}

_SENSITIVE_MARKERS = ("password", "secret", "api_key", "token")

_configured = False


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SENSITIVE_MARKERS)


def redact(value: Any) -> Any:
    """Copy of `value` with credential-looking dict entries masked, at any depth."""
    if isinstance(value, dict):
        return {
            k: "***" if isinstance(k, str) and _is_sensitive(k) else redact(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        log_obj: dict[str, Any] = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }

        for key, value in record.__dict__.items():
            if key in _STDLIB_FIELDS:
                continue
            log_obj[key] = "***" if _is_sensitive(key) else redact(value)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def get_logger(name: str) -> logging.Logger:
    """
    Return a logger configured to emit structured JSON to stderr, leaving
    stdout to the CLI (plans, outputs).
    Idempotent: safe to call multiple times.
    """
    global _configured
    if not _configured:
        root = logging.getLogger()
        formatter = _JsonFormatter()
        if root.handlers:
            for h in root.handlers:
                h.setFormatter(formatter)
        else:
            handler = logging.StreamHandler()
            handler.setFormatter(formatter)
            root.addHandler(handler)
        log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
        root.setLevel(getattr(logging, log_level, logging.INFO))
        # credential discovery and retry chatter
        for noisy in ("botocore", "boto3", "urllib3"):
            logging.getLogger(noisy).setLevel(max(root.level, logging.WARNING))
        _configured = True
    return logging.getLogger(name)
