"""Logging Hardening and Redaction.

This module provides filters to prevent key material and encrypted payloads
from appearing in application logs.
"""
import logging
import re

SECRET_PATTERNS = [
    # Bech32 private keys
    (re.compile(r"nsec1[02-9ac-hj-np-z]{58}"), "nsec1[REDACTED]"),
    # Hex key material next to an obvious label
    (re.compile(r"((?:secret|private_key|privkey|conversation_key)[\"']?\s*[:=]\s*[\"']?)[0-9a-f]{64}"), r"\1[REDACTED]"),
    # Encrypted event content in serialized events
    (re.compile(r'("content":\s*")[A-Za-z0-9+/=]{32,}(")'), r"\1[REDACTED]\2"),
]


def redact(text: str) -> str:
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class SecretRedactionFilter(logging.Filter):
    """Filter that redacts secret-like patterns from log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)

        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                redact(arg) if isinstance(arg, str) else arg for arg in record.args
            )

        return True


def setup_logging_redaction() -> None:
    """Apply the SecretRedactionFilter to the root logger and all known loggers."""
    redact_filter = SecretRedactionFilter()

    root_logger = logging.getLogger()
    for f in root_logger.filters[:]:
        if isinstance(f, SecretRedactionFilter):
            root_logger.removeFilter(f)
    root_logger.addFilter(redact_filter)

    for name in list(logging.root.manager.loggerDict):
        logger = logging.getLogger(name)
        for f in logger.filters[:]:
            if isinstance(f, SecretRedactionFilter):
                logger.removeFilter(f)
        logger.addFilter(redact_filter)

    logging.info("Logging redaction filters active.")
