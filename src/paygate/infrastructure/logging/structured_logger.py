"""Structured logging with correlation tracking and sensitive data masking."""

import logging
import re
import sys
from typing import Any, Dict, List, Optional

import structlog

from ..config.settings import LoggingConfig

_configured = False


class SensitiveDataMasker:
    """Masks sensitive data in log messages."""

    mask_value = "***MASKED***"

    _patterns = [
        (re.compile(r"\b(sk|rk|whsec)_(test|live)?_?[A-Za-z0-9]+\b"), r"\1_***"),  # Vendor secrets
        (re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"), "XXXX-XXXX-XXXX-XXXX"),  # Card
        (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "email@masked.com"),
    ]

    def __init__(self, sensitive_fields: List[str]):
        self.sensitive_fields = set(field.lower() for field in sensitive_fields)

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively mask sensitive fields in dictionary."""
        masked_data = {}

        for key, value in data.items():
            if isinstance(key, str) and key.lower() in self.sensitive_fields:
                masked_data[key] = self.mask_value
            elif isinstance(value, dict):
                masked_data[key] = self.mask_dict(value)
            elif isinstance(value, list):
                masked_data[key] = [
                    self.mask_dict(item) if isinstance(item, dict) else item
                    for item in value
                ]
            else:
                masked_data[key] = value

        return masked_data

    def mask_string(self, text: str) -> str:
        """Mask sensitive patterns in string."""
        for pattern, replacement in self._patterns:
            text = pattern.sub(replacement, text)
        return text


class SensitiveDataProcessor:
    """Masks sensitive data in log records."""

    def __init__(self, masker: SensitiveDataMasker):
        self.masker = masker

    def __call__(self, logger, method_name, event_dict):
        masked_dict = self.masker.mask_dict(event_dict)

        if isinstance(masked_dict.get("event"), str):
            masked_dict["event"] = self.masker.mask_string(masked_dict["event"])

        return masked_dict


def configure_logging(config: Optional[LoggingConfig] = None, force: bool = False) -> None:
    """Configure structlog on top of the standard library logging module."""
    global _configured
    if _configured and not force:
        return

    config = config or LoggingConfig()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, config.level),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        SensitiveDataProcessor(SensitiveDataMasker(config.sensitive_fields)),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if config.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True

    structlog.get_logger(__name__).info(
        "Structured logging configured",
        level=config.level,
        format=config.format,
        sensitive_fields_count=len(config.sensitive_fields),
    )


def bind_correlation_id(correlation_id: str, **extra: Any) -> None:
    """Bind a correlation id (and extra keys) to every log line of this context."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id, **extra)
