"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict
from pythonjsonlogger import jsonlogger

logger = logging.getLogger("charge_engine")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def __init__(self, *args, service_name: str = "charge-engine", **kwargs):
        super().__init__(*args, **kwargs)
        self.service_name = service_name

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = self.service_name


def setup_logging(level: str = "INFO", service_name: str = "charge-engine") -> None:
    """Configure structured JSON logging"""
    root = logging.getLogger()
    root.setLevel(level)

    # Remove existing handlers
    root.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        service_name=service_name,
    )
    handler.setFormatter(formatter)
    root.addHandler(handler)


def log_event(event: str, message: str, level: int = logging.INFO, **fields: Any) -> None:
    """
    Log one named business event.

    The event name lands in the record as ``event`` so operators can filter on
    it, e.g. ``seasonal-discount-partial-applied`` vs a full discount.
    """
    logger.log(level, message, extra={"event": event, **_stringify_ids(fields)})


def _stringify_ids(fields: Dict[str, Any]) -> Dict[str, Any]:
    # UUIDs and dates are not JSON-native
    return {
        key: value if value is None or isinstance(value, (str, int, float, bool, list, dict)) else str(value)
        for key, value in fields.items()
    }
