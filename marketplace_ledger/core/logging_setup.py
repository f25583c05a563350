from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone

from marketplace_ledger.core.config import LOG_LEVEL
from marketplace_ledger.core.request_context import get_request_id, get_shop_id, get_user_id

_SENSITIVE_PATTERNS = [
    re.compile(r"(authorization\s*[:=]\s*bearer\s+)([^\s\"]+)", re.IGNORECASE),
    re.compile(r"(sk_(?:live|test)_)([A-Za-z0-9]+)"),
    re.compile(r"(secret\s*[:=]\s*)([^\s\",}]+)", re.IGNORECASE),
    re.compile(r"(client_secret\s*[:=]\s*)([^\s\",}]+)", re.IGNORECASE),
]

_OPTIONAL_FIELDS = ("endpoint", "method", "status_code", "order_id", "payout_id", "transfer_id")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "request_id": getattr(record, "request_id", None) or get_request_id(),
            "shop_id": getattr(record, "shop_id", None) or get_shop_id(),
            "user_id": getattr(record, "user_id", None) or get_user_id(),
            "module": record.name,
            "message": self._mask(record.getMessage()),
            "duration_ms": getattr(record, "duration_ms", None),
        }
        for field in _OPTIONAL_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exception"] = self._mask(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=False, default=str)

    def _mask(self, value: str) -> str:
        masked = value
        for pattern in _SENSITIVE_PATTERNS:
            masked = pattern.sub(r"\1***", masked)
        return masked


def configure_logging() -> None:
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(LOG_LEVEL)

    handler = logging.StreamHandler()
    formatter = JsonFormatter("%(message)s")
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(logger_name).setLevel(LOG_LEVEL)
