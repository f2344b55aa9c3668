"""
Structured JSON logging.

Every record is one JSON line carrying the active job and store from
context variables. Buyer phone numbers passed through `extra_data` under
`to`, `phone` or `from` are masked before they are written.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from contextvars import ContextVar

# Current queue job (event id or ingestion run id) and store being worked on
job_id_ctx: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
store_id_ctx: ContextVar[Optional[str]] = ContextVar("store_id", default=None)

_PHONE_KEYS = frozenset({"to", "phone", "from"})


def mask_phone(phone: Optional[str]) -> str:
    """Keep the prefix and last four digits of a phone number for log lines."""
    s = (phone or "").strip()
    if len(s) < 6:
        return "***" if s else s
    return f"{s[:2]}******{s[-4:]}"


class JSONFormatter(logging.Formatter):
    def __init__(self, service: str = "orderdesk"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
            "service": self.service,
        }

        job_id = job_id_ctx.get()
        if job_id:
            log_data["job_id"] = job_id
        store_id = store_id_ctx.get()
        if store_id:
            log_data["store_id"] = store_id

        extra = getattr(record, "extra_data", None)
        if isinstance(extra, dict):
            for key, value in extra.items():
                if key in _PHONE_KEYS and isinstance(value, str) and "*" not in value:
                    value = mask_phone(value)
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Buyer text is often Arabic or French; keep it readable
        return json.dumps(log_data, default=str, ensure_ascii=False)


def setup_logging(level: str = "INFO", service: str = "orderdesk"):
    """Route the root logger to stdout as JSON lines."""
    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service))
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").disabled = True
    for noisy in ("httpx", "httpcore", "aiosqlite", "sentence_transformers"):
        logging.getLogger(noisy).setLevel("WARNING")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
