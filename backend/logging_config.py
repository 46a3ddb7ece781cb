"""
JSON-line logging.

Each line carries the request id of the HTTP call that produced it (set
by the middleware in ``main``) and, for ledger events, the structured
fields passed to :func:`log_event` under ``"context"``.
"""
import json
import logging
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

LEDGER_LOGGER = "inventory.ledger"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None) or request_id_var.get()
        if request_id:
            payload["request_id"] = request_id
        context = getattr(record, "context", None)
        if isinstance(context, dict):
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields) -> None:
    """Log ``event k=v ...`` and keep the fields as structured context."""
    text = " ".join([event] + [f"{k}={v}" for k, v in fields.items()])
    logger.log(level, text, extra={"context": {"event": event, **fields}})


def _handler(path: Path, level: int) -> RotatingFileHandler:
    fh = RotatingFileHandler(path, maxBytes=2_000_000, backupCount=5, encoding="utf-8")
    fh.setFormatter(JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S"))
    fh.setLevel(level)
    return fh


def setup_logging(logs_dir: Path, level: str = "INFO") -> None:
    logs_dir = Path(logs_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    if any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        return

    root.addHandler(_handler(logs_dir / "app.log", logging.INFO))
    root.addHandler(_handler(logs_dir / "errors.log", logging.ERROR))

    # stock mutations and rejections, kept apart for auditing
    ledger_log = logging.getLogger(LEDGER_LOGGER)
    ledger_log.addHandler(_handler(logs_dir / "ledger.log", logging.INFO))
    ledger_log.setLevel(logging.INFO)
