import json
import logging

from logging_config import JsonFormatter, log_event, request_id_var, setup_logging


def _record(logger_name="inventory.ledger", **extra):
    record = logging.LogRecord(logger_name, logging.INFO, __file__, 1, "sale_recorded qty=2", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_adds_request_id_and_context():
    token = request_id_var.set("req-123")
    try:
        line = JsonFormatter().format(_record(context={"event": "sale_recorded", "product_id": "p1", "qty": 2}))
    finally:
        request_id_var.reset(token)

    payload = json.loads(line)
    assert payload["request_id"] == "req-123"
    assert payload["context"] == {"event": "sale_recorded", "product_id": "p1", "qty": 2}
    assert payload["message"] == "sale_recorded qty=2"


def test_formatter_without_request_context():
    payload = json.loads(JsonFormatter().format(_record()))
    assert "request_id" not in payload
    assert "context" not in payload


def test_log_event_writes_fields_as_text_and_context(caplog):
    logger = logging.getLogger("inventory.ledger")
    with caplog.at_level(logging.INFO, logger="inventory.ledger"):
        log_event(logger, "purchase_deleted", purchase_id="x1", stock_after=4)

    record = caplog.records[-1]
    assert record.getMessage() == "purchase_deleted purchase_id=x1 stock_after=4"
    assert record.context == {"event": "purchase_deleted", "purchase_id": "x1", "stock_after": 4}


def test_ledger_events_reach_ledger_log(tmp_path, ledger):
    root = logging.getLogger()
    ledger_logger = logging.getLogger("inventory.ledger")
    root_before, ledger_before, level_before = list(root.handlers), list(ledger_logger.handlers), root.level
    setup_logging(tmp_path, "INFO")
    try:
        product = ledger.create_product("Logged", 1.0, 2.0, 3)
        for handler in ledger_logger.handlers:
            handler.flush()
        lines = [json.loads(line) for line in (tmp_path / "ledger.log").read_text(encoding="utf-8").splitlines()]
    finally:
        for handler in set(root.handlers) - set(root_before):
            root.removeHandler(handler); handler.close()
        for handler in set(ledger_logger.handlers) - set(ledger_before):
            ledger_logger.removeHandler(handler); handler.close()
        root.setLevel(level_before)

    created = [line for line in lines if line.get("context", {}).get("event") == "product_created"]
    assert created[-1]["context"]["product_id"] == product.product_id
    assert (tmp_path / "app.log").exists()


def test_request_id_header(client):
    assert client.get("/health", headers={"X-Request-ID": "abc"}).headers["X-Request-ID"] == "abc"
    assert len(client.get("/health").headers["X-Request-ID"]) == 32
