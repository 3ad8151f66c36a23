import json
import logging

from app.logging import JsonFormatter, MaskingFilter, mask_sensitive


def test_request_id_header_and_propagation(client):
    resp = client.get("/__ok", headers={"X-Request-ID": "my-fixed-id-123"})
    assert resp.status_code == 200
    assert resp.headers.get("X-Request-ID") == "my-fixed-id-123"


def test_request_id_generated_when_missing(client):
    resp = client.get("/__ok")
    assert len(resp.headers.get("X-Request-ID", "")) == 32


def test_logs_include_request_id_attribute(client, caplog):
    caplog.set_level("INFO")
    resp = client.get("/__log", headers={"X-Request-ID": "rid-abc"})
    assert resp.status_code == 200
    assert any(getattr(r, "request_id", "") == "rid-abc" for r in caplog.records)


def test_sensitive_fields_masked_in_info(app, monkeypatch, caplog):
    monkeypatch.setenv("APP_ENV", "testing")
    caplog.set_level("INFO")
    caplog.handler.addFilter(MaskingFilter())
    logger = logging.getLogger("mask_test")
    logger.info({"email": "user@example.com", "token": "card-token",
                 "payer": {"identification_number": "12345678"}, "order_number": "RMM-1"})
    record = next(r for r in caplog.records if r.name == "mask_test")
    assert isinstance(record.msg, dict)
    assert record.msg["email"] == "[REDACTED]"
    assert record.msg["token"] == "[REDACTED]"
    assert record.msg["payer"]["identification_number"] == "[REDACTED]"
    assert record.msg["order_number"] == "RMM-1"


def test_sensitive_fields_visible_in_debug(app, monkeypatch, caplog):
    monkeypatch.setenv("APP_ENV", "development")
    caplog.set_level("DEBUG")
    caplog.handler.addFilter(MaskingFilter())
    logger = logging.getLogger("mask_test_debug")
    logger.debug({"password": "secret"})
    record = next(r for r in caplog.records if r.name == "mask_test_debug")
    assert record.msg["password"] == "secret"


def test_mask_sensitive_leaves_input_untouched():
    data = {"access_token": "x", "nested": {"security_code": "123"}}
    masked = mask_sensitive(data)
    assert masked == {"access_token": "[REDACTED]", "nested": {"security_code": "[REDACTED]"}}
    assert data["access_token"] == "x"


def test_json_formatter_merges_dict_messages():
    record = logging.LogRecord("checkout", logging.CRITICAL, __file__, 1,
                               {"event": "reconciliation_gap", "payment_id": "9"}, None, None)
    record.request_id = "rid-1"
    line = json.loads(JsonFormatter().format(record))
    assert line["event"] == "reconciliation_gap"
    assert line["payment_id"] == "9"
    assert line["level"] == "CRITICAL"
    assert line["request_id"] == "rid-1"
