import json
import logging

from checkout_backend.core.logging import (
    CheckoutContextFilter,
    JsonFormatter,
    PrettyFormatter,
    latency_bucket_ms,
    request_id_ctx_var,
)
from checkout_backend.core.middleware.request_id import accept_request_id


def _record(msg="checkout.intent_created", **extra):
    record = logging.LogRecord("checkout", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_filter_binds_request_id_and_masks_credentials():
    token = request_id_ctx_var.set("rid-1")
    try:
        record = _record(access_token="TEST-abc", webhook_secret="s", network="paypal")
        CheckoutContextFilter().filter(record)
    finally:
        request_id_ctx_var.reset(token)

    assert record.request_id == "rid-1"
    assert record.access_token == "***"
    assert record.webhook_secret == "***"
    assert record.network == "paypal"


def test_json_formatter_keeps_structured_fields_only():
    record = _record(request_id="rid-2", network="mercadopago", status=201, raw_body="{...}")
    line = json.loads(JsonFormatter().format(record))
    assert line["event"] == "checkout.intent_created"
    assert line["request_id"] == "rid-2"
    assert line["network"] == "mercadopago"
    assert line["status"] == 201
    assert "raw_body" not in line


def test_pretty_formatter():
    text = PrettyFormatter().format(_record(request_id="rid-3", reason="expired"))
    assert "checkout.intent_created" in text
    assert "rid=rid-3" in text
    assert "reason=expired" in text


def test_latency_buckets():
    assert latency_bucket_ms(None) == "unknown"
    assert latency_bucket_ms(3) == "<10ms"
    assert latency_bucket_ms(250) == "100-500ms"
    assert latency_bucket_ms(5000) == ">=1000ms"


def test_request_id_sanitizing():
    assert accept_request_id("abc-123") == "abc-123"
    generated = accept_request_id("bad id\nwith newline")
    assert generated != "bad id\nwith newline"
    assert len(generated) == 36
