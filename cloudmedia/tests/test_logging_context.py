import json
import logging

from cloudmedia.core.logging import (
    JsonFormatter,
    PrettyFormatter,
    RequestIdFilter,
    latency_bucket_ms,
    log_event,
    request_id_ctx_var,
)


def _record(**extra):
    record = logging.LogRecord("cloudmedia", logging.INFO, __file__, 1, "billing.transition", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_filter_injects_request_id_from_context():
    token = request_id_ctx_var.set("rid-ctx")
    try:
        record = _record()
        RequestIdFilter().filter(record)
    finally:
        request_id_ctx_var.reset(token)
    assert record.request_id == "rid-ctx"


def test_json_formatter_includes_structured_keys():
    record = _record(request_id="rid-1", organization_id="org-1", event_type="invoice.paid", error_code=None)
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "billing.transition"
    assert payload["request_id"] == "rid-1"
    assert payload["organization_id"] == "org-1"
    assert payload["event_type"] == "invoice.paid"
    assert "error_code" not in payload


def test_pretty_formatter_shows_rid_and_org():
    line = PrettyFormatter().format(_record(request_id="rid-2", organization_id="org-2"))
    assert "[rid=rid-2]" in line
    assert "[org=org-2]" in line


def test_log_event_truncates_extra_values(caplog):
    with caplog.at_level(logging.INFO, logger="cloudmedia"):
        log_event("info", "encode.orphan_asset", organization_id="org-3", extra={"public_id": "x" * 900})
    record = caplog.records[-1]
    assert record.organization_id == "org-3"
    assert record.public_id.endswith("...<truncated>")


def test_latency_buckets():
    assert latency_bucket_ms(None) == "unknown"
    assert latency_bucket_ms(5) == "<10ms"
    assert latency_bucket_ms(250) == "100-500ms"
    assert latency_bucket_ms(2500) == ">=1000ms"
