"""
Unit Tests — correlation ids
═════════════════════════════
Generation format and extraction from headers and event payloads.
"""

from __future__ import annotations

import logging
import re

import pytest

from ragtime.core.correlation import (
    correlation_headers,
    extract_correlation_id,
    is_valid_correlation_id,
    new_correlation_id,
    resolve_correlation_id,
)
from ragtime.core.logger import CorrelationIdFilter, bind_logger

_ID_RE = re.compile(r"^(?P<prefix>[A-Z]+)-\d{14}-[A-Z0-9]{6}$")


@pytest.mark.unit
class TestNewCorrelationId:

    def test_default_prefix_and_format(self):
        cid = new_correlation_id()
        match = _ID_RE.match(cid)
        assert match is not None
        assert match.group("prefix") == "PROC"

    def test_custom_prefix(self):
        assert new_correlation_id("AUTO").startswith("AUTO-")

    def test_ids_are_unique(self):
        ids = {new_correlation_id() for _ in range(200)}
        assert len(ids) == 200

    def test_outbound_headers_carry_the_id(self):
        headers = correlation_headers("PROC-20250101000000-ABC123")
        assert headers["X-Correlation-ID"] == "PROC-20250101000000-ABC123"
        assert headers["X-Request-ID"] == "PROC-20250101000000-ABC123"


@pytest.mark.unit
class TestExtractCorrelationId:

    def test_correlation_header(self):
        assert extract_correlation_id({"X-Correlation-ID": "abc"}) == "abc"

    def test_header_lookup_is_case_insensitive(self):
        assert extract_correlation_id({"x-correlation-id": "abc"}) == "abc"

    def test_request_id_is_a_fallback(self):
        assert extract_correlation_id({"x-request-id": "req-1"}) == "req-1"

    def test_correlation_header_wins_over_request_id(self):
        source = {"X-Request-ID": "req-1", "X-Correlation-ID": "corr-1"}
        assert extract_correlation_id(source) == "corr-1"

    def test_nested_headers_in_event(self):
        event = {"headers": {"X-Correlation-ID": "nested"}, "correlationId": "direct"}
        assert extract_correlation_id(event) == "nested"

    @pytest.mark.parametrize("field", ["correlationId", "correlation_id"])
    def test_direct_field(self, field):
        assert extract_correlation_id({field: "direct"}) == "direct"

    def test_sns_message_attribute(self):
        event = {"Records": [{"Sns": {"MessageAttributes": {
            "X-Correlation-ID": {"Type": "String", "Value": "from-sns"},
        }}}]}
        assert extract_correlation_id(event) == "from-sns"

    def test_sqs_message_attribute(self):
        event = {"Records": [{"messageAttributes": {
            "X-Correlation-ID": {"stringValue": "from-sqs", "dataType": "String"},
        }}]}
        assert extract_correlation_id(event) == "from-sqs"

    def test_dynamodb_stream_image(self):
        event = {"Records": [{"dynamodb": {"NewImage": {
            "correlation_id": {"S": "from-stream"},
        }}}]}
        assert extract_correlation_id(event) == "from-stream"

    @pytest.mark.parametrize(
        "source",
        [None, {}, {"headers": {}}, {"Records": []}, {"Records": [{"Sns": {}}]}, {"other": "x"}],
    )
    def test_absent_returns_none(self, source):
        assert extract_correlation_id(source) is None

    @pytest.mark.parametrize("bad", ["X" * 65, "has space", "line\nbreak", "semi;colon", ""])
    def test_malformed_header_is_ignored(self, bad):
        assert extract_correlation_id({"X-Correlation-ID": bad}) is None

    def test_malformed_header_falls_through_to_request_id(self):
        source = {"X-Correlation-ID": "X" * 200, "X-Request-ID": "req-1"}
        assert extract_correlation_id(source) == "req-1"

    def test_malformed_sqs_attribute_is_ignored(self):
        event = {"Records": [{"messageAttributes": {
            "X-Correlation-ID": {"stringValue": "bad id", "dataType": "String"},
        }}]}
        assert extract_correlation_id(event) is None


@pytest.mark.unit
class TestResolveCorrelationId:

    @pytest.mark.parametrize("cid", ["X" * 64, "client-trace-42", "a.b:c_d", "PROC-20250101000000-ABC123"])
    def test_well_formed_ids_are_kept(self, cid):
        assert is_valid_correlation_id(cid)
        assert resolve_correlation_id(cid) == cid

    @pytest.mark.parametrize("cid", [None, "", "X" * 65, "bad id"])
    def test_malformed_ids_are_replaced(self, cid):
        resolved = resolve_correlation_id(cid)
        assert resolved.startswith("AUTO-")
        assert _ID_RE.match(resolved)


@pytest.mark.unit
class TestBoundLogger:

    def test_records_carry_correlation_id_and_tenant(self, caplog):
        caplog.set_level(logging.INFO, logger="ragtime.test")
        log = bind_logger(logging.getLogger("ragtime.test"), "CID-1", tenant_id="t1")

        log.info("Stage done | stage=%s", "chunk")

        record = caplog.records[-1]
        assert record.correlation_id == "CID-1"
        assert record.tenant_id == "t1"
        assert record.getMessage() == "Stage done | stage=chunk"

    def test_filter_fills_missing_correlation_id(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)
        assert CorrelationIdFilter().filter(record) is True
        assert record.correlation_id == "-"
