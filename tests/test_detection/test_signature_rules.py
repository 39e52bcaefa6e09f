"""Tests for SQL injection and XSS signature rules."""

import pytest

from socwatch.core.models import Severity
from socwatch.detection.signatures import SQLI_PATTERN, XSS_PATTERN, sql_injection_rule, xss_rule


def _request(event_type="generic_request", ip="10.0.0.1", target="web-01", **metadata):
    return {
        "event_type": event_type,
        "source_ip": ip,
        "target_system": target,
        "metadata": metadata,
    }


class TestPatterns:
    @pytest.mark.parametrize("payload", [
        "' OR '1'='1",
        "id=1 or 1=1",
        "1 UNION SELECT password FROM users",
        "admin'--",
        "1; DROP TABLE users",
    ])
    def test_sqli_signatures(self, payload):
        assert SQLI_PATTERN.search(payload)

    @pytest.mark.parametrize("payload", [
        "<script>alert(1)</script>",
        "<img src=x onerror=alert(1)>",
        "<body onload=steal()>",
        "javascript:alert(document.cookie)",
    ])
    def test_xss_signatures(self, payload):
        assert XSS_PATTERN.search(payload)

    @pytest.mark.parametrize("payload", ["hello world", "/index.html?page=2"])
    def test_benign_text(self, payload):
        assert not SQLI_PATTERN.search(payload)
        assert not XSS_PATTERN.search(payload)


class TestSqlInjectionRule:
    def test_payload_match_fires_regardless_of_event_type(self, make_ctx):
        f = sql_injection_rule(make_ctx(_request(payload="1 UNION SELECT * FROM users")))
        assert f is not None
        assert f.rule_name == "sql_injection_signature"
        assert f.severity is Severity.HIGH
        assert f.mitre_id == "T1190"
        assert f.evidence["matched_signature"].lower().startswith("union")

    def test_url_match_fires(self, make_ctx):
        f = sql_injection_rule(make_ctx(_request(url="/items?id=1;drop table items")))
        assert f is not None

    def test_declared_event_type_fires_with_benign_payload(self, make_ctx):
        f = sql_injection_rule(make_ctx(_request("sql_injection", payload="hello")))
        assert f is not None
        assert f.evidence["matched_signature"] is None

    def test_benign_request_does_not_fire(self, make_ctx):
        assert sql_injection_rule(make_ctx(_request(payload="hello", url="/home"))) is None

    def test_dedup_is_per_source_and_target(self, make_ctx):
        assert sql_injection_rule(make_ctx(_request("sql_injection"))) is not None
        assert sql_injection_rule(make_ctx(_request("sql_injection"))) is None
        assert sql_injection_rule(make_ctx(_request("sql_injection", target="db-01"))) is not None
        assert sql_injection_rule(make_ctx(_request("sql_injection", ip="10.0.0.2"))) is not None

    def test_dedup_lapses(self, make_ctx, clock):
        sql_injection_rule(make_ctx(_request("sql_injection")))
        clock.advance(300)
        assert sql_injection_rule(make_ctx(_request("sql_injection"))) is not None


class TestXssRule:
    def test_payload_match_fires(self, make_ctx):
        f = xss_rule(make_ctx(_request(payload="<script>alert(1)</script>")))
        assert f is not None
        assert f.rule_name == "xss_signature"
        assert f.mitre_id == "T1059.007"

    def test_declared_event_type_fires(self, make_ctx):
        assert xss_rule(make_ctx(_request("xss", payload="benign"))) is not None

    def test_does_not_fire_on_sqli(self, make_ctx):
        assert xss_rule(make_ctx(_request(payload="' or '1'='1"))) is None

    def test_dedup_is_per_source_and_target(self, make_ctx):
        xss_rule(make_ctx(_request("xss")))
        assert xss_rule(make_ctx(_request("xss"))) is None
        assert xss_rule(make_ctx(_request("xss", target="web-02"))) is not None
