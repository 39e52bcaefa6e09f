"""Tests for the multi-stage intrusion stage machine."""

from socwatch.core.models import NormalizedLogEvent, Severity
from socwatch.detection.sequence import FINAL_STAGE, multistage_intrusion_rule, next_stage

BIG = 25_000_000


def _event(event_type, ip="10.0.0.1", size=None):
    raw = {"event_type": event_type, "source_ip": ip, "metadata": {}}
    if size is not None:
        raw["metadata"]["response_size"] = size
    return raw


def _play(make_ctx, events):
    findings = []
    for raw in events:
        f = multistage_intrusion_rule(make_ctx(raw))
        if f is not None:
            findings.append(f)
    return findings


class TestNextStage:
    def test_transitions(self):
        log = NormalizedLogEvent.from_raw
        assert next_stage(0, log(_event("port_scan")), BIG) == 1
        assert next_stage(1, log(_event("brute_force")), BIG) == 2
        assert next_stage(2, log(_event("sql_injection")), BIG) == 3
        assert next_stage(3, log(_event("file_download", size=BIG)), 20_000_000) == FINAL_STAGE

    def test_requires_previous_stage(self):
        log = NormalizedLogEvent.from_raw
        assert next_stage(0, log(_event("failed_login")), BIG) == 0
        assert next_stage(1, log(_event("sql_injection")), BIG) == 1

    def test_never_decreases(self):
        assert next_stage(3, NormalizedLogEvent.from_raw(_event("port_scan")), BIG) == 3

    def test_small_transfer_does_not_complete(self):
        log = NormalizedLogEvent.from_raw(_event("file_download", size=1000))
        assert next_stage(3, log, 20_000_000) == 3


class TestMultistageRule:
    def test_full_chain_yields_one_critical_finding(self, make_ctx, store):
        findings = _play(make_ctx, [
            _event("port_scan"),
            _event("brute_force"),
            _event("sql_injection"),
            _event("file_download", size=BIG),
        ])
        assert len(findings) == 1
        f = findings[0]
        assert f.severity is Severity.CRITICAL
        assert f.rule_name == "multistage_intrusion_chain"
        assert f.evidence["stages_completed"] == [
            "reconnaissance", "credential_attack", "exploitation", "exfiltration",
        ]
        assert store.get_int("chain:stage:10.0.0.1") == FINAL_STAGE

    def test_out_of_order_yields_nothing(self, make_ctx):
        findings = _play(make_ctx, [
            _event("file_download", size=BIG),
            _event("sql_injection"),
            _event("brute_force"),
            _event("port_scan"),
        ])
        assert findings == []

    def test_other_source_does_not_advance_stage(self, make_ctx, store):
        findings = _play(make_ctx, [
            _event("port_scan", ip="10.0.0.1"),
            _event("brute_force", ip="10.0.0.2"),
            _event("sql_injection", ip="10.0.0.2"),
            _event("file_download", ip="10.0.0.2", size=BIG),
        ])
        assert findings == []
        assert store.get_int("chain:stage:10.0.0.1") == 1
        assert store.get_int("chain:stage:10.0.0.2") == 0

    def test_repeated_exfiltration_after_completion_is_silent(self, make_ctx):
        chain = [
            _event("port_scan"),
            _event("failed_login"),
            _event("sql_injection"),
            _event("generic_request", size=BIG),
        ]
        assert len(_play(make_ctx, chain)) == 1
        assert _play(make_ctx, [_event("file_download", size=BIG)]) == []

    def test_stage_expires(self, make_ctx, clock, store):
        _play(make_ctx, [_event("port_scan"), _event("brute_force")])
        clock.advance(901)
        assert store.get_int("chain:stage:10.0.0.1") == 0
        assert _play(make_ctx, [_event("sql_injection")]) == []
