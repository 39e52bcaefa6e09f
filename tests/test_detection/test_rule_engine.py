"""Tests for the rule dispatcher."""

import logging
from unittest.mock import MagicMock

import pytest

from socwatch.core.config import SocConfig
from socwatch.core.errors import ConfigurationError, PersistenceError, StateStoreError
from socwatch.core.models import Finding, Severity
from socwatch.detection.rule_engine import RULES, ProcessResult, RuleDispatcher


def _finding_rule(name, severity=Severity.HIGH):
    def rule(ctx):
        return ctx.finding(name, severity, f"dedup:{name}", evidence={})
    return rule


def _config(*keys, **overrides):
    rules = {key: {"enabled": True} for key in keys}
    rules.update(overrides)
    return SocConfig({"rules": rules})


class TestConstruction:
    def test_validates_configuration(self, store):
        config = _config("brute_force", "not_a_rule")
        with pytest.raises(ConfigurationError):
            RuleDispatcher(config, store)

    def test_enabled_rules_in_order(self, store):
        config = SocConfig()
        config.set("rules.xss.enabled", False)
        dispatcher = RuleDispatcher(config, store)
        assert "xss" not in dispatcher.enabled_rules
        assert dispatcher.enabled_rules[0] == "brute_force"

    def test_registry_covers_defaults(self):
        assert set(RULES) == {key for key, _ in SocConfig().rule_definitions()}


class TestEvaluate:
    def test_findings_follow_configured_order(self, store):
        rules = {"b": _finding_rule("b"), "a": _finding_rule("a")}
        dispatcher = RuleDispatcher(_config("b", "a"), store, rules=rules)
        result = dispatcher.process_event({"event_type": "xss"})
        assert [f.rule_name for f in result.findings] == ["b", "a"]

    def test_disabled_rules_are_skipped(self, store):
        rules = {"a": _finding_rule("a"), "b": _finding_rule("b")}
        config = _config("a", b={"enabled": False})
        result = RuleDispatcher(config, store, rules=rules).process_event({"event_type": "xss"})
        assert [f.rule_name for f in result.findings] == ["a"]

    def test_crashing_rule_is_no_finding(self, store, caplog):
        def broken(ctx):
            raise ZeroDivisionError("bad math")

        rules = {"broken": broken, "ok": _finding_rule("ok")}
        dispatcher = RuleDispatcher(_config("broken", "ok"), store, rules=rules)
        with caplog.at_level(logging.ERROR):
            result = dispatcher.process_event({"event_type": "xss"})
        assert [f.rule_name for f in result.findings] == ["ok"]
        assert "broken" in caplog.text
        assert "ZeroDivisionError" in caplog.text

    def test_state_store_failure_propagates(self, store):
        def unavailable(ctx):
            raise StateStoreError("redis down")

        dispatcher = RuleDispatcher(_config("x"), store, rules={"x": unavailable})
        with pytest.raises(StateStoreError):
            dispatcher.process_event({"event_type": "xss"})

    def test_rule_receives_config_and_now(self, store, clock):
        seen = {}

        def spy(ctx):
            seen["now"] = ctx.now
            seen["cfg"] = ctx.rule_config
            seen["event_type"] = ctx.log.event_type
            return None

        config = _config(spy_rule={"enabled": True, "threshold": 7})
        RuleDispatcher(config, store, rules={"spy_rule": spy}).process_event(
            {"event_type": " XSS "}
        )
        assert seen == {
            "now": clock.now,
            "cfg": {"enabled": True, "threshold": 7},
            "event_type": "xss",
        }


class TestProcessEvent:
    def test_persists_log_findings_and_marks_processed(self, store, db):
        rules = {"a": _finding_rule("a")}
        dispatcher = RuleDispatcher(_config("a"), store, db=db, rules=rules)
        result = dispatcher.process_event({"event_type": "xss", "source_ip": "10.0.0.1"})

        assert isinstance(result, ProcessResult)
        assert result.findings_created
        stored = db.get_log(result.log.log_id)
        assert stored["processed"] is True
        assert stored["alert_generated"] is True
        assert stored["rule_name"] == "a"
        finding = db.get_finding(result.findings[0].finding_id)
        assert finding.log_id == result.log.log_id

    def test_no_findings_still_marks_processed(self, store, db):
        dispatcher = RuleDispatcher(_config("a"), store, db=db, rules={"a": lambda ctx: None})
        result = dispatcher.process_event({"event_type": "xss"})
        assert not result.findings_created
        stored = db.get_log(result.log.log_id)
        assert stored["processed"] is True
        assert stored["alert_generated"] is False

    def test_escalation_runs_even_without_findings(self, store):
        escalation = MagicMock()
        escalation.escalate.return_value = None
        dispatcher = RuleDispatcher(
            _config("a"), store, escalation=escalation, rules={"a": lambda ctx: None},
        )
        result = dispatcher.process_event({"event_type": "port_scan"})
        escalation.escalate.assert_called_once()
        log, findings = escalation.escalate.call_args[0]
        assert log.event_type == "port_scan"
        assert findings == []
        assert result.incident is None

    def test_persistence_failure_propagates(self, store):
        db = MagicMock()
        db.insert_finding.side_effect = PersistenceError("disk full")
        dispatcher = RuleDispatcher(_config("a"), store, db=db, rules={"a": _finding_rule("a")})
        with pytest.raises(PersistenceError):
            dispatcher.process_event({"event_type": "xss"})
        db.mark_log_processed.assert_not_called()

    def test_escalation_failure_propagates(self, store):
        escalation = MagicMock()
        escalation.escalate.side_effect = PersistenceError("locked")
        dispatcher = RuleDispatcher(
            _config("a"), store, escalation=escalation, rules={"a": _finding_rule("a")},
        )
        with pytest.raises(PersistenceError):
            dispatcher.process_event({"event_type": "xss"})

    def test_records_metrics_before_rules(self, store, clock):
        counts = []

        def spy(ctx):
            b = ctx.helpers.metrics.compute_baseline("global", now=ctx.now)
            counts.append(b.current)

        dispatcher = RuleDispatcher(_config("spy"), store, rules={"spy": spy})
        dispatcher.process_event({"event_type": "xss"})
        dispatcher.process_event({"event_type": "xss"})
        assert counts == [1, 2]


class TestNotifications:
    def test_topics(self, store, notifier):
        rules = {
            "a": _finding_rule("a", Severity.CRITICAL),
            "b": _finding_rule("b", Severity.HIGH),
        }
        dispatcher = RuleDispatcher(_config("a", "b"), store, notifier=notifier, rules=rules)
        dispatcher.process_event({"event_type": "xss"})
        assert notifier.topics() == [
            "finding.new", "finding.new", "finding.critical", "log.processed",
        ]
        critical = dict(notifier.messages)["finding.critical"]
        assert critical["count"] == 1

    def test_notification_failure_does_not_fail_invocation(self, store, caplog):
        notifier = MagicMock()
        notifier.publish.side_effect = RuntimeError("socket closed")
        dispatcher = RuleDispatcher(
            _config("a"), store, notifier=notifier, rules={"a": _finding_rule("a")},
        )
        result = dispatcher.process_event({"event_type": "xss"})
        assert len(result.findings) == 1
        assert "Notification" in caplog.text

    def test_no_critical_topic_without_critical_findings(self, store, notifier):
        dispatcher = RuleDispatcher(_config("a"), store, notifier=notifier, rules={"a": _finding_rule("a")})
        dispatcher.process_event({"event_type": "xss"})
        assert "finding.critical" not in notifier.topics()


class TestBuiltInRules:
    def test_default_rules_detect_sql_injection(self, store, db):
        dispatcher = RuleDispatcher(SocConfig(), store, db=db)
        result = dispatcher.process_event({
            "event_type": "generic_request",
            "source_ip": "198.51.100.4",
            "target_system": "shop",
            "metadata": {"url": "/p?id=1 UNION SELECT card FROM payments"},
        })
        names = [f.rule_name for f in result.findings]
        assert names == ["sql_injection_signature"]
        assert isinstance(result.findings[0], Finding)
        assert db.finding_count() == 1
