"""Tests for the ingest engine (worker pool, priorities, retries)."""

import random
import time
from unittest.mock import MagicMock

from socwatch.core.bus import LogPublisher
from socwatch.core.config import SocConfig
from socwatch.core.engine import PRIORITY_CRITICAL, PRIORITY_NORMAL, IngestEngine, job_priority
from socwatch.core.errors import PersistenceError, StateStoreError


def _make_engine(dispatcher=None, db=None, **worker):
    config = SocConfig()
    for key, value in worker.items():
        config.set(f"worker.{key}", value)
    sleeps: list[float] = []
    engine = IngestEngine(
        config, dispatcher or MagicMock(), db=db, run_bus=False, sleep=sleeps.append,
    )
    return engine, sleeps


class TestPriority:
    def test_critical_is_expedited(self):
        assert job_priority({"severity": "critical"}) == PRIORITY_CRITICAL
        assert job_priority({"severity": "HIGH"}) == PRIORITY_NORMAL
        assert job_priority({}) == PRIORITY_NORMAL

    def test_drain_pops_critical_first_then_fifo(self):
        order = []
        dispatcher = MagicMock()
        dispatcher.process_event.side_effect = lambda raw: order.append(raw["log_id"])
        engine, _ = _make_engine(dispatcher)

        engine.submit({"log_id": "a", "severity": "low"})
        engine.submit({"log_id": "b", "severity": "high"})
        engine.submit({"log_id": "c", "severity": "critical"})
        engine.submit({"log_id": "d", "severity": "medium"})

        assert engine.drain() == 4
        assert order == ["c", "a", "b", "d"]

    def test_submit_pins_log_id(self):
        engine, _ = _make_engine()
        engine.submit({"event_type": "xss"})
        job = engine._queue.get_nowait()
        assert job.raw["log_id"].startswith("log-")


class TestRetries:
    def test_success_counts_processed(self):
        dispatcher = MagicMock()
        engine, sleeps = _make_engine(dispatcher)
        assert engine.handle({"log_id": "x"}) is dispatcher.process_event.return_value
        assert engine.processed == 1
        assert sleeps == []

    def test_retries_with_exponential_backoff(self):
        dispatcher = MagicMock()
        result = MagicMock()
        dispatcher.process_event.side_effect = [
            StateStoreError("down"), PersistenceError("locked"), result,
        ]
        engine, sleeps = _make_engine(dispatcher, max_attempts=3, backoff_seconds=2.0)

        assert engine.handle({"log_id": "x"}) is result
        assert sleeps == [2.0, 4.0]
        assert dispatcher.process_event.call_count == 3

    def test_gives_up_after_max_attempts(self):
        dispatcher = MagicMock()
        dispatcher.process_event.side_effect = StateStoreError("down")
        engine, sleeps = _make_engine(dispatcher, max_attempts=3, backoff_seconds=1.0)

        assert engine.handle({"log_id": "x"}) is None
        assert dispatcher.process_event.call_count == 3
        assert sleeps == [1.0, 2.0]
        assert engine.failed == 1
        assert engine.processed == 0

    def test_unexpected_errors_are_not_retried(self):
        dispatcher = MagicMock()
        dispatcher.process_event.side_effect = KeyError("bug")
        engine, sleeps = _make_engine(dispatcher)

        assert engine.handle({"log_id": "x"}) is None
        assert dispatcher.process_event.call_count == 1
        assert engine.failed == 1


class TestLifecycle:
    def test_records_flow_from_bus_to_dispatcher(self, db):
        base = random.randint(20000, 40000)
        config = SocConfig()
        config.set("bus.log_pub_port", base)
        config.set("bus.log_sub_port", base + 1)
        config.set("worker.threads", 2)
        dispatcher = MagicMock()
        engine = IngestEngine(config, dispatcher, db=db)

        engine.start()
        time.sleep(0.5)
        assert engine.is_running

        pub = LogPublisher(port=base)
        time.sleep(0.2)
        pub.send({"event_type": "port_scan", "source_ip": "10.0.0.1"})
        time.sleep(1.0)

        pub.close()
        engine.stop()

        assert dispatcher.process_event.call_count == 1
        raw = dispatcher.process_event.call_args[0][0]
        assert raw["event_type"] == "port_scan"
        actions = [e["action"] for e in db.get_audit_log()]
        assert "started" in actions
        assert "stopped" in actions
