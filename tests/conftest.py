"""Shared test fixtures for socwatch."""

import pytest

from socwatch.core.bus import Notifier
from socwatch.core.config import SocConfig
from socwatch.core.database import SocDatabase
from socwatch.core.dedup import DedupGuard
from socwatch.core.models import NormalizedLogEvent
from socwatch.core.state import MemoryStateStore
from socwatch.detection.context import RuleContext, RuleHelpers
from socwatch.detection.metrics import BaselineTracker

# Mid-minute UTC timestamp so bucket boundaries are not crossed by accident
T0 = 1_760_000_070.0


class FakeClock:
    """Controllable clock for simulating TTL passage."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier(Notifier):
    """Keeps every published notification for assertions."""

    def __init__(self):
        self.messages: list[tuple[str, dict]] = []

    def publish(self, topic, payload):
        self.messages.append((topic, payload))

    def topics(self) -> list[str]:
        return [t for t, _ in self.messages]


@pytest.fixture
def tmp_data_dir(tmp_path):
    """Provide a temporary directory for test data (database, configs, etc.)."""
    data_dir = tmp_path / "socwatch_data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStateStore(clock=clock)


@pytest.fixture
def guard(store):
    return DedupGuard(store)


@pytest.fixture
def db(tmp_data_dir):
    database = SocDatabase(tmp_data_dir / "test.db")
    yield database
    database.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def config():
    return SocConfig()


@pytest.fixture
def sample_raw_log():
    """A raw submitted record as delivered by the queue."""
    return {
        "timestamp": T0,
        "event_type": "  Failed_Login ",
        "source_ip": "203.0.113.7",
        "target_system": "auth-server",
        "severity": "medium",
        "metadata": {
            "username": "admin",
            "geo": {"country_code": "de", "country": "Germany"},
        },
    }


@pytest.fixture
def make_ctx(store, guard, clock):
    """Factory building a RuleContext for one raw record at the current clock time."""
    helpers = RuleHelpers(store=store, guard=guard, metrics=BaselineTracker(store))

    def _make(raw: dict, rule_config: dict | None = None) -> RuleContext:
        log = NormalizedLogEvent.from_raw(raw, now=clock.now)
        return RuleContext(
            log=log, now=clock.now, rule_config=rule_config or {}, helpers=helpers,
        )

    return _make
