"""Ingest Engine: delivers log records to the rule dispatcher.

Responsibilities:
- Runs the ZeroMQ bus and subscribes to submitted log records
- Queues records by priority (critical severity first, FIFO otherwise)
- Runs a pool of worker threads calling the dispatcher once per record
- Retries a failed invocation with exponential backoff (at-least-once)
- Logs service lifecycle to the audit log
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from socwatch.core.bus import LOG_TOPIC, EventBus, LogSubscriber
from socwatch.core.config import SocConfig
from socwatch.core.errors import PersistenceError, StateStoreError
from socwatch.core.models import Severity

if TYPE_CHECKING:
    from socwatch.core.database import SocDatabase
    from socwatch.detection.rule_engine import ProcessResult, RuleDispatcher

logger = logging.getLogger(__name__)

# Failures worth retrying; anything else is a bug and fails immediately
RETRYABLE_ERRORS = (StateStoreError, PersistenceError)

PRIORITY_CRITICAL = 0
PRIORITY_NORMAL = 1


@dataclass(order=True)
class _Job:
    priority: int
    seq: int
    raw: dict[str, Any] = field(compare=False)


def job_priority(raw: dict[str, Any]) -> int:
    """Critical-severity submissions are expedited."""
    severity = Severity.parse(raw.get("severity"))
    return PRIORITY_CRITICAL if severity is Severity.CRITICAL else PRIORITY_NORMAL


class IngestEngine:
    """Worker pool between the bus and the rule dispatcher.

    Parameters
    ----------
    config:
        Application configuration (``bus.*`` and ``worker.*``).
    dispatcher:
        The :class:`RuleDispatcher` invoked once per record.
    db:
        Optional database for the audit log.
    run_bus:
        Start the XSUB/XPUB proxy in-process. Disable when an external
        broker is already running.
    sleep:
        Backoff sleep function; tests pass a recorder.
    """

    def __init__(
        self,
        config: SocConfig,
        dispatcher: RuleDispatcher,
        db: SocDatabase | None = None,
        run_bus: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._dispatcher = dispatcher
        self._db = db
        self._run_bus = run_bus
        self._sleep = sleep
        self._threads = int(config.get("worker.threads", 4))
        self._max_attempts = max(1, int(config.get("worker.max_attempts", 3)))
        self._backoff = float(config.get("worker.backoff_seconds", 2.0))
        self._queue: queue.PriorityQueue[_Job] = queue.PriorityQueue()
        self._seq = itertools.count()
        self._workers: list[threading.Thread] = []
        self._bus: EventBus | None = None
        self._subscriber: LogSubscriber | None = None
        self._running = False
        self._processed = 0
        self._failed = 0
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def processed(self) -> int:
        with self._lock:
            return self._processed

    @property
    def failed(self) -> int:
        """Records that exhausted their retries."""
        with self._lock:
            return self._failed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        """Start the bus, the subscriber and the worker threads."""
        logger.info("IngestEngine starting...")
        if self._db:
            self._db.audit("engine", "starting", f"{self._threads} workers")

        pub_port = int(self._config.get("bus.log_pub_port", 15555))
        sub_port = int(self._config.get("bus.log_sub_port", 15556))
        if self._run_bus:
            self._bus = EventBus(pub_port=pub_port, sub_port=sub_port)
            self._bus.start()
        self._subscriber = LogSubscriber(port=sub_port, topics=[LOG_TOPIC], callback=self.submit)
        self._subscriber.start()

        self._running = True
        for i in range(self._threads):
            t = threading.Thread(target=self._work, name=f"socwatch-worker-{i}", daemon=True)
            t.start()
            self._workers.append(t)

        if self._db:
            self._db.audit("engine", "started", "Ingest engine ready")
        logger.info("IngestEngine started (%d workers)", self._threads)

    def submit(self, raw: dict[str, Any]) -> None:
        """Queue one raw record. A log_id is pinned so retries stay idempotent."""
        if not raw.get("log_id"):
            raw = {**raw, "log_id": f"log-{uuid.uuid4().hex[:12]}"}
        self._queue.put(_Job(job_priority(raw), next(self._seq), raw))

    def handle(self, raw: dict[str, Any]) -> ProcessResult | None:
        """Process one record, retrying retryable failures with backoff.

        Returns None when the record failed permanently.
        """
        for attempt in range(1, self._max_attempts + 1):
            try:
                result = self._dispatcher.process_event(raw)
            except RETRYABLE_ERRORS as exc:
                if attempt >= self._max_attempts:
                    logger.error("Giving up on log %s after %d attempts: %s",
                                 raw.get("log_id"), attempt, exc)
                    break
                delay = self._backoff * 2 ** (attempt - 1)
                logger.warning("Attempt %d for log %s failed (%s); retrying in %.1fs",
                               attempt, raw.get("log_id"), type(exc).__name__, delay)
                self._sleep(delay)
                continue
            except Exception:
                logger.exception("Unexpected failure processing log %s", raw.get("log_id"))
                break
            with self._lock:
                self._processed += 1
            return result

        with self._lock:
            self._failed += 1
        return None

    def drain(self) -> int:
        """Process everything currently queued on the calling thread."""
        handled = 0
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                return handled
            try:
                self.handle(job.raw)
            finally:
                self._queue.task_done()
            handled += 1

    def _work(self) -> None:
        while self._running:
            try:
                job = self._queue.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self.handle(job.raw)
            finally:
                self._queue.task_done()

    def stop(self) -> None:
        """Stop workers, subscriber and bus."""
        logger.info("IngestEngine stopping...")
        self._running = False
        if self._subscriber:
            self._subscriber.stop()
        for t in self._workers:
            t.join(timeout=2)
        self._workers.clear()
        if self._bus:
            self._bus.stop()
        if self._db:
            self._db.audit(
                "engine", "stopped",
                f"processed={self.processed} failed={self.failed}",
            )
        logger.info("IngestEngine stopped")
