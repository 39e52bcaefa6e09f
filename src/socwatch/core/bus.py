"""ZeroMQ transport for inbound logs and outbound notifications.

Architecture:
  - EventBus: central broker using the XPUB/XSUB proxy pattern
  - LogPublisher: producers submit raw log records to the bus
  - LogSubscriber: the ingest engine receives raw log records
  - Notifier: outbound fire-and-forget notification interface
      - ZmqNotifier publishes on a PUB socket
      - NullNotifier drops everything
"""

from __future__ import annotations

import abc
import json
import logging
import threading
from collections.abc import Callable
from typing import Any

import zmq

logger = logging.getLogger(__name__)

LOG_TOPIC = "log.ingest"


class EventBus:
    """Central ZeroMQ broker using XSUB/XPUB proxy.

    Publishers connect to pub_port (XSUB side).
    Subscribers connect to sub_port (XPUB side).
    The proxy forwards all messages between them.
    """

    def __init__(self, pub_port: int = 15555, sub_port: int = 15556):
        self._pub_port = pub_port
        self._sub_port = sub_port
        self._context = zmq.Context()
        self._thread: threading.Thread | None = None
        self._running = False

    def start(self) -> None:
        """Start the proxy in a background thread."""
        self._running = True
        self._thread = threading.Thread(target=self._run_proxy, daemon=True)
        self._thread.start()
        logger.info(f"EventBus started (pub={self._pub_port}, sub={self._sub_port})")

    def _run_proxy(self) -> None:
        xsub = self._context.socket(zmq.XSUB)
        xpub = self._context.socket(zmq.XPUB)
        xsub.setsockopt(zmq.LINGER, 0)
        xpub.setsockopt(zmq.LINGER, 0)
        xsub.bind(f"tcp://127.0.0.1:{self._pub_port}")
        xpub.bind(f"tcp://127.0.0.1:{self._sub_port}")
        try:
            zmq.proxy(xsub, xpub)
        except zmq.ContextTerminated:
            pass
        except zmq.ZMQError as exc:
            logger.debug("EventBus proxy exited: %s", exc)
        finally:
            xsub.close()
            xpub.close()

    def stop(self) -> None:
        """Stop the proxy by terminating its context."""
        self._running = False
        self._context.term()
        if self._thread:
            self._thread.join(timeout=2)
        logger.info("EventBus stopped")


class LogPublisher:
    """Submits raw log records to the EventBus as JSON."""

    def __init__(self, port: int = 15555, topic: str = LOG_TOPIC):
        self._topic = topic
        self._context = zmq.Context()
        self._socket = self._context.socket(zmq.PUB)
        self._socket.setsockopt(zmq.LINGER, 0)
        self._socket.connect(f"tcp://127.0.0.1:{port}")

    def send(self, raw_log: dict[str, Any]) -> None:
        self._socket.send_multipart([
            self._topic.encode("utf-8"),
            json.dumps(raw_log, default=str).encode("utf-8"),
        ])

    def close(self) -> None:
        self._socket.close()
        self._context.term()


class LogSubscriber:
    """Receives raw log records from the EventBus on a background thread."""

    def __init__(
        self,
        port: int = 15556,
        topics: list[str] | None = None,
        callback: Callable[[dict[str, Any]], None] | None = None,
    ):
        self._port = port
        self._topics = topics or [LOG_TOPIC]
        self._callback = callback
        self._context = zmq.Context()
        self._socket = self._context.socket(zmq.SUB)
        self._socket.setsockopt(zmq.LINGER, 0)
        self._running = False
        self._thread: threading.Thread | None = None

        for topic in self._topics:
            self._socket.subscribe(topic.encode("utf-8"))
        self._socket.connect(f"tcp://127.0.0.1:{port}")

    def start(self) -> None:
        """Start receiving records in a background thread."""
        self._running = True
        self._thread = threading.Thread(target=self._listen, daemon=True)
        self._thread.start()

    def _listen(self) -> None:
        poller = zmq.Poller()
        poller.register(self._socket, zmq.POLLIN)
        while self._running:
            socks = dict(poller.poll(timeout=100))
            if self._socket not in socks:
                continue
            try:
                parts = self._socket.recv_multipart(zmq.NOBLOCK)
            except zmq.ZMQError:
                continue
            if len(parts) != 2:
                continue
            try:
                raw = json.loads(parts[1].decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                logger.warning("Dropping undecodable log record: %s", exc)
                continue
            if self._callback and isinstance(raw, dict):
                self._callback(raw)

    def stop(self) -> None:
        """Stop receiving records."""
        self._running = False
        if self._thread:
            self._thread.join(timeout=2)
        self._socket.close()
        self._context.term()


class Notifier(abc.ABC):
    """Outbound notification channel for real-time observers."""

    @abc.abstractmethod
    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        """Publish one notification. May raise; callers treat it as best effort."""

    def close(self) -> None:
        """Release transport resources."""


class NullNotifier(Notifier):
    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        pass


class ZmqNotifier(Notifier):
    """Publishes notifications on a bound PUB socket.

    PUB sockets are not thread-safe; sends are serialized so worker
    threads can share one notifier.
    """

    def __init__(self, port: int = 15557, prefix: str = "notify"):
        self._prefix = prefix
        self._lock = threading.Lock()
        self._context = zmq.Context()
        self._socket = self._context.socket(zmq.PUB)
        self._socket.setsockopt(zmq.LINGER, 0)
        self._socket.bind(f"tcp://127.0.0.1:{port}")

    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        frames = [
            f"{self._prefix}.{topic}".encode("utf-8"),
            json.dumps(payload, default=str).encode("utf-8"),
        ]
        with self._lock:
            self._socket.send_multipart(frames, zmq.NOBLOCK)

    def close(self) -> None:
        with self._lock:
            self._socket.close()
            self._context.term()
