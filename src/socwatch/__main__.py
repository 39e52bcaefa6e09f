"""Entry point for socwatch, the security-event correlation engine.

Launches the full stack:
  1. Configuration (validated; a bad rule section is fatal)
  2. Shared state store + durable database
  3. Rule dispatcher + escalation engine
  4. Ingest engine (ZeroMQ bus, worker pool)

Usage:
    python -m socwatch [--config PATH]
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path

from socwatch import __version__

logger = logging.getLogger("socwatch")

DEFAULT_CONFIG_PATH = Path.home() / ".socwatch" / "config.yaml"


def _setup_logging(config) -> None:
    """Configure logging with console and rotating file handler."""
    root_logger = logging.getLogger()
    root_logger.setLevel(str(config.get("logging.level", "INFO")).upper())

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
    )

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root_logger.addHandler(console)

    log_file = config.get("logging.file")
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=int(config.get("logging.max_bytes", 10 * 1024 * 1024)),
            backupCount=int(config.get("logging.backup_count", 5)),
            encoding="utf-8",
        )
        file_handler.setFormatter(fmt)
        root_logger.addHandler(file_handler)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="socwatch", description=__doc__.splitlines()[0])
    parser.add_argument(
        "--config", type=Path, default=DEFAULT_CONFIG_PATH,
        help=f"YAML configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--version", action="version", version=f"socwatch {__version__}")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Launch socwatch and run until SIGINT/SIGTERM."""
    args = _parse_args(argv)

    from socwatch.core.config import SocConfig
    from socwatch.core.errors import SocwatchError

    try:
        config = SocConfig.load(args.config)
    except SocwatchError as exc:
        print(f"socwatch: {exc}", file=sys.stderr)
        return 2

    _setup_logging(config)
    logger.info("socwatch v%s starting...", __version__)
    logger.info("Config loaded from %s", args.config)

    from socwatch.alerting.correlation_engine import EscalationEngine
    from socwatch.core.bus import ZmqNotifier
    from socwatch.core.database import SocDatabase
    from socwatch.core.engine import IngestEngine
    from socwatch.core.state import create_state_store
    from socwatch.detection.rule_engine import RuleDispatcher

    try:
        store = create_state_store(
            config.get("state_store.backend", "memory"),
            url=config.get("state_store.url", ""),
            key_prefix=config.get("state_store.key_prefix", ""),
        )
        db = SocDatabase(config.get("database.path", "socwatch.db"))
        notifier = ZmqNotifier(port=int(config.get("bus.notify_port", 15557)))
        escalation = EscalationEngine(
            store, db, notifier=notifier,
            enabled=bool(config.get("escalation.enabled", True)),
        )
        dispatcher = RuleDispatcher(
            config, store, db=db, escalation=escalation, notifier=notifier,
        )
    except SocwatchError as exc:
        logger.error("Startup failed: %s", exc)
        return 2

    logger.info("Rules enabled: %s", ", ".join(dispatcher.enabled_rules))

    engine = IngestEngine(config, dispatcher, db=db)
    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    engine.start()
    try:
        while not stop.wait(1.0):
            pass
    finally:
        engine.stop()
        notifier.close()
        db.close()
        logger.info("socwatch shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
