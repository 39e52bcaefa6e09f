"""SQLite database layer for socwatch.

Uses WAL mode for concurrent read/write from multiple processes.
Stores normalized logs, findings, incidents and the audit log.
Every failure surfaces as PersistenceError so the invocation is retried.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from socwatch.core.errors import PersistenceError
from socwatch.core.models import (
    Finding,
    FindingStatus,
    Incident,
    IncidentStatus,
    NormalizedLogEvent,
    Severity,
    TimelineEntry,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS logs (
    log_id TEXT PRIMARY KEY,
    timestamp REAL NOT NULL,
    event_type TEXT NOT NULL,
    source_ip TEXT NOT NULL,
    target_system TEXT NOT NULL,
    severity TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    processed INTEGER NOT NULL DEFAULT 0,
    alert_generated INTEGER NOT NULL DEFAULT 0,
    rule_name TEXT
);
CREATE INDEX IF NOT EXISTS idx_logs_source ON logs(source_ip, timestamp);
CREATE INDEX IF NOT EXISTS idx_logs_event_type ON logs(event_type, timestamp);

CREATE TABLE IF NOT EXISTS findings (
    finding_id TEXT PRIMARY KEY,
    log_id TEXT NOT NULL,
    created_at REAL NOT NULL,
    rule_name TEXT NOT NULL,
    severity TEXT NOT NULL,
    source_ip TEXT,
    dedup_key TEXT NOT NULL,
    evidence TEXT NOT NULL DEFAULT '{}',
    mitre_id TEXT,
    status TEXT NOT NULL DEFAULT 'open'
);
CREATE INDEX IF NOT EXISTS idx_findings_source ON findings(source_ip, created_at);
CREATE INDEX IF NOT EXISTS idx_findings_dedup ON findings(dedup_key);
CREATE INDEX IF NOT EXISTS idx_findings_severity ON findings(severity);

CREATE TABLE IF NOT EXISTS incidents (
    incident_id TEXT PRIMARY KEY,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    severity TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'open',
    source_ip TEXT,
    related_finding_ids TEXT NOT NULL DEFAULT '[]',
    related_log_ids TEXT NOT NULL DEFAULT '[]',
    metadata TEXT NOT NULL DEFAULT '{}',
    timeline TEXT NOT NULL DEFAULT '[]'
);
CREATE INDEX IF NOT EXISTS idx_incidents_status ON incidents(status, severity);
CREATE INDEX IF NOT EXISTS idx_incidents_source ON incidents(source_ip);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp REAL NOT NULL,
    component TEXT NOT NULL,
    action TEXT NOT NULL,
    detail TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);
"""


class SocDatabase:
    """SQLite store for logs, findings and incidents.

    Uses WAL journal mode for concurrent access from multiple processes.
    """

    def __init__(self, db_path: str | Path):
        self._path = Path(db_path).expanduser()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(
                str(self._path), check_same_thread=False, timeout=10.0,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(SCHEMA_SQL)
            self._conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open database {self._path}: {exc}") from exc

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Connection]:
        """Serialize access and translate sqlite errors."""
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise PersistenceError(str(exc)) from exc

    @property
    def journal_mode(self) -> str:
        with self._cursor() as conn:
            return conn.execute("PRAGMA journal_mode").fetchone()[0]

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def list_tables(self) -> list[str]:
        with self._cursor() as conn:
            cursor = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
            )
            return [row[0] for row in cursor.fetchall()]

    # --- Logs ---

    def insert_log(self, log: NormalizedLogEvent) -> None:
        """Store a normalized log; re-delivery of the same log_id is a no-op."""
        with self._cursor() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO logs "
                "(log_id, timestamp, event_type, source_ip, target_system, severity, metadata) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    log.log_id,
                    log.timestamp,
                    log.event_type,
                    log.source_ip,
                    log.target_system,
                    log.severity.value,
                    json.dumps(log.metadata, default=str),
                ),
            )
            conn.commit()

    def mark_log_processed(
        self, log_id: str, alert_generated: bool, rule_name: str | None = None,
    ) -> None:
        with self._cursor() as conn:
            conn.execute(
                "UPDATE logs SET processed = 1, alert_generated = ?, rule_name = ? "
                "WHERE log_id = ?",
                (int(alert_generated), rule_name, log_id),
            )
            conn.commit()

    def get_log(self, log_id: str) -> dict[str, Any] | None:
        with self._cursor() as conn:
            row = conn.execute(
                "SELECT * FROM logs WHERE log_id = ?", (log_id,)
            ).fetchone()
        if row is None:
            return None
        return {
            "log_id": row["log_id"],
            "timestamp": row["timestamp"],
            "event_type": row["event_type"],
            "source_ip": row["source_ip"],
            "target_system": row["target_system"],
            "severity": row["severity"],
            "metadata": json.loads(row["metadata"]),
            "processed": bool(row["processed"]),
            "alert_generated": bool(row["alert_generated"]),
            "rule_name": row["rule_name"],
        }

    # --- Findings ---

    def insert_finding(self, finding: Finding) -> None:
        with self._cursor() as conn:
            conn.execute(
                "INSERT INTO findings "
                "(finding_id, log_id, created_at, rule_name, severity, source_ip, "
                "dedup_key, evidence, mitre_id, status) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    finding.finding_id,
                    finding.log_id,
                    finding.created_at,
                    finding.rule_name,
                    finding.severity.value,
                    finding.source_ip,
                    finding.dedup_key,
                    json.dumps(finding.evidence, default=str),
                    finding.mitre_id,
                    finding.status.value,
                ),
            )
            conn.commit()

    def get_finding(self, finding_id: str) -> Finding | None:
        with self._cursor() as conn:
            row = conn.execute(
                "SELECT * FROM findings WHERE finding_id = ?", (finding_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_finding(row)

    def query_findings(
        self,
        source_ip: str | None = None,
        since: float | None = None,
        severity: Severity | None = None,
        rule_name: str | None = None,
        limit: int = 100,
    ) -> list[Finding]:
        query = "SELECT * FROM findings WHERE 1=1"
        params: list[Any] = []
        if source_ip is not None:
            query += " AND source_ip = ?"
            params.append(source_ip)
        if since is not None:
            query += " AND created_at >= ?"
            params.append(since)
        if severity is not None:
            query += " AND severity = ?"
            params.append(severity.value)
        if rule_name is not None:
            query += " AND rule_name = ?"
            params.append(rule_name)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._cursor() as conn:
            cursor = conn.execute(query, params)
            return [self._row_to_finding(row) for row in cursor.fetchall()]

    def update_finding_status(self, finding_id: str, status: FindingStatus) -> None:
        with self._cursor() as conn:
            conn.execute(
                "UPDATE findings SET status = ? WHERE finding_id = ?",
                (status.value, finding_id),
            )
            conn.commit()

    def finding_count(self, severity: Severity | None = None) -> int:
        with self._cursor() as conn:
            if severity is not None:
                cursor = conn.execute(
                    "SELECT COUNT(*) FROM findings WHERE severity = ?", (severity.value,)
                )
            else:
                cursor = conn.execute("SELECT COUNT(*) FROM findings")
            return cursor.fetchone()[0]

    def _row_to_finding(self, row: sqlite3.Row) -> Finding:
        return Finding(
            finding_id=row["finding_id"],
            log_id=row["log_id"],
            created_at=row["created_at"],
            rule_name=row["rule_name"],
            severity=Severity.from_string(row["severity"]),
            source_ip=row["source_ip"],
            dedup_key=row["dedup_key"],
            evidence=json.loads(row["evidence"]),
            mitre_id=row["mitre_id"],
            status=FindingStatus(row["status"]),
        )

    # --- Incidents ---

    def insert_incident(self, incident: Incident) -> None:
        with self._cursor() as conn:
            conn.execute(
                "INSERT INTO incidents "
                "(incident_id, created_at, updated_at, title, description, severity, "
                "status, source_ip, related_finding_ids, related_log_ids, metadata, timeline) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    incident.incident_id,
                    incident.created_at,
                    incident.updated_at,
                    incident.title,
                    incident.description,
                    incident.severity.value,
                    incident.status.value,
                    incident.metadata.get("source_ip"),
                    json.dumps(incident.related_finding_ids),
                    json.dumps(incident.related_log_ids),
                    json.dumps(incident.metadata, default=str),
                    json.dumps([e.to_dict() for e in incident.timeline]),
                ),
            )
            conn.commit()

    def get_incident(self, incident_id: str) -> Incident | None:
        with self._cursor() as conn:
            row = conn.execute(
                "SELECT * FROM incidents WHERE incident_id = ?", (incident_id,)
            ).fetchone()
        if row is None:
            return None
        return self._row_to_incident(row)

    def append_to_incident(
        self,
        incident_id: str,
        finding_ids: list[str],
        log_ids: list[str],
        entry: TimelineEntry,
        severity: Severity | None = None,
    ) -> Incident | None:
        """Append references and a timeline entry to an existing incident.

        Finding/log references already present are not added again.
        Severity may be raised, never lowered. Returns the updated incident,
        or None if it does not exist.
        """
        with self._cursor() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM incidents WHERE incident_id = ?", (incident_id,)
            ).fetchone()
            if row is None:
                conn.rollback()
                return None
            incident = self._row_to_incident(row)
            incident.add_findings(finding_ids)
            incident.add_logs(log_ids)
            if severity is not None:
                incident.escalate_to(severity)
            incident.timeline.append(entry)
            incident.updated_at = entry.timestamp
            conn.execute(
                "UPDATE incidents SET related_finding_ids = ?, related_log_ids = ?, "
                "timeline = ?, severity = ?, updated_at = ? WHERE incident_id = ?",
                (
                    json.dumps(incident.related_finding_ids),
                    json.dumps(incident.related_log_ids),
                    json.dumps([e.to_dict() for e in incident.timeline]),
                    incident.severity.value,
                    incident.updated_at,
                    incident_id,
                ),
            )
            conn.commit()
            return incident

    def update_incident_status(
        self, incident_id: str, status: IncidentStatus, actor: str = "",
    ) -> Incident | None:
        """Move an incident through its lifecycle, recording a manual timeline entry."""
        with self._cursor() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM incidents WHERE incident_id = ?", (incident_id,)
            ).fetchone()
            if row is None:
                conn.rollback()
                return None
            incident = self._row_to_incident(row)
            incident.status = status
            entry = TimelineEntry(
                action=f"status:{status.value}", automatic=False, detail=actor,
            )
            incident.timeline.append(entry)
            incident.updated_at = entry.timestamp
            conn.execute(
                "UPDATE incidents SET status = ?, timeline = ?, updated_at = ? "
                "WHERE incident_id = ?",
                (
                    status.value,
                    json.dumps([e.to_dict() for e in incident.timeline]),
                    incident.updated_at,
                    incident_id,
                ),
            )
            conn.commit()
            return incident

    def query_incidents(
        self,
        status: IncidentStatus | None = None,
        severity: Severity | None = None,
        source_ip: str | None = None,
        limit: int = 100,
    ) -> list[Incident]:
        query = "SELECT * FROM incidents WHERE 1=1"
        params: list[Any] = []
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        if severity is not None:
            query += " AND severity = ?"
            params.append(severity.value)
        if source_ip is not None:
            query += " AND source_ip = ?"
            params.append(source_ip)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._cursor() as conn:
            cursor = conn.execute(query, params)
            return [self._row_to_incident(row) for row in cursor.fetchall()]

    def incident_count(self) -> int:
        with self._cursor() as conn:
            return conn.execute("SELECT COUNT(*) FROM incidents").fetchone()[0]

    def _row_to_incident(self, row: sqlite3.Row) -> Incident:
        return Incident(
            incident_id=row["incident_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            title=row["title"],
            description=row["description"],
            severity=Severity.from_string(row["severity"]),
            status=IncidentStatus(row["status"]),
            related_finding_ids=json.loads(row["related_finding_ids"]),
            related_log_ids=json.loads(row["related_log_ids"]),
            metadata=json.loads(row["metadata"]),
            timeline=[TimelineEntry.from_dict(e) for e in json.loads(row["timeline"])],
        )

    # --- Audit Log ---

    def audit(self, component: str, action: str, detail: str = "") -> None:
        with self._cursor() as conn:
            conn.execute(
                "INSERT INTO audit_log (timestamp, component, action, detail) "
                "VALUES (?, ?, ?, ?)",
                (time.time(), component, action, detail),
            )
            conn.commit()

    def get_audit_log(self, limit: int = 50) -> list[dict[str, Any]]:
        with self._cursor() as conn:
            cursor = conn.execute(
                "SELECT * FROM audit_log ORDER BY timestamp DESC LIMIT ?", (limit,)
            )
            return [
                {
                    "id": row["id"],
                    "timestamp": row["timestamp"],
                    "component": row["component"],
                    "action": row["action"],
                    "detail": row["detail"],
                }
                for row in cursor.fetchall()
            ]
