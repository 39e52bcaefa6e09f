"""Data models shared by the detection and escalation layers.

NormalizedLogEvent: one security log record, normalized on entry.
Finding: a single rule's positive detection for one log (a.k.a. alert).
Incident: a correlated, escalated record grouping findings and logs.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Severity(Enum):
    """Severity of a log hint, finding or incident."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> int:
        return _SEVERITY_WEIGHTS[self]

    @classmethod
    def from_string(cls, value: str) -> Severity:
        return cls(value.strip().lower())

    @classmethod
    def parse(cls, value: Any, default: Severity | None = None) -> Severity:
        """Lenient parse: unknown or missing values map to *default* (LOW)."""
        if isinstance(value, Severity):
            return value
        try:
            return cls.from_string(str(value))
        except (ValueError, AttributeError):
            return default or cls.LOW


_SEVERITY_WEIGHTS: dict[Severity, int] = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}

UNKNOWN = "unknown"


def _norm(value: Any) -> str:
    return str(value or "").strip().lower()


def _parse_timestamp(value: Any, default: float) -> float:
    if value is None or value == "":
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp()
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return default


@dataclass(frozen=True)
class NormalizedLogEvent:
    """A security log record after normalization.

    Never mutated after creation within the pipeline.
    """

    event_type: str
    source_ip: str = UNKNOWN
    target_system: str = UNKNOWN
    severity: Severity = Severity.LOW
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    log_id: str = field(default_factory=lambda: f"log-{uuid.uuid4().hex[:12]}")

    @property
    def attack_type(self) -> str:
        """Alias of event_type kept for rules written against the older field."""
        return self.event_type

    @property
    def payload(self) -> str:
        return str(self.metadata.get("payload") or "")

    @property
    def url(self) -> str:
        return str(self.metadata.get("url") or "")

    @property
    def port(self) -> Any:
        return self.metadata.get("port")

    @property
    def response_size(self) -> float:
        """Response size in bytes, 0 when absent or not numeric."""
        try:
            return float(self.metadata.get("response_size") or 0)
        except (TypeError, ValueError):
            return 0.0

    @property
    def country_code(self) -> str | None:
        geo = self.metadata.get("geo")
        if isinstance(geo, dict) and geo.get("country_code"):
            return str(geo["country_code"]).upper()
        code = self.metadata.get("country_code")
        return str(code).upper() if code else None

    @classmethod
    def from_raw(cls, raw: dict[str, Any], now: float | None = None) -> NormalizedLogEvent:
        """Normalize a raw submitted record.

        Lowercases and trims event_type, defaults severity to low and
        source/target to "unknown", trims whitespace.
        """
        now = time.time() if now is None else now
        metadata = raw.get("metadata") or {}
        kwargs: dict[str, Any] = {
            "event_type": _norm(raw.get("event_type")),
            "source_ip": str(raw.get("source_ip") or "").strip() or UNKNOWN,
            "target_system": str(raw.get("target_system") or "").strip() or UNKNOWN,
            "severity": Severity.parse(_norm(raw.get("severity")) or "low"),
            "metadata": dict(metadata) if isinstance(metadata, dict) else {},
            "timestamp": _parse_timestamp(raw.get("timestamp"), now),
        }
        log_id = raw.get("log_id") or raw.get("_id")
        if log_id:
            kwargs["log_id"] = str(log_id)
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "log_id": self.log_id,
            "timestamp": self.timestamp,
            "event_type": self.event_type,
            "attack_type": self.attack_type,
            "source_ip": self.source_ip,
            "target_system": self.target_system,
            "severity": self.severity.value,
            "metadata": self.metadata,
        }


class FindingStatus(Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    CLOSED = "closed"


@dataclass
class Finding:
    """A rule's positive detection result, write-once."""

    rule_name: str
    severity: Severity
    source_ip: str | None
    dedup_key: str
    log_id: str = ""
    evidence: dict[str, Any] = field(default_factory=dict)
    mitre_id: str | None = None
    status: FindingStatus = FindingStatus.OPEN
    created_at: float = field(default_factory=time.time)
    finding_id: str = field(default_factory=lambda: f"fnd-{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "finding_id": self.finding_id,
            "rule_name": self.rule_name,
            "severity": self.severity.value,
            "source_ip": self.source_ip,
            "dedup_key": self.dedup_key,
            "log_id": self.log_id,
            "evidence": self.evidence,
            "mitre_id": self.mitre_id,
            "status": self.status.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Finding:
        return cls(
            finding_id=d["finding_id"],
            rule_name=d["rule_name"],
            severity=Severity.from_string(d["severity"]),
            source_ip=d.get("source_ip"),
            dedup_key=d["dedup_key"],
            log_id=d.get("log_id", ""),
            evidence=d.get("evidence", {}),
            mitre_id=d.get("mitre_id"),
            status=FindingStatus(d.get("status", "open")),
            created_at=d["created_at"],
        )


class IncidentStatus(Enum):
    OPEN = "open"
    IN_PROGRESS = "in-progress"
    MITIGATED = "mitigated"
    RESOLVED = "resolved"
    CLOSED = "closed"


class CreationType(Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


@dataclass
class TimelineEntry:
    """One append-only lifecycle record on an incident."""

    action: str
    rule: str = ""
    automatic: bool = True
    detail: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "action": self.action,
            "rule": self.rule,
            "automatic": self.automatic,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> TimelineEntry:
        return cls(
            action=d["action"],
            rule=d.get("rule", ""),
            automatic=d.get("automatic", True),
            detail=d.get("detail", ""),
            timestamp=d["timestamp"],
        )


@dataclass
class Incident:
    """An escalated record grouping correlated findings and logs."""

    title: str
    severity: Severity
    description: str = ""
    status: IncidentStatus = IncidentStatus.OPEN
    related_finding_ids: list[str] = field(default_factory=list)
    related_log_ids: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    timeline: list[TimelineEntry] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    incident_id: str = field(default_factory=lambda: f"inc-{uuid.uuid4().hex[:12]}")

    def add_findings(self, finding_ids: list[str]) -> None:
        """Append finding references, skipping ones already present."""
        for fid in finding_ids:
            if fid not in self.related_finding_ids:
                self.related_finding_ids.append(fid)

    def add_logs(self, log_ids: list[str]) -> None:
        for lid in log_ids:
            if lid not in self.related_log_ids:
                self.related_log_ids.append(lid)

    def escalate_to(self, severity: Severity) -> None:
        """Raise severity; never lowers it."""
        if severity.weight > self.severity.weight:
            self.severity = severity

    def to_dict(self) -> dict[str, Any]:
        return {
            "incident_id": self.incident_id,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "status": self.status.value,
            "related_finding_ids": list(self.related_finding_ids),
            "related_log_ids": list(self.related_log_ids),
            "metadata": self.metadata,
            "timeline": [e.to_dict() for e in self.timeline],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
