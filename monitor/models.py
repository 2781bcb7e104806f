"""
Models for change detection and alerting.

This module defines Pydantic models for:
- Change events and their severity
- Persisted snapshots (baselines)
- Detection results
- Alert configuration and composed notifications
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from portal.lazy import LazyValue
from portal.models import CompletenessLevel, EntityKey, EntityKind, Language

SNAPSHOT_SCHEMA_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChangeKind(str, Enum):
    """Types of changes that can be detected."""
    ADDED = "added"
    REMOVED = "removed"
    FIELD_CHANGED = "field_changed"
    PERIOD_STARTED = "period_started"


class ChangeSeverity(str, Enum):
    """Severity levels for changes."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_ORDER = {
    ChangeSeverity.LOW: 1,
    ChangeSeverity.MEDIUM: 2,
    ChangeSeverity.HIGH: 3,
    ChangeSeverity.CRITICAL: 4,
}


class ChangeEvent(BaseModel):
    """One detected change. Events are immutable once emitted."""
    model_config = ConfigDict(frozen=True)

    key: EntityKey = Field(..., description="Entity the change belongs to")
    match_id: str = Field(..., description="Identity used for matching (suffix-normalized id)")
    change_kind: ChangeKind
    field_name: Optional[str] = Field(default=None, description="Field that changed")
    old_value: Optional[Any] = Field(default=None, description="Previous value")
    new_value: Optional[Any] = Field(default=None, description="New value")
    severity: ChangeSeverity = Field(default=ChangeSeverity.LOW)
    summary: str = Field(..., description="Human-readable change summary")
    detected_at: datetime = Field(default_factory=_utcnow)


class Snapshot(BaseModel):
    """Ordered collection of one kind as last observed."""
    schema_version: int = Field(default=SNAPSHOT_SCHEMA_VERSION)
    kind: EntityKind
    language: Language
    level: CompletenessLevel = Field(default=CompletenessLevel.SUMMARY)
    captured_at: datetime = Field(default_factory=_utcnow)
    entities: List[LazyValue] = Field(default_factory=list)


class DetectionResult(BaseModel):
    """Result of one detection run for one kind."""
    detection_id: str = Field(..., description="Unique detection run identifier")
    kind: EntityKind
    language: Language
    run_timestamp: datetime = Field(default_factory=_utcnow)
    baseline_created: bool = Field(default=False)
    entities_checked: int = Field(default=0)
    events: List[ChangeEvent] = Field(default_factory=list)

    changes_by_kind: Dict[ChangeKind, int] = Field(default_factory=dict)
    changes_by_severity: Dict[ChangeSeverity, int] = Field(default_factory=dict)

    duration_seconds: float = Field(default=0.0)

    success: bool = Field(default=True)
    errors: List[str] = Field(default_factory=list)

    # Collection observed by this run; saved as the next baseline on commit
    snapshot: Optional[Snapshot] = Field(default=None, exclude=True, repr=False)

    @property
    def changes_detected(self) -> int:
        return len(self.events)

    def with_events(self, extra: List[ChangeEvent]) -> "DetectionResult":
        """Copy with `extra` appended and the counters recomputed."""
        events = list(self.events) + list(extra)
        by_kind, by_severity = count_events(events)
        return self.model_copy(update={
            "events": events,
            "changes_by_kind": by_kind,
            "changes_by_severity": by_severity,
        })


def count_events(events: List[ChangeEvent]):
    by_kind: Dict[ChangeKind, int] = {}
    by_severity: Dict[ChangeSeverity, int] = {}
    for event in events:
        by_kind[event.change_kind] = by_kind.get(event.change_kind, 0) + 1
        by_severity[event.severity] = by_severity.get(event.severity, 0) + 1
    return by_kind, by_severity


class AlertConfig(BaseModel):
    """Configuration for alerting."""
    enabled: bool = Field(default=True)
    log_enabled: bool = Field(default=True)

    # Alert thresholds
    min_severity_for_log: ChangeSeverity = Field(default=ChangeSeverity.LOW)

    # Rate limiting
    max_alerts_per_hour: int = Field(default=10, ge=1)

    @classmethod
    def from_config(cls, config) -> "AlertConfig":
        return cls(
            min_severity_for_log=ChangeSeverity(config.min_alert_severity),
            max_alerts_per_hour=config.max_alerts_per_hour,
        )


class Notification(BaseModel):
    """Message handed to an external notifier (e.g. an email transport)."""
    subject: str
    body: str
    events: List[ChangeEvent] = Field(default_factory=list)
