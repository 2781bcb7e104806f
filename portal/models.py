"""
Pydantic models for portal entities.

Entities are identified by (kind, id, language) and fetched at one of a
small set of ordered completeness levels. The field table below is the
single source of truth for which fields each level guarantees.
"""

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Language(str, Enum):
    """Portal display language; part of every cache key."""
    GERMAN = "de"
    ENGLISH = "en"


class EntityKind(str, Enum):
    """Kinds of records served by the portal."""
    MODULE = "module"
    SUBMODULE = "submodule"
    EXAM_RESULT = "exam_result"
    DOCUMENT = "document"
    REGISTRATION_PERIOD = "registration_period"


class CompletenessLevel(IntEnum):
    """
    Ordered tiers of how much of an entity has been fetched.

    UNLOADED: only the key is known
    SUMMARY: what the overview/listing page shows
    DETAILED: one extra detail request per entity
    FULL: every field, including nested tables
    """
    UNLOADED = 0
    SUMMARY = 1
    DETAILED = 2
    FULL = 3


# Fields introduced at each level, per kind. A value at level L carries the
# union of the sets for every level <= L.
LEVEL_FIELDS: Dict[EntityKind, Dict[CompletenessLevel, FrozenSet[str]]] = {
    EntityKind.MODULE: {
        CompletenessLevel.SUMMARY: frozenset({"module_number", "name", "owner"}),
        CompletenessLevel.DETAILED: frozenset({
            "credits", "duration", "electives", "start_semester", "timetable_name",
        }),
        CompletenessLevel.FULL: frozenset({"submodules", "exams", "attributes"}),
    },
    EntityKind.SUBMODULE: {
        CompletenessLevel.SUMMARY: frozenset({"course_number", "name"}),
        CompletenessLevel.DETAILED: frozenset({
            "event_type", "instructors", "hours_per_week", "credits", "language",
            "min_participants", "max_participants",
        }),
        CompletenessLevel.FULL: frozenset({"appointments", "groups"}),
    },
    EntityKind.EXAM_RESULT: {
        CompletenessLevel.SUMMARY: frozenset({"number", "name", "status"}),
        CompletenessLevel.DETAILED: frozenset({"grade", "credits", "semester"}),
        CompletenessLevel.FULL: frozenset({"grade_stats"}),
    },
    EntityKind.DOCUMENT: {
        CompletenessLevel.SUMMARY: frozenset({"name", "issued_at", "status"}),
        CompletenessLevel.DETAILED: frozenset(),
        CompletenessLevel.FULL: frozenset({"download_url"}),
    },
    EntityKind.REGISTRATION_PERIOD: {
        CompletenessLevel.SUMMARY: frozenset({"name", "period_type", "start", "end"}),
        CompletenessLevel.DETAILED: frozenset(),
        CompletenessLevel.FULL: frozenset(),
    },
}


def fields_for(kind: EntityKind, level: CompletenessLevel) -> FrozenSet[str]:
    """All fields a value of `kind` is guaranteed to carry at `level`."""
    table = LEVEL_FIELDS[kind]
    out: FrozenSet[str] = frozenset()
    for lvl, names in table.items():
        if lvl <= level:
            out = out | names
    return out


def missing_fields(
    kind: EntityKind,
    current: CompletenessLevel,
    target: CompletenessLevel
) -> FrozenSet[str]:
    """
    Fields that must be fetched to escalate from `current` to `target`.

    Empty when `current >= target` or when the levels in between add nothing.
    """
    if current >= target:
        return frozenset()
    return fields_for(kind, target) - fields_for(kind, current)


class EntityKey(BaseModel):
    """Identity of a cached entity."""
    model_config = ConfigDict(frozen=True)

    kind: EntityKind
    entity_id: str = Field(..., min_length=1)
    language: Language

    def storage_name(self) -> str:
        """Filesystem-safe, collision-resistant name for this key."""
        digest = hashlib.md5(self.entity_id.encode("utf-8")).hexdigest()
        return f"{self.kind.value}_{self.language.value}_{digest}"

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.entity_id}@{self.language.value}"


class RawEntityData(BaseModel):
    """Field payload returned by a Fetcher for one entity."""
    key: EntityKey
    level: CompletenessLevel
    fields: Dict[str, Any] = Field(default_factory=dict)
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("fields")
    @classmethod
    def validate_json_native(cls, v):
        """Field values must survive a JSON round trip unchanged."""
        try:
            encoded = json.dumps(v, ensure_ascii=False, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise ValueError(f"field values must be JSON-native: {e}")
        if json.loads(encoded) != v:
            raise ValueError("field values must be JSON-native (tuples or non-string keys found)")
        return v


class Session(BaseModel):
    """Authenticated portal session as persisted between invocations."""
    token: str = Field(..., min_length=1, description="Session number passed as -N<token>")
    cookie: str = Field(..., min_length=1, description="Value of the cnsc cookie")
    username: str = Field(..., description="Account the session belongs to")
    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_used: Optional[datetime] = Field(default=None)
    valid: bool = Field(default=True)

    @field_validator("issued_at", "last_used")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Naive timestamps are taken as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v
