"""
Change detection engine for tracked portal collections.

This module provides:
- Baseline handling (first run creates a baseline silently)
- Diffing of a baseline against a freshly fetched collection
- Change classification and severity assessment
"""

import time
import uuid
from bisect import bisect_left
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from portal.lazy import LazyValue
from portal.models import CompletenessLevel, EntityKind, Language
from .fingerprinting import (
    EntityFingerprinter,
    match_entities,
    normalize_entity_id,
    same_identity_value,
)
from .models import (
    ChangeEvent,
    ChangeKind,
    ChangeSeverity,
    DetectionResult,
    Snapshot,
    count_events,
)
from .snapshots import SnapshotStore

logger = structlog.get_logger(__name__)

# (kind, language, level) -> current collection
CollectionSource = Callable[[EntityKind, Language, CompletenessLevel], Awaitable[List[LazyValue]]]

# Portal placeholders for "no value yet"
BLANK_VALUES = ("", "-", "&nbsp;")


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    return isinstance(value, str) and value.strip() in BLANK_VALUES


def _display_name(value: LazyValue) -> str:
    name = value.get("name")
    if name:
        return f"{name} ({value.key.entity_id})"
    return value.key.entity_id


def _show(value: Any) -> str:
    return "N/A" if value is None else str(value)


class ChangeDetector:
    """Engine for detecting changes between a baseline and the current collection."""

    def __init__(
        self,
        snapshots: SnapshotStore,
        collection_source: CollectionSource,
        fingerprinter: Optional[EntityFingerprinter] = None
    ):
        """
        Initialize change detector.

        Args:
            snapshots: Store holding the baselines
            collection_source: Coroutine returning the current collection
            fingerprinter: Used to skip unchanged entities quickly
        """
        self.snapshots = snapshots
        self.collection_source = collection_source
        self.fingerprinter = fingerprinter or EntityFingerprinter()
        self.logger = logger.bind(component="change_detector")

    async def detect_changes(
        self,
        kind: EntityKind,
        language: Language,
        level: CompletenessLevel = CompletenessLevel.SUMMARY,
        commit: bool = True
    ) -> DetectionResult:
        """
        Fetch the current collection of `kind`, diff it against the baseline
        and store it as the new baseline.

        The first run for a (kind, language) only stores the baseline and
        reports no events. If fetching fails the old baseline is kept.

        With `commit=False` the baseline is left untouched and the observed
        collection travels in `result.snapshot` until `commit(result)` is
        called, e.g. once the events have been delivered.
        """
        detection_id = str(uuid.uuid4())
        started = time.monotonic()

        self.logger.info(
            "Starting change detection",
            detection_id=detection_id,
            kind=kind.value,
            language=language.value,
            level=level.name
        )

        baseline = self.snapshots.load(kind, language)
        current = await self.collection_source(kind, language, level)

        if baseline is None:
            events: List[ChangeEvent] = []
        else:
            events = self.diff(kind, baseline.entities, current)

        snapshot = Snapshot(kind=kind, language=language, level=level, entities=current)

        by_kind, by_severity = count_events(events)
        result = DetectionResult(
            detection_id=detection_id,
            kind=kind,
            language=language,
            baseline_created=baseline is None,
            entities_checked=len(current),
            events=events,
            changes_by_kind=by_kind,
            changes_by_severity=by_severity,
            duration_seconds=time.monotonic() - started,
            snapshot=snapshot,
        )
        if commit:
            self.commit(result)

        if result.baseline_created:
            self.logger.info(
                "Created baseline",
                detection_id=detection_id,
                kind=kind.value,
                language=language.value,
                entities=len(current)
            )
        else:
            self.logger.info(
                "Change detection completed",
                detection_id=detection_id,
                kind=kind.value,
                entities_checked=result.entities_checked,
                changes_detected=result.changes_detected,
                duration_seconds=round(result.duration_seconds, 3)
            )

        return result

    def commit(self, result: DetectionResult) -> None:
        """Store the collection observed by `result` as the new baseline."""
        if result.snapshot is None:
            return
        self.snapshots.save(result.snapshot)
        self.logger.debug(
            "Baseline saved",
            detection_id=result.detection_id,
            kind=result.kind.value,
            language=result.language.value
        )

    def diff(
        self,
        kind: EntityKind,
        baseline: List[LazyValue],
        current: List[LazyValue]
    ) -> List[ChangeEvent]:
        """
        Compare two collections of `kind`.

        Events follow the current collection's order, one entity at a time.
        A removed entity is reported right after the entity that preceded it
        in the baseline and is still present, or first if there is none.
        Fields unknown on either side are never reported.
        """
        detected_at = datetime.now(timezone.utc)
        matched, removed = match_entities(kind, baseline, current)

        position = {id(old): i for i, old in enumerate(baseline)}
        kept = sorted(position[id(old)] for old, _ in matched if old is not None)

        # baseline position of the preceding kept entity -> removals after it
        removed_after: Dict[Optional[int], List[LazyValue]] = defaultdict(list)
        for old in removed:
            k = bisect_left(kept, position[id(old)])
            removed_after[kept[k - 1] if k else None].append(old)

        events: List[ChangeEvent] = [
            self._removed_event(kind, old, detected_at) for old in removed_after[None]
        ]
        for old, new in matched:
            if old is None:
                events.append(self._added_event(kind, new, detected_at))
                continue
            events.extend(self._field_events(kind, old, new, detected_at))
            events.extend(
                self._removed_event(kind, gone, detected_at)
                for gone in removed_after.get(position[id(old)], [])
            )

        return events

    def _field_events(
        self,
        kind: EntityKind,
        old: LazyValue,
        new: LazyValue,
        detected_at: datetime
    ) -> List[ChangeEvent]:
        if self.fingerprinter.unchanged(old, new):
            return []

        events = []
        for field_name, (old_value, new_value) in old.compare(new).items():
            if same_identity_value(kind, field_name, old_value, new_value):
                continue
            events.append(ChangeEvent(
                key=new.key,
                match_id=normalize_entity_id(kind, new.key.entity_id),
                change_kind=ChangeKind.FIELD_CHANGED,
                field_name=field_name,
                old_value=old_value,
                new_value=new_value,
                severity=self._classify_change(kind, ChangeKind.FIELD_CHANGED, new, field_name),
                summary=f"[{_display_name(new)}] {field_name}: {_show(old_value)} -> {_show(new_value)}",
                detected_at=detected_at,
            ))
        return events

    def _added_event(self, kind: EntityKind, new: LazyValue, detected_at: datetime) -> ChangeEvent:
        if kind == EntityKind.EXAM_RESULT:
            summary = (
                f"[{_display_name(new)}] new result: grade {_show(new.get('grade'))}"
                f" | status {_show(new.get('status'))}"
            )
        else:
            summary = f"[{_display_name(new)}] added"

        return ChangeEvent(
            key=new.key,
            match_id=normalize_entity_id(kind, new.key.entity_id),
            change_kind=ChangeKind.ADDED,
            new_value=dict(new.fields),
            severity=self._classify_change(kind, ChangeKind.ADDED, new),
            summary=summary,
            detected_at=detected_at,
        )

    def _removed_event(self, kind: EntityKind, old: LazyValue, detected_at: datetime) -> ChangeEvent:
        return ChangeEvent(
            key=old.key,
            match_id=normalize_entity_id(kind, old.key.entity_id),
            change_kind=ChangeKind.REMOVED,
            old_value=dict(old.fields),
            severity=self._classify_change(kind, ChangeKind.REMOVED, old),
            summary=f"[{_display_name(old)}] removed",
            detected_at=detected_at,
        )

    def _classify_change(
        self,
        kind: EntityKind,
        change_kind: ChangeKind,
        value: LazyValue,
        field_name: Optional[str] = None
    ) -> ChangeSeverity:
        """Severity based on entity kind, change kind and field."""

        # Grades and exam status are what users wait for
        if kind == EntityKind.EXAM_RESULT:
            if change_kind == ChangeKind.FIELD_CHANGED and field_name in ("grade", "status"):
                return ChangeSeverity.HIGH
            if change_kind == ChangeKind.ADDED:
                if _is_blank(value.get("grade")) and _is_blank(value.get("status")):
                    return ChangeSeverity.LOW
                return ChangeSeverity.HIGH

        if change_kind == ChangeKind.PERIOD_STARTED:
            return ChangeSeverity.HIGH

        if change_kind == ChangeKind.REMOVED:
            return ChangeSeverity.MEDIUM

        if change_kind == ChangeKind.ADDED:
            return ChangeSeverity.MEDIUM

        return ChangeSeverity.LOW
