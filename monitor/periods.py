"""
Registration period announcements.

A registration period is announced once, on the first run that finds the
current time inside its [start, end] window. Announced periods are kept
in a small JSON file so later runs stay quiet.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Set, Tuple, Union

import structlog

from portal.errors import CacheCorrupt
from portal.lazy import LazyValue
from portal.models import EntityKind
from storage.files import atomic_write_json, read_json
from .fingerprinting import normalize_entity_id
from .models import ChangeEvent, ChangeKind, ChangeSeverity

logger = structlog.get_logger(__name__)

PeriodIdentity = Tuple[str, str, str]


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class PeriodWatcher:
    """Emits a period_started event once per registration period."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.logger = logger.bind(component="period_watcher")

    def announced(self) -> Set[PeriodIdentity]:
        try:
            raw = read_json(self.path)
            return {(item["entity_id"], item["start"], item["end"]) for item in raw}
        except FileNotFoundError:
            return set()
        except (CacheCorrupt, KeyError, TypeError) as e:
            self.logger.warning("Ignoring unreadable announced periods", path=str(self.path), error=str(e))
            return set()

    def check(
        self,
        periods: List[LazyValue],
        now: Optional[datetime] = None,
        remember: bool = True
    ) -> List[ChangeEvent]:
        """
        Return events for periods running at `now` that were not announced yet.

        They are remembered as announced right away unless `remember` is
        False, in which case `remember_events` must be called once they
        have been delivered.
        """
        now = now or datetime.now(timezone.utc)
        announced = self.announced()
        events = []

        for period in periods:
            start = parse_timestamp(period.get("start"))
            end = parse_timestamp(period.get("end"))
            if start is None or end is None:
                self.logger.warning("Skipping period without usable dates", key=str(period.key))
                continue

            identity = (period.key.entity_id, period.get("start"), period.get("end"))
            if not (start <= now <= end) or identity in announced:
                continue

            name = period.get("name") or period.key.entity_id
            events.append(ChangeEvent(
                key=period.key,
                match_id=normalize_entity_id(EntityKind.REGISTRATION_PERIOD, period.key.entity_id),
                change_kind=ChangeKind.PERIOD_STARTED,
                new_value={"start": period.get("start"), "end": period.get("end")},
                severity=ChangeSeverity.HIGH,
                summary=(
                    f"The {name} just started "
                    f"({start.strftime('%Y-%m-%d %H:%M:%S')} - {end.strftime('%Y-%m-%d %H:%M:%S')})"
                ),
                detected_at=now,
            ))
            announced.add(identity)

        if events:
            self.logger.info("Registration periods started", count=len(events))
            if remember:
                self.remember_events(events)

        return events

    def remember_events(self, events: List[ChangeEvent]) -> None:
        """Persist the periods of `events` as announced."""
        started = {
            (e.key.entity_id, e.new_value["start"], e.new_value["end"])
            for e in events if e.change_kind == ChangeKind.PERIOD_STARTED
        }
        if not started:
            return
        announced = self.announced() | started
        atomic_write_json(
            self.path,
            [{"entity_id": i, "start": s, "end": e} for i, s, e in sorted(announced)]
        )
