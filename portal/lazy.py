"""
Lazily loaded entity values.

A LazyValue holds whatever fields of one entity are known so far together
with the completeness level that produced them. Values are immutable:
merging or escalating returns a new value and never touches the original,
so a failed escalation leaves the caller with exactly what it had before.
"""

from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .errors import FieldNotLoaded, ParseError
from .models import (
    CompletenessLevel,
    EntityKey,
    RawEntityData,
    fields_for,
    missing_fields,
)

# fetch_fn(target_level, wanted_fields) -> RawEntityData; wanted_fields is
# None when the whole entity is requested at target_level.
FetchFn = Callable[[CompletenessLevel, Optional[FrozenSet[str]]], Awaitable[RawEntityData]]


class ValueState(str, Enum):
    UNLOADED = "unloaded"
    PARTIAL = "partial"
    COMPLETE = "complete"


class LazyValue(BaseModel):
    """An entity known up to some completeness level."""
    model_config = ConfigDict(frozen=True)

    key: EntityKey
    level: CompletenessLevel = Field(default=CompletenessLevel.UNLOADED)
    fields: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def unloaded(cls, key: EntityKey) -> "LazyValue":
        return cls(key=key)

    @classmethod
    def from_raw(cls, raw: RawEntityData, required: Optional[Iterable[str]] = None) -> "LazyValue":
        """
        Wrap a fetched payload.

        Args:
            raw: Payload returned by a Fetcher
            required: Fields the payload must contain; defaults to every
                field guaranteed by raw.level

        Raises:
            ParseError: if a required field is absent
        """
        if required is None:
            required = fields_for(raw.key.kind, raw.level)
        absent = set(required) - set(raw.fields)
        if absent:
            raise ParseError(
                f"{raw.key} at {raw.level.name} is missing fields: {', '.join(sorted(absent))}"
            )
        return cls(key=raw.key, level=raw.level, fields=dict(raw.fields))

    @property
    def state(self) -> ValueState:
        if self.level == CompletenessLevel.UNLOADED:
            return ValueState.UNLOADED
        if fields_for(self.key.kind, CompletenessLevel.FULL) <= self.known_fields():
            return ValueState.COMPLETE
        return ValueState.PARTIAL

    def known_fields(self) -> FrozenSet[str]:
        return frozenset(self.fields)

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def require(self, name: str) -> Any:
        """Return a field value, raising FieldNotLoaded if it is not known yet."""
        if name not in self.fields:
            raise FieldNotLoaded(f"{name} is not loaded for {self.key} (level {self.level.name})")
        return self.fields[name]

    def with_level(self, level: CompletenessLevel) -> "LazyValue":
        return self.model_copy(update={"level": level})

    def merge(self, incoming: "LazyValue") -> "LazyValue":
        """
        Field-wise union with `incoming`.

        Fields present in `incoming` win, fields only known here are kept and
        the resulting level is the higher of the two.
        """
        if incoming.key != self.key:
            raise ValueError(f"cannot merge {incoming.key} into {self.key}")
        fields = dict(self.fields)
        fields.update(incoming.fields)
        return LazyValue(key=self.key, level=max(self.level, incoming.level), fields=fields)

    async def escalate(
        self,
        target: CompletenessLevel,
        fetch_fn: FetchFn,
        partial: bool = True
    ) -> "LazyValue":
        """
        Bring this value up to `target`.

        With `partial` the fetch asks only for the fields between the current
        and the target level; otherwise the entity is refetched at `target`
        and merged. Returns self unchanged when already at or above target.
        """
        if self.level >= target:
            return self

        needed = missing_fields(self.key.kind, self.level, target)
        if not needed and self.level > CompletenessLevel.UNLOADED:
            # Nothing new at the levels in between
            return self.with_level(target)

        if partial and self.level > CompletenessLevel.UNLOADED:
            raw = await fetch_fn(target, needed)
            required = needed
        else:
            raw = await fetch_fn(target, None)
            required = fields_for(self.key.kind, target)

        if raw.key != self.key:
            raise ParseError(f"fetch for {self.key} returned {raw.key}")

        incoming = LazyValue.from_raw(raw, required=required)
        return self.merge(incoming.with_level(max(incoming.level, target)))

    def compare(
        self,
        other: "LazyValue",
        fields: Optional[Iterable[str]] = None
    ) -> Dict[str, Tuple[Any, Any]]:
        """
        Fields whose values differ between self (old) and other (new).

        Only fields known on both sides are compared; a field missing on
        either side is unknown and never reported.
        """
        names = self.known_fields() & other.known_fields()
        if fields is not None:
            names = names & frozenset(fields)
        changes = {}
        for name in sorted(names):
            old, new = self.fields[name], other.fields[name]
            if old != new:
                changes[name] = (old, new)
        return changes
