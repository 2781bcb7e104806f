"""
Entity identity and content fingerprinting.

This module provides:
- Suffix normalization of module/submodule ids for matching
- Pairing of baseline and current entities
- Content hashing to skip field comparison for unchanged entities
"""

import hashlib
import json
import re
from collections import defaultdict, deque
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple

import structlog

from portal.lazy import LazyValue
from portal.models import EntityKind

logger = structlog.get_logger(__name__)

# Section/cohort variants of one module are published as <id>-N<digits>
SECTION_SUFFIX_RE = re.compile(r"-N\d+$")

SUFFIXED_KINDS = frozenset({EntityKind.MODULE, EntityKind.SUBMODULE})

# Fields that repeat the (suffixed) id and must be compared without the suffix
IDENTITY_FIELDS = {
    EntityKind.MODULE: "module_number",
    EntityKind.SUBMODULE: "course_number",
}


def normalize_entity_id(kind: EntityKind, entity_id: str) -> str:
    """
    Identity used to match entities across snapshots.

    Strips one trailing `-N<digits>` from module and submodule ids; every
    other kind is matched on its id unchanged.
    """
    if kind in SUFFIXED_KINDS:
        return SECTION_SUFFIX_RE.sub("", entity_id)
    return entity_id


def same_identity_value(kind: EntityKind, field_name: str, old: Any, new: Any) -> bool:
    """True if `old` and `new` only differ in the section suffix of an identity field."""
    if IDENTITY_FIELDS.get(kind) != field_name:
        return False
    if not isinstance(old, str) or not isinstance(new, str):
        return False
    return normalize_entity_id(kind, old) == normalize_entity_id(kind, new)


def match_entities(
    kind: EntityKind,
    baseline: List[LazyValue],
    current: List[LazyValue]
) -> Tuple[List[Tuple[Optional[LazyValue], LazyValue]], List[LazyValue]]:
    """
    Pair current entities with their baseline counterparts.

    Exact ids are paired first. Remaining entities with the same normalized
    id are then paired in order of appearance.

    Returns:
        ([(old or None, new) in current order], [unmatched old in baseline order])
    """
    exact: Dict[str, int] = {}
    for i, old in enumerate(baseline):
        exact.setdefault(old.key.entity_id, i)

    used = set()
    pairs: List[Optional[int]] = [None] * len(current)

    for j, new in enumerate(current):
        i = exact.get(new.key.entity_id)
        if i is not None and i not in used:
            pairs[j] = i
            used.add(i)

    by_identity: Dict[str, Deque[int]] = defaultdict(deque)
    for i, old in enumerate(baseline):
        if i not in used:
            by_identity[normalize_entity_id(kind, old.key.entity_id)].append(i)

    for j, new in enumerate(current):
        if pairs[j] is not None:
            continue
        candidates = by_identity.get(normalize_entity_id(kind, new.key.entity_id))
        if candidates:
            i = candidates.popleft()
            pairs[j] = i
            used.add(i)

    matched = [
        (baseline[i] if i is not None else None, new)
        for i, new in zip(pairs, current)
    ]
    unmatched = [old for i, old in enumerate(baseline) if i not in used]
    return matched, unmatched


class EntityFingerprinter:
    """Content fingerprinting over the known fields of a value."""

    def __init__(self, fingerprint_fields: Optional[Iterable[str]] = None):
        """
        Args:
            fingerprint_fields: Restrict hashing to these fields (all known fields if None)
        """
        self.fingerprint_fields = frozenset(fingerprint_fields) if fingerprint_fields else None
        self.logger = logger.bind(component="fingerprinter")

    def _hashed_fields(self, value: LazyValue) -> Dict[str, Any]:
        names = value.known_fields()
        if self.fingerprint_fields is not None:
            names = names & self.fingerprint_fields
        return {name: value.fields[name] for name in names}

    def fingerprint(self, value: LazyValue) -> str:
        """SHA-256 of the hashed fields as sorted JSON."""
        content = json.dumps(self._hashed_fields(value), sort_keys=True, ensure_ascii=False)
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def unchanged(self, old: LazyValue, new: LazyValue) -> bool:
        """
        True when both values know the same fields with the same content.

        Different known-field sets always return False so the caller falls
        back to a field-by-field comparison of the shared fields.
        """
        if set(self._hashed_fields(old)) != set(self._hashed_fields(new)):
            return False
        return self.fingerprint(old) == self.fingerprint(new)
