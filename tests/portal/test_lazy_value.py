"""
Test cases for LazyValue merging, escalation and comparison.
"""

import pytest
from unittest.mock import AsyncMock

from portal.errors import FieldNotLoaded, NetworkError, ParseError
from portal.lazy import LazyValue, ValueState
from portal.models import CompletenessLevel, EntityKind, RawEntityData


def raw(key, level, **fields):
    return RawEntityData(key=key, level=level, fields=fields)


class TestMerge:
    """Test cases for field-wise merging."""

    @pytest.mark.parametrize("level,fields", [
        (CompletenessLevel.UNLOADED, {}),
        (CompletenessLevel.SUMMARY, {"number": "64-010", "name": "Mathe", "status": ""}),
        (CompletenessLevel.DETAILED, {"number": "64-010", "name": "Mathe", "status": "", "grade": None,
                                      "credits": 6, "semester": "SoSe 24"}),
    ])
    def test_merge_is_idempotent(self, exam_key, level, fields):
        """Test merge(v, v) == v."""
        value = LazyValue(key=exam_key, level=level, fields=fields)
        assert value.merge(value) == value
        assert value.merge(value).merge(value) == value

    def test_merge_partial_with_complete(self, exam_key, sample_exam_fields):
        """Test that merging a complete value raises the level and keeps consistent fields."""
        partial = LazyValue(
            key=exam_key,
            level=CompletenessLevel.SUMMARY,
            fields={"number": "64-010", "name": "Mathematik I", "status": "bestanden"},
        )
        complete = LazyValue(key=exam_key, level=CompletenessLevel.FULL, fields=sample_exam_fields)

        merged = partial.merge(complete)

        assert merged.level == CompletenessLevel.FULL
        assert merged.state == ValueState.COMPLETE
        for name, value in partial.fields.items():
            assert merged.fields[name] == value

    def test_incoming_fields_win(self, exam_key):
        """Test that the freshest fetch is the source of truth."""
        old = LazyValue(key=exam_key, level=CompletenessLevel.SUMMARY,
                        fields={"number": "64-010", "name": "Mathe", "status": ""})
        new = LazyValue(key=exam_key, level=CompletenessLevel.SUMMARY,
                        fields={"number": "64-010", "name": "Mathe", "status": "bestanden"})

        assert old.merge(new).fields["status"] == "bestanden"

    def test_fields_absent_in_incoming_are_kept(self, exam_key, sample_exam_fields):
        """Test that a lower-level refresh does not drop detail fields."""
        full = LazyValue(key=exam_key, level=CompletenessLevel.FULL, fields=sample_exam_fields)
        summary = LazyValue(key=exam_key, level=CompletenessLevel.SUMMARY,
                            fields={"number": "64-010", "name": "Mathematik I", "status": "bestanden"})

        merged = full.merge(summary)

        assert merged.level == CompletenessLevel.FULL
        assert merged.fields["grade_stats"] == sample_exam_fields["grade_stats"]

    def test_merge_does_not_mutate(self, exam_key):
        """Test that merge returns a new value."""
        old = LazyValue(key=exam_key, level=CompletenessLevel.SUMMARY, fields={"name": "a"})
        old.merge(LazyValue(key=exam_key, level=CompletenessLevel.SUMMARY, fields={"name": "b"}))
        assert old.fields == {"name": "a"}

    def test_merge_rejects_other_key(self, exam_key, value_factory):
        """Test merging values of different entities."""
        value = LazyValue.unloaded(exam_key)
        other = value_factory(EntityKind.EXAM_RESULT, "64-011")
        with pytest.raises(ValueError):
            value.merge(other)


class TestLazyValueAccess:
    """Test cases for state and field access."""

    def test_states(self, exam_key, sample_exam_fields):
        """Test unloaded, partial and complete states."""
        assert LazyValue.unloaded(exam_key).state == ValueState.UNLOADED
        partial = LazyValue(key=exam_key, level=CompletenessLevel.SUMMARY, fields={"name": "x"})
        assert partial.state == ValueState.PARTIAL
        complete = LazyValue(key=exam_key, level=CompletenessLevel.FULL, fields=sample_exam_fields)
        assert complete.state == ValueState.COMPLETE

    def test_require_unknown_field(self, exam_key):
        """Test FieldNotLoaded for fields beyond the loaded level."""
        value = LazyValue(key=exam_key, level=CompletenessLevel.SUMMARY, fields={"name": "x"})
        assert value.require("name") == "x"
        with pytest.raises(FieldNotLoaded):
            value.require("grade")
        with pytest.raises(KeyError):
            value.require("grade")

    def test_get_with_default(self, exam_key):
        value = LazyValue(key=exam_key, level=CompletenessLevel.SUMMARY, fields={"name": "x"})
        assert value.get("grade") is None
        assert value.get("grade", "-") == "-"

    def test_from_raw_requires_level_fields(self, exam_key):
        """Test that incomplete payloads are rejected."""
        with pytest.raises(ParseError):
            LazyValue.from_raw(raw(exam_key, CompletenessLevel.SUMMARY, number="64-010", name="Mathe"))

    def test_from_raw_with_explicit_required(self, exam_key):
        """Test validation against an explicit field set."""
        value = LazyValue.from_raw(
            raw(exam_key, CompletenessLevel.DETAILED, grade="1,0"),
            required={"grade"},
        )
        assert value.fields == {"grade": "1,0"}


class TestEscalate:
    """Test cases for escalation."""

    @pytest.mark.asyncio
    async def test_noop_when_already_at_level(self, exam_key, sample_exam_fields):
        """Test that no fetch happens at or above the target."""
        value = LazyValue(key=exam_key, level=CompletenessLevel.FULL, fields=sample_exam_fields)
        fetch_fn = AsyncMock()

        result = await value.escalate(CompletenessLevel.DETAILED, fetch_fn)

        assert result is value
        fetch_fn.assert_not_called()

    @pytest.mark.asyncio
    async def test_partial_fetch_requests_missing_fields_only(self, exam_key):
        """Test that partial escalation asks for exactly the missing fields."""
        value = LazyValue(key=exam_key, level=CompletenessLevel.SUMMARY,
                          fields={"number": "64-010", "name": "Mathe", "status": ""})
        fetch_fn = AsyncMock(return_value=raw(
            exam_key, CompletenessLevel.DETAILED, grade="4,0", credits=6, semester="SoSe 24"
        ))

        result = await value.escalate(CompletenessLevel.DETAILED, fetch_fn, partial=True)

        fetch_fn.assert_awaited_once_with(CompletenessLevel.DETAILED, frozenset({"grade", "credits", "semester"}))
        assert result.level == CompletenessLevel.DETAILED
        assert result.fields["name"] == "Mathe"
        assert result.fields["grade"] == "4,0"

    @pytest.mark.asyncio
    async def test_full_refetch_without_partial_support(self, exam_key):
        """Test that the whole entity is requested when partial retrieval is unsupported."""
        value = LazyValue(key=exam_key, level=CompletenessLevel.SUMMARY,
                          fields={"number": "64-010", "name": "Mathe", "status": ""})
        fetch_fn = AsyncMock(return_value=raw(
            exam_key, CompletenessLevel.DETAILED,
            number="64-010", name="Mathe", status="bestanden", grade="4,0", credits=6, semester="SoSe 24"
        ))

        result = await value.escalate(CompletenessLevel.DETAILED, fetch_fn, partial=False)

        fetch_fn.assert_awaited_once_with(CompletenessLevel.DETAILED, None)
        assert result.fields["status"] == "bestanden"

    @pytest.mark.asyncio
    async def test_unloaded_always_fetches_whole_entity(self, exam_key):
        """Test escalation from UNLOADED."""
        fetch_fn = AsyncMock(return_value=raw(
            exam_key, CompletenessLevel.SUMMARY, number="64-010", name="Mathe", status=""
        ))

        result = await LazyValue.unloaded(exam_key).escalate(CompletenessLevel.SUMMARY, fetch_fn)

        fetch_fn.assert_awaited_once_with(CompletenessLevel.SUMMARY, None)
        assert result.level == CompletenessLevel.SUMMARY

    @pytest.mark.asyncio
    async def test_failed_fetch_leaves_value_untouched(self, exam_key):
        """Test that a failed escalation does not produce a half-written value."""
        value = LazyValue(key=exam_key, level=CompletenessLevel.SUMMARY,
                          fields={"number": "64-010", "name": "Mathe", "status": ""})
        fetch_fn = AsyncMock(side_effect=NetworkError("down"))

        with pytest.raises(NetworkError):
            await value.escalate(CompletenessLevel.FULL, fetch_fn)

        assert value.level == CompletenessLevel.SUMMARY
        assert set(value.fields) == {"number", "name", "status"}

    @pytest.mark.asyncio
    async def test_incomplete_payload_is_rejected(self, exam_key):
        """Test that a payload lacking requested fields raises ParseError."""
        value = LazyValue(key=exam_key, level=CompletenessLevel.SUMMARY,
                          fields={"number": "64-010", "name": "Mathe", "status": ""})
        fetch_fn = AsyncMock(return_value=raw(exam_key, CompletenessLevel.DETAILED, grade="4,0"))

        with pytest.raises(ParseError):
            await value.escalate(CompletenessLevel.DETAILED, fetch_fn, partial=True)

    @pytest.mark.asyncio
    async def test_level_without_new_fields_needs_no_fetch(self, value_factory):
        """Test document escalation from SUMMARY to DETAILED."""
        value = value_factory(
            EntityKind.DOCUMENT, "doc-1",
            name="Semesterbescheinigung", issued_at="2024-04-01", status="available",
        )
        fetch_fn = AsyncMock()

        result = await value.escalate(CompletenessLevel.DETAILED, fetch_fn)

        fetch_fn.assert_not_called()
        assert result.level == CompletenessLevel.DETAILED


class TestCompare:
    """Test cases for comparing values at different levels."""

    def test_known_vs_known_different(self, exam_key):
        old = LazyValue(key=exam_key, level=CompletenessLevel.DETAILED, fields={"grade": "-", "name": "Mathe"})
        new = LazyValue(key=exam_key, level=CompletenessLevel.DETAILED, fields={"grade": "4.0", "name": "Mathe"})
        assert old.compare(new) == {"grade": ("-", "4.0")}

    def test_unknown_vs_known_is_not_a_change(self, exam_key):
        """Test that a field absent on one side is never reported."""
        old = LazyValue(key=exam_key, level=CompletenessLevel.SUMMARY, fields={"name": "Mathe"})
        new = LazyValue(key=exam_key, level=CompletenessLevel.FULL, fields={"name": "Mathe", "grade": "4.0"})
        assert old.compare(new) == {}
        assert new.compare(old) == {}

    def test_compare_restricted_to_fields(self, exam_key):
        old = LazyValue(key=exam_key, level=CompletenessLevel.DETAILED, fields={"grade": "-", "name": "A"})
        new = LazyValue(key=exam_key, level=CompletenessLevel.DETAILED, fields={"grade": "1,0", "name": "B"})
        assert old.compare(new, fields=["name"]) == {"name": ("A", "B")}
