"""
Test cases for the command surface.
"""

from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock

from portal.errors import AuthFatal, InvocationTimeout, NetworkError, NotificationError, WrongCredentials
from portal.models import CompletenessLevel, EntityKey, EntityKind, Language
from storage.entity_cache import MemoryCacheStore
from monitor.models import ChangeKind, ChangeSeverity
from monitor.service import PortalContext, PortalService


def exam_row(number, name="Mathematik I", status=""):
    return number, {"number": number, "name": name, "status": status}


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def context(portal_config, fake_fetcher, notifier):
    return PortalContext.build(portal_config, fake_fetcher, cache_store=MemoryCacheStore(), notifier=notifier)


@pytest.fixture
def service(context):
    return PortalService(context)


class TestGetEntity:
    """Test cases for get_entity."""

    @pytest.mark.asyncio
    async def test_fetches_then_serves_from_cache(self, service, fake_fetcher, sample_exam_fields):
        fake_fetcher.add(EntityKind.EXAM_RESULT, "64-010", **sample_exam_fields)

        first = await service.get_entity(EntityKind.EXAM_RESULT, "64-010", level=CompletenessLevel.DETAILED)
        second = await service.get_entity(EntityKind.EXAM_RESULT, "64-010")

        assert first.fields["grade"] == "2,3"
        assert second == first
        assert len(fake_fetcher.fetch_calls) == 1

    @pytest.mark.asyncio
    async def test_explicit_language(self, service, fake_fetcher, sample_exam_fields):
        fake_fetcher.add(EntityKind.EXAM_RESULT, "64-010", language=Language.ENGLISH, **sample_exam_fields)

        value = await service.get_entity(EntityKind.EXAM_RESULT, "64-010", language=Language.ENGLISH)

        assert value.key.language == Language.ENGLISH

    @pytest.mark.asyncio
    async def test_invocation_timeout(self, service, context, fake_fetcher, sample_exam_fields):
        """Test that a command exceeding its time budget fails with InvocationTimeout."""
        fake_fetcher.add(EntityKind.EXAM_RESULT, "64-010", **sample_exam_fields)
        fake_fetcher.delay = 1
        context.config.invocation_timeout = 0.05

        with pytest.raises(InvocationTimeout):
            await service.get_entity(EntityKind.EXAM_RESULT, "64-010")


class TestRefreshSession:
    """Test cases for refresh_session."""

    @pytest.mark.asyncio
    async def test_logs_in_again(self, service, context, fake_fetcher):
        first = await service.refresh_session()
        second = await service.refresh_session()

        assert fake_fetcher.login_calls == 2
        assert first.token != second.token
        assert context.sessions.load().token == second.token

    @pytest.mark.asyncio
    async def test_refused_login(self, service, fake_fetcher):
        fake_fetcher.login_errors.append(WrongCredentials())

        with pytest.raises(AuthFatal):
            await service.refresh_session()


class TestDetectChanges:
    """Test cases for the detect_changes command."""

    @pytest.mark.asyncio
    async def test_baseline_then_changes(self, service, fake_fetcher):
        fake_fetcher.set_collection(EntityKind.EXAM_RESULT, [exam_row("64-010")])
        assert await service.detect_changes(EntityKind.EXAM_RESULT) == []

        fake_fetcher.set_collection(EntityKind.EXAM_RESULT, [exam_row("64-010", status="bestanden")])
        events = await service.detect_changes(EntityKind.EXAM_RESULT)

        assert [(e.change_kind, e.field_name, e.new_value) for e in events] == [
            (ChangeKind.FIELD_CHANGED, "status", "bestanden")
        ]

    @pytest.mark.asyncio
    async def test_collection_is_merged_into_cache(self, service, context, fake_fetcher):
        """Test that listing values become cache entries."""
        fake_fetcher.set_collection(EntityKind.EXAM_RESULT, [exam_row("64-010"), exam_row("64-011")])

        await service.detect_changes(EntityKind.EXAM_RESULT)

        key = EntityKey(kind=EntityKind.EXAM_RESULT, entity_id="64-011", language=Language.GERMAN)
        cached = context.cache.peek(key)
        assert cached.level == CompletenessLevel.SUMMARY
        assert cached.fields["number"] == "64-011"


class TestRunCycle:
    """Test cases for a full notifier cycle."""

    @pytest.mark.asyncio
    async def test_first_cycle_announces_running_period(self, service, fake_fetcher, notifier):
        now = datetime.now(timezone.utc)
        fake_fetcher.set_collection(EntityKind.REGISTRATION_PERIOD, [
            ("p1", {
                "name": "Anmeldephase Module",
                "period_type": "registration",
                "start": (now - timedelta(days=1)).isoformat(),
                "end": (now + timedelta(days=6)).isoformat(),
            }),
        ])
        fake_fetcher.set_collection(EntityKind.EXAM_RESULT, [exam_row("64-010")])

        results = await service.run_cycle()

        assert set(results) == {EntityKind.EXAM_RESULT, EntityKind.REGISTRATION_PERIOD, EntityKind.DOCUMENT}
        assert all(r.baseline_created and r.success for r in results.values())
        events = results[EntityKind.REGISTRATION_PERIOD].events
        assert [(e.change_kind, e.severity) for e in events] == [(ChangeKind.PERIOD_STARTED, ChangeSeverity.HIGH)]

        notification = notifier.send.await_args.args[0]
        assert notification.subject.startswith("Stine Notifier: The Anmeldephase Module just started")

        second = await service.run_cycle()
        assert second[EntityKind.REGISTRATION_PERIOD].events == []

    @pytest.mark.asyncio
    async def test_failed_kind_does_not_stop_cycle(self, service, fake_fetcher):
        """Test that one failing collection is reported and the others still run."""
        fake_fetcher.fail_with = [NetworkError("down"), NetworkError("still down")]

        results = await service.run_cycle([EntityKind.EXAM_RESULT, EntityKind.DOCUMENT])

        assert results[EntityKind.EXAM_RESULT].success is False
        assert "NetworkError" in results[EntityKind.EXAM_RESULT].errors[0]
        assert results[EntityKind.DOCUMENT].success is True

    @pytest.mark.asyncio
    async def test_auth_fatal_ends_cycle(self, service, fake_fetcher):
        fake_fetcher.login_errors.append(WrongCredentials())

        with pytest.raises(AuthFatal):
            await service.run_cycle()

    @pytest.mark.asyncio
    async def test_undelivered_changes_are_reported_again(self, service, context, fake_fetcher, notifier):
        """Test that a failed notification leaves baselines and periods pending."""
        now = datetime.now(timezone.utc)
        fake_fetcher.set_collection(EntityKind.EXAM_RESULT, [exam_row("64-010")])
        await service.run_cycle([EntityKind.EXAM_RESULT])

        fake_fetcher.set_collection(EntityKind.EXAM_RESULT, [exam_row("64-010", status="bestanden")])
        fake_fetcher.set_collection(EntityKind.REGISTRATION_PERIOD, [
            ("p1", {
                "name": "Anmeldephase",
                "period_type": "registration",
                "start": (now - timedelta(hours=1)).isoformat(),
                "end": (now + timedelta(days=3)).isoformat(),
            }),
        ])
        notifier.send.side_effect = RuntimeError("smtp down")

        with pytest.raises(NotificationError):
            await service.run_cycle([EntityKind.EXAM_RESULT, EntityKind.REGISTRATION_PERIOD])

        baseline = context.snapshots.load(EntityKind.EXAM_RESULT, Language.GERMAN)
        assert baseline.entities[0].get("status") == ""
        assert context.snapshots.load(EntityKind.REGISTRATION_PERIOD, Language.GERMAN) is None
        assert context.periods.announced() == set()

        notifier.send.side_effect = None
        results = await service.run_cycle([EntityKind.EXAM_RESULT, EntityKind.REGISTRATION_PERIOD])

        assert [(e.field_name, e.new_value) for e in results[EntityKind.EXAM_RESULT].events] == [
            ("status", "bestanden")
        ]
        assert [e.change_kind for e in results[EntityKind.REGISTRATION_PERIOD].events] == [
            ChangeKind.PERIOD_STARTED
        ]
        delivered = notifier.send.await_args.args[0]
        assert len(delivered.events) == 2

        third = await service.run_cycle([EntityKind.EXAM_RESULT, EntityKind.REGISTRATION_PERIOD])
        assert all(r.events == [] for r in third.values())
