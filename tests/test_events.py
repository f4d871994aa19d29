import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from healthtimeline.errors import InvalidAmendmentTarget, NotFoundError, ValidationError
from healthtimeline.models import DataSourceKind, ProvenanceMethod, TimelineEvent
from healthtimeline.services import events
from healthtimeline.services.consent import get_or_create_default_consent_snapshot
from healthtimeline.services.events import NewTimelineEvent, TimelineFilter
from healthtimeline.services.provenance import create_provenance
from healthtimeline.services.sources import get_or_create_data_source
from sqlalchemy import func, select

BASE_TIME = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


async def _refs(db, user_id):
    source_id = await get_or_create_data_source(db, user_id, DataSourceKind.manual, "User Journal")
    consent_id = await get_or_create_default_consent_snapshot(db, user_id)
    prov_id = await create_provenance(db, source_id, ProvenanceMethod.manual_entry, {"client": "test"})
    await db.commit()
    return prov_id, consent_id


def _journal(user_id, prov_id, consent_id, *, when=BASE_TIME, text="slept badly", category="other", summary=None):
    return NewTimelineEvent(
        user_id=user_id,
        event_type="journal_entry",
        event_time=when,
        title="Journal entry",
        summary=summary if summary is not None else text,
        details={"text": text, "category": category},
        provenance_id=prov_id,
        consent_snapshot_id=consent_id,
    )


def test_append_then_get(session_maker, alice):
    async def scenario():
        async with session_maker() as db:
            prov_id, consent_id = await _refs(db, alice)
            event_id = await events.append(db, _journal(alice, prov_id, consent_id))
            await db.commit()

            ev = await events.get_by_id(db, event_id, alice)
            assert ev.event_type == "journal_entry"
            assert ev.provenance_id == prov_id
            assert ev.consent_snapshot_id == consent_id
            assert ev.details == {"text": "slept badly", "category": "other"}

    asyncio.run(scenario())


def test_append_accepts_iso_string_with_z(session_maker, alice):
    async def scenario():
        async with session_maker() as db:
            prov_id, consent_id = await _refs(db, alice)
            event_id = await events.append(db, _journal(alice, prov_id, consent_id, when="2025-03-01T09:00:00Z"))
            await db.commit()
            ev = await events.get_by_id(db, event_id, alice)
            assert ev.event_time.replace(tzinfo=None) == datetime(2025, 3, 1, 9, 0)

    asyncio.run(scenario())


@pytest.mark.parametrize("overrides, code", [
    ({"summary": "   "}, "empty_summary"),
    ({"event_time": "yesterday-ish"}, "invalid_timestamp"),
    ({"details": {"text": "x", "mood": "bad"}}, "invalid_details"),
    ({"details": {"document_artifact_id": "nope"}}, "invalid_details"),
    ({"event_type": "medical_miracle"}, "invalid_event_type"),
])
def test_append_rejects_bad_input(session_maker, alice, overrides, code):
    async def scenario():
        async with session_maker() as db:
            prov_id, consent_id = await _refs(db, alice)
            ev = _journal(alice, prov_id, consent_id)
            for key, value in overrides.items():
                setattr(ev, key, value)
            with pytest.raises(ValidationError) as info:
                await events.append(db, ev)
            assert info.value.code == code
            await db.rollback()
            count = (await db.execute(select(func.count()).select_from(TimelineEvent))).scalar_one()
            assert count == 0

    asyncio.run(scenario())


def test_append_rejects_other_users_provenance_and_consent(session_maker, alice, bob):
    async def scenario():
        async with session_maker() as db:
            a_prov, a_consent = await _refs(db, alice)
            b_prov, b_consent = await _refs(db, bob)

            with pytest.raises(ValidationError) as info:
                await events.append(db, _journal(alice, b_prov, a_consent))
            assert info.value.code == "invalid_provenance"

            with pytest.raises(ValidationError) as info:
                await events.append(db, _journal(alice, a_prov, b_consent))
            assert info.value.code == "invalid_consent"

    asyncio.run(scenario())


def test_get_by_id_hides_other_users_events(session_maker, alice, bob):
    async def scenario():
        async with session_maker() as db:
            prov_id, consent_id = await _refs(db, alice)
            event_id = await events.append(db, _journal(alice, prov_id, consent_id))
            await db.commit()

            with pytest.raises(NotFoundError):
                await events.get_by_id(db, event_id, bob)
            page = await events.list_for_user(db, bob)
            assert page.events == []

    asyncio.run(scenario())


def test_list_for_user_pages_by_time_then_id(session_maker, alice):
    async def scenario():
        async with session_maker() as db:
            prov_id, consent_id = await _refs(db, alice)
            ids = await events.append_many(db, [
                _journal(alice, prov_id, consent_id, when=BASE_TIME + timedelta(days=i))
                for i in range(5)
            ])
            await db.commit()

            first = await events.list_for_user(db, alice, limit=2)
            assert [e.id for e in first.events] == [ids[4], ids[3]]
            assert first.next_cursor

            second = await events.list_for_user(db, alice, limit=2, cursor=first.next_cursor)
            assert [e.id for e in second.events] == [ids[2], ids[1]]

            last = await events.list_for_user(db, alice, limit=2, cursor=second.next_cursor)
            assert [e.id for e in last.events] == [ids[0]]
            assert last.next_cursor is None

            oldest_first = await events.list_for_user(db, alice, order="asc", limit=10)
            assert [e.id for e in oldest_first.events] == ids

    asyncio.run(scenario())


def test_iter_for_user_walks_every_page(session_maker, alice):
    async def scenario():
        async with session_maker() as db:
            prov_id, consent_id = await _refs(db, alice)
            ids = await events.append_many(db, [
                _journal(alice, prov_id, consent_id, when=BASE_TIME + timedelta(hours=i))
                for i in range(7)
            ])
            await db.commit()
            seen = [e.id async for e in events.iter_for_user(db, alice, order="asc", page_size=3)]
            assert seen == ids
            # restartable
            again = [e.id async for e in events.iter_for_user(db, alice, order="asc", page_size=3)]
            assert again == ids

    asyncio.run(scenario())


def test_filters_and_category(session_maker, alice):
    async def scenario():
        async with session_maker() as db:
            prov_id, consent_id = await _refs(db, alice)
            sleep_id = await events.append(db, _journal(alice, prov_id, consent_id, category="sleep"))
            await events.append(db, _journal(alice, prov_id, consent_id, category="diet"))
            await db.commit()

            journal = await events.list_for_user(db, alice, filter=TimelineFilter(kind="journal"))
            assert len(journal.events) == 2
            docs = await events.list_for_user(db, alice, filter=TimelineFilter(kind="documents"))
            assert docs.events == []
            sleep = await events.list_for_user(db, alice, filter=TimelineFilter(category="sleep"))
            assert [e.id for e in sleep.events] == [sleep_id]

    asyncio.run(scenario())


def test_unknown_filter_and_bad_cursor_are_rejected(session_maker, alice):
    with pytest.raises(ValidationError):
        TimelineFilter(kind="everything")

    async def scenario():
        async with session_maker() as db:
            with pytest.raises(ValidationError) as info:
                await events.list_for_user(db, alice, cursor="%%%not-a-cursor")
            assert info.value.code == "invalid_cursor"

    asyncio.run(scenario())


def _amendment(user_id, prov_id, consent_id, target_id, target_type="journal_entry"):
    return NewTimelineEvent(
        user_id=user_id,
        event_type="event_amended",
        event_time=BASE_TIME + timedelta(days=1),
        title="Amended: Journal entry",
        summary="Updated journal entry",
        details={"amends_event_id": target_id, "amended_event_type": target_type, "title": "changed"},
        provenance_id=prov_id,
        consent_snapshot_id=consent_id,
    )


def test_append_checks_the_amended_events_type(session_maker, alice):
    async def scenario():
        async with session_maker() as db:
            prov_id, consent_id = await _refs(db, alice)
            journal_id = await events.append(db, _journal(alice, prov_id, consent_id))
            visit_id = await events.append(db, NewTimelineEvent(
                user_id=alice,
                event_type="visit_summary",
                event_time=BASE_TIME,
                title="Checkup",
                summary="Bring these",
                details={"referenced_event_ids": [journal_id]},
                provenance_id=prov_id,
                consent_snapshot_id=consent_id,
            ))
            amendment_id = await events.append(db, _amendment(alice, prov_id, consent_id, journal_id))
            await db.commit()

            for target in (visit_id, amendment_id):
                with pytest.raises(InvalidAmendmentTarget):
                    await events.append(db, _amendment(alice, prov_id, consent_id, target))

            # the declared type has to be the target's real type
            with pytest.raises(ValidationError) as info:
                await events.append(db, _amendment(alice, prov_id, consent_id, journal_id, "document_uploaded"))
            assert info.value.code == "invalid_reference"
            await db.rollback()

        async with session_maker() as db:
            amended = (await db.execute(
                select(func.count()).select_from(TimelineEvent).where(TimelineEvent.event_type == "event_amended")
            )).scalar_one()
            assert amended == 1

    asyncio.run(scenario())
