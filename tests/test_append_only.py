import asyncio
from datetime import datetime, timezone

import pytest

from healthtimeline.errors import AppendOnlyViolation
from healthtimeline.models import AuditEvent, ConsentSnapshot, Provenance, TimelineEvent
from healthtimeline.services import audit, events
from healthtimeline.services.journal import create_journal_entry
from sqlalchemy import select


def _journal(session_maker, user_id):
    async def go():
        async with session_maker() as db:
            return await create_journal_entry(
                db, user_id, text="headache after lunch",
                event_time=datetime(2025, 2, 2, 13, 0, tzinfo=timezone.utc),
            )
    return asyncio.run(go())


def test_timeline_event_cannot_be_updated(session_maker, alice):
    event_id = _journal(session_maker, alice)

    async def scenario():
        async with session_maker() as db:
            ev = await events.get_by_id(db, event_id, alice)
            ev.summary = "rewritten history"
            with pytest.raises(AppendOnlyViolation):
                await db.commit()
            await db.rollback()

        async with session_maker() as db:
            ev = await events.get_by_id(db, event_id, alice)
            assert ev.summary == "headache after lunch"

    asyncio.run(scenario())


@pytest.mark.parametrize("model", [TimelineEvent, Provenance, ConsentSnapshot, AuditEvent])
def test_append_only_rows_cannot_be_deleted(session_maker, alice, model):
    _journal(session_maker, alice)

    async def scenario():
        async with session_maker() as db:
            row = (await db.execute(select(model).limit(1))).scalars().first()
            assert row is not None
            await db.delete(row)
            with pytest.raises(AppendOnlyViolation):
                await db.flush()
            await db.rollback()

        async with session_maker() as db:
            assert (await db.execute(select(model).limit(1))).scalars().first() is not None

    asyncio.run(scenario())


def test_audit_rows_are_only_appended(session_maker, alice):
    _journal(session_maker, alice)

    async def scenario():
        async with session_maker() as db:
            rows = await audit.list_recent(db, alice)
            assert [r.action for r in rows] == ["journal_created"]
            rows[0].action = "nothing_happened"
            with pytest.raises(AppendOnlyViolation):
                await db.flush()

    asyncio.run(scenario())


def test_event_reads_identically_after_later_writes(session_maker, alice):
    from healthtimeline.errors import StorageError, SyncFailed
    from healthtimeline.schemas import TimelineEventRead
    from healthtimeline.services import amendments, sources
    from healthtimeline.services.visits import create_visit_summary

    event_id = _journal(session_maker, alice)

    async def snapshot():
        async with session_maker() as db:
            ev = await events.get_by_id(db, event_id, alice)
            return TimelineEventRead.model_validate(ev).model_dump_json()

    async def broken_importer(db, user_id, source):
        raise StorageError("portal unreachable", code="portal_unreachable")

    async def scenario():
        before = await snapshot()

        async with session_maker() as db:
            for i in range(3):
                await create_journal_entry(
                    db, alice, text=f"follow-up {i}", category="pain",
                    event_time=datetime(2025, 2, 3 + i, 9, 0, tzinfo=timezone.utc),
                )
            await amendments.create_amendment(db, alice, event_id, {"text": "migraine after lunch"})
            await amendments.create_amendment(db, alice, event_id, {"title": "Migraine"}, note="renamed")
            await create_visit_summary(db, alice, "Neurology", "Recurring headaches", "visit", [event_id])

            source = await sources.register_external_source(db, alice, "portal", "Demo Portal", provider="fasten")
            source_id = source.id
            await sources.connect(db, alice, source_id)
            await sources.sync(db, alice, source_id)
            with pytest.raises(SyncFailed):
                await sources.sync(db, alice, source_id, importer=broken_importer)

        first = await snapshot()
        second = await snapshot()
        assert first == before
        assert second == before

        async with session_maker() as db:
            view = await amendments.current_view(db, event_id, alice)
            assert view.title == "Migraine"
            assert view.amendment_count == 2

    asyncio.run(scenario())
