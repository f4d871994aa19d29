# services/external_import.py
"""Ingest a pre-formed batch of external health records as timeline events.

The batch comes from outside the core (a portal sync, or the fixed demo
set below). Every record in one batch shares a single provenance and
consent snapshot.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from healthtimeline.models import DataSource, EventType, ProvenanceMethod
from healthtimeline.services import audit
from healthtimeline.services.consent import create_consent_snapshot
from healthtimeline.services.events import NewTimelineEvent, append_many
from healthtimeline.services.provenance import create_provenance
from healthtimeline.services.store import commit
from healthtimeline.settings.config import settings
from healthtimeline.utils import utcnow

logger = logging.getLogger(__name__)

IMPORT_SOURCE = "fasten"


@dataclass
class ExternalRecord:
    category: str
    title: str
    summary: str
    provider_name: str
    occurred_at: datetime


def demo_batch(now: Optional[datetime] = None) -> List[ExternalRecord]:
    """The curated demo records a portal sync hands over."""
    now = now or utcnow()

    def ago(days: int) -> datetime:
        return now - timedelta(days=days)

    return [
        ExternalRecord(
            category="encounter",
            title="Annual Physical Examination",
            summary="Routine annual physical with Dr. Smith at City Medical Center. General health assessment completed.",
            provider_name="City Medical Center",
            occurred_at=ago(30),
        ),
        ExternalRecord(
            category="lab_results",
            title="Complete Blood Count (CBC)",
            summary="Standard blood panel completed. Results within normal ranges.",
            provider_name="LabCorp",
            occurred_at=ago(28),
        ),
        ExternalRecord(
            category="lab_results",
            title="Lipid Panel",
            summary="Cholesterol and triglyceride levels measured. Reviewed by primary care physician.",
            provider_name="LabCorp",
            occurred_at=ago(28),
        ),
        ExternalRecord(
            category="medication",
            title="Medication Prescription - Lisinopril",
            summary="Prescription for blood pressure management. 10mg daily dosage.",
            provider_name="City Medical Center",
            occurred_at=ago(25),
        ),
        ExternalRecord(
            category="encounter",
            title="Follow-up Visit",
            summary="Follow-up consultation to review lab results and adjust treatment plan.",
            provider_name="City Medical Center",
            occurred_at=ago(14),
        ),
        ExternalRecord(
            category="document_reference",
            title="Imaging Report - Chest X-Ray",
            summary="Chest X-ray performed for routine screening. No abnormalities detected.",
            provider_name="City Medical Imaging",
            occurred_at=ago(7),
        ),
    ]


async def import_external_batch(
    db: AsyncSession,
    user_id: uuid.UUID,
    source: DataSource,
    records: Iterable[ExternalRecord],
    *,
    is_demo: bool = True,
) -> List[uuid.UUID]:
    """Append one ``external_event`` per record and commit them together."""
    records = list(records)
    now = utcnow()
    consent_id = await create_consent_snapshot(db, user_id, {
        "external_import": True,
        "source": IMPORT_SOURCE,
        "authorized_at": now.isoformat(),
    }, scope=settings.IMPORT_CONSENT_SCOPE)
    try:
        prov_id = await create_provenance(db, source.id, ProvenanceMethod.portal_import, {
            "source": IMPORT_SOURCE,
            "sync_type": "demo" if is_demo else "portal",
            "synced_at": now.isoformat(),
        })
        ids = await append_many(db, [
            NewTimelineEvent(
                user_id=user_id,
                event_type=EventType.external_event,
                event_time=rec.occurred_at,
                title=rec.title,
                summary=rec.summary,
                provenance_id=prov_id,
                consent_snapshot_id=consent_id,
                details={
                    "source": IMPORT_SOURCE,
                    "resource_category": rec.category,
                    "provider_name": rec.provider_name,
                    "is_demo": is_demo,
                },
            )
            for rec in records
        ])
    except Exception:
        await db.rollback()
        raise
    await commit(db, "external events")
    logger.info("imported %d external events for source %s", len(ids), source.id)
    await audit.record(db, user_id, "external_events_imported", "data_source", source.id)
    return ids
