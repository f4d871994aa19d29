"""Owner scoping for every query the services issue.

Each table is reachable only through ``owned()``, which attaches the row
filter for the table: a direct ``user_id`` match, or a join through the
owning parent for child tables (provenance -> data source, consent
snapshot -> consent agreement).
"""
from __future__ import annotations

import uuid

from sqlalchemy import Select, select

from .models import (
    AuditEvent,
    ConsentAgreement,
    ConsentSnapshot,
    DataSource,
    DocumentArtifact,
    Job,
    Provenance,
    TimelineEvent,
)

_DIRECT = (DataSource, ConsentAgreement, TimelineEvent, DocumentArtifact, AuditEvent, Job)


def owned(model, user_id: uuid.UUID) -> Select:
    """Return ``select(model)`` already restricted to rows owned by ``user_id``."""
    if user_id is None:
        raise ValueError("user_id is required for every query")
    if model in _DIRECT:
        return select(model).where(model.user_id == user_id)
    if model is Provenance:
        return (
            select(Provenance)
            .join(DataSource, DataSource.id == Provenance.data_source_id)
            .where(DataSource.user_id == user_id)
        )
    if model is ConsentSnapshot:
        return (
            select(ConsentSnapshot)
            .join(ConsentAgreement, ConsentAgreement.id == ConsentSnapshot.consent_agreement_id)
            .where(ConsentAgreement.user_id == user_id)
        )
    raise ValueError(f"no ownership rule for {model.__name__}")


async def fetch_owned(db, model, entity_id, user_id: uuid.UUID):
    """Load one row by id for its owner, or ``None`` (absent and foreign look the same)."""
    stmt = owned(model, user_id).where(model.id == entity_id).limit(1)
    return (await db.execute(stmt)).scalars().first()


__all__ = ["owned", "fetch_owned"]
