# services/consent.py
"""Consent agreements and their immutable permission snapshots.

A snapshot is never edited: a change in permissions is a new snapshot, and
every timeline event points at the snapshot in force when it was written.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from healthtimeline.access import owned
from healthtimeline.errors import ConflictError, StorageError, ValidationError
from healthtimeline.models import ConsentAgreement, ConsentSnapshot
from healthtimeline.services.store import commit, insert_unique
from healthtimeline.settings.config import settings

logger = logging.getLogger(__name__)

DEFAULT_PERMISSIONS: Dict[str, Any] = {
    "store_health_data": True,
    "create_timeline_events": True,
}


async def _find_agreement(db: AsyncSession, user_id: uuid.UUID, scope: str) -> Optional[ConsentAgreement]:
    stmt = owned(ConsentAgreement, user_id).where(ConsentAgreement.scope == scope).limit(1)
    return (await db.execute(stmt)).scalars().first()


async def get_or_create_agreement(db: AsyncSession, user_id: uuid.UUID, scope: Optional[str] = None) -> ConsentAgreement:
    scope = scope or settings.DEFAULT_CONSENT_SCOPE
    agreement = await _find_agreement(db, user_id, scope)
    if agreement:
        return agreement
    try:
        return await insert_unique(db, ConsentAgreement(user_id=user_id, scope=scope))
    except ConflictError:
        logger.info("consent agreement for user %s created concurrently; re-fetching", user_id)
    agreement = await _find_agreement(db, user_id, scope)
    if agreement is None:
        raise StorageError("consent agreement vanished after conflict")
    return agreement


async def latest_consent_snapshot(
    db: AsyncSession, user_id: uuid.UUID, scope: Optional[str] = None
) -> Optional[ConsentSnapshot]:
    scope = scope or settings.DEFAULT_CONSENT_SCOPE
    stmt = (
        owned(ConsentSnapshot, user_id)
        .where(ConsentAgreement.scope == scope)
        .order_by(ConsentSnapshot.created_at.desc(), ConsentSnapshot.id.desc())
        .limit(1)
    )
    return (await db.execute(stmt)).scalars().first()


async def list_consent_snapshots(db: AsyncSession, user_id: uuid.UUID) -> List[ConsentSnapshot]:
    stmt = owned(ConsentSnapshot, user_id).order_by(ConsentSnapshot.created_at.desc(), ConsentSnapshot.id.desc())
    return list((await db.execute(stmt)).scalars().all())


async def create_consent_snapshot(
    db: AsyncSession,
    user_id: uuid.UUID,
    permissions: Dict[str, Any],
    scope: Optional[str] = None,
) -> uuid.UUID:
    """Record a new snapshot for the agreement of ``scope`` and commit it."""
    if not isinstance(permissions, dict) or not permissions:
        raise ValidationError("consent permissions must be a non-empty mapping", code="invalid_permissions")
    agreement = await get_or_create_agreement(db, user_id, scope)
    snap = ConsentSnapshot(consent_agreement_id=agreement.id, permissions=dict(permissions))
    db.add(snap)
    await commit(db, "consent snapshot")
    logger.info("consent snapshot %s recorded for user %s", snap.id, user_id)
    return snap.id


async def get_or_create_default_consent_snapshot(db: AsyncSession, user_id: uuid.UUID) -> uuid.UUID:
    """Reuse the latest default-scope snapshot, or record the first one.

    Two concurrent first writes may both create a snapshot; either is valid
    for the events that point at it.
    """
    snap = await latest_consent_snapshot(db, user_id)
    if snap:
        return snap.id
    return await create_consent_snapshot(db, user_id, DEFAULT_PERMISSIONS)
