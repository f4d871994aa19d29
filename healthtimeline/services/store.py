# services/store.py
"""Commit helpers shared by the write flows.

SQLAlchemy errors never leave the services as-is: unique-constraint
collisions become ``ConflictError`` (recovered by the caller with a
re-fetch) and everything else becomes ``StorageError``.
"""
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from healthtimeline.errors import ConflictError, StorageError

logger = logging.getLogger(__name__)


async def insert_unique(db: AsyncSession, obj):
    """Insert ``obj`` and commit right away.

    Used by the get-or-create paths, which run before the main write of a
    flow so a collision never discards anything else.
    """
    db.add(obj)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError(f"{type(obj).__name__} already exists") from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("insert of %s failed: %s", type(obj).__name__, type(exc).__name__)
        raise StorageError(f"could not store {type(obj).__name__}") from exc
    return obj


async def commit(db: AsyncSession, what: str) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("commit of %s failed: %s", what, type(exc).__name__)
        raise StorageError(f"could not store {what}") from exc


async def flush(db: AsyncSession, what: str) -> None:
    try:
        await db.flush()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("flush of %s failed: %s", what, type(exc).__name__)
        raise StorageError(f"could not store {what}") from exc
