# services/provenance.py
import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from healthtimeline.errors import ValidationError
from healthtimeline.models import Provenance, ProvenanceMethod
from healthtimeline.services.store import flush

logger = logging.getLogger(__name__)

# keys that would invite free text (and so health content) into provenance
FORBIDDEN_METADATA_KEYS = frozenset({"text", "notes", "summary", "title", "filename"})
METADATA_VALUE_MAX = 200
_SCALARS = (str, int, float, bool, type(None))


def validate_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Provenance metadata is a flat map of short, non-identifying scalars."""
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValidationError("provenance metadata must be a mapping", code="invalid_metadata")
    clean: Dict[str, Any] = {}
    for key, value in metadata.items():
        if not isinstance(key, str) or not key:
            raise ValidationError("provenance metadata keys must be strings", code="invalid_metadata")
        if key.lower() in FORBIDDEN_METADATA_KEYS:
            raise ValidationError(f"provenance metadata may not carry '{key}'", code="invalid_metadata")
        if not isinstance(value, _SCALARS):
            raise ValidationError(f"provenance metadata '{key}' must be a scalar", code="invalid_metadata")
        if isinstance(value, str) and len(value) > METADATA_VALUE_MAX:
            raise ValidationError(f"provenance metadata '{key}' is too long", code="invalid_metadata")
        clean[key] = value
    return clean


async def create_provenance(
    db: AsyncSession,
    data_source_id: uuid.UUID,
    method: ProvenanceMethod | str,
    metadata: Optional[Dict[str, Any]] = None,
) -> uuid.UUID:
    """Insert one provenance record and flush it. The caller commits."""
    try:
        method = ProvenanceMethod(method)
    except ValueError:
        raise ValidationError("unknown provenance method", code="invalid_method") from None
    prov = Provenance(data_source_id=data_source_id, method=method, meta=validate_metadata(metadata))
    db.add(prov)
    await flush(db, "provenance")
    logger.debug("provenance %s created (method=%s)", prov.id, method.value)
    return prov.id
