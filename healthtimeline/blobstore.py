import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

from .utils import clean_filename

logger = logging.getLogger(__name__)


class BlobNotFound(Exception):
    pass


class BlobStore(Protocol):
    """External binary storage keyed by path."""

    def put(self, path: str, data: bytes, content_type: str) -> None: ...

    def get(self, path: str) -> bytes: ...

    def delete(self, path: str) -> None: ...


# ---- Strategy for bucketed paths ----
class UserBucketsStrategy:
    """
    Places documents under:
      <user_id>/<year>/<month>/<random_id>-<sanitized_filename>
    The first segment is always the owner, so storage-level policies can
    scope on it.
    """

    def document_path(self, user_id: uuid.UUID, original_filename: str, *, now: datetime) -> str:
        rand = uuid.uuid4().hex
        return f"{user_id}/{now.year:04d}/{now.month:02d}/{rand}-{clean_filename(original_filename)}"


class LocalBlobStore:
    """Filesystem-backed blob store rooted at ``root``."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        rel = (path or "").lstrip("/").replace("\\", "/")
        if not rel:
            raise ValueError("empty blob path")
        target = (self.root / rel).resolve()
        # Prevent directory escape: ensure under storage root
        root = self.root.resolve()
        if root not in target.parents:
            raise ValueError("blob path escapes storage root")
        return target

    def put(self, path: str, data: bytes, content_type: str) -> None:
        target = self._resolve(path)
        if target.exists():
            raise FileExistsError(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(target)

    def get(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise BlobNotFound(path)
        return target.read_bytes()

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        root = self.root.resolve()
        if not target.exists():
            return
        size = target.stat().st_size
        target.unlink()
        logger.info("blob removed (%d bytes freed)", size)
        # prune empty folders up to the storage root
        cur = target.parent
        while cur != root and root in cur.parents:
            try:
                cur.rmdir()
            except OSError:
                break
            cur = cur.parent


_default_store: Optional[LocalBlobStore] = None


def get_blob_store() -> BlobStore:
    """FastAPI dependency returning the process-wide store."""
    global _default_store
    if _default_store is None:
        from .settings.config import settings

        _default_store = LocalBlobStore(Path(settings.BLOB_ROOT))
        logger.info("blob store rooted at %s", _default_store.root)
    return _default_store


__all__ = ["BlobStore", "BlobNotFound", "LocalBlobStore", "UserBucketsStrategy", "get_blob_store"]
