"""Blob storage collaborator.

Only called after an authorization check has passed. Any failure is surfaced
as :class:`~eventgallery.errors.DependencyFailure` so callers never confuse a
storage outage with an access decision.
"""

from __future__ import annotations

import logging
import mimetypes
import uuid
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from sqlalchemy import event
from sqlalchemy.orm import Session, SessionTransaction

from .config import settings
from .errors import DependencyFailure, ValidationError

logger = logging.getLogger("uvicorn.error")

ALLOWED_MIME_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
}
MAX_IMAGE_SIZE = 10 * 1024 * 1024
MAX_COVER_SIZE = 5 * 1024 * 1024
MAX_AVATAR_SIZE = 2 * 1024 * 1024


class BlobStore(Protocol):
    def put(self, key: str, data: bytes, content_type: str) -> str: ...

    def delete(self, keys: Iterable[str]) -> None: ...


class LocalBlobStore:
    """Write blobs below ``root`` and serve them from ``base_url``."""

    def __init__(self, root: Path, base_url: str) -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValidationError("Invalid storage key")
        return path

    def url_for(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            logger.error("Blob write failed for %s: %s", key, exc)
            raise DependencyFailure("Failed to store file") from exc
        return self.url_for(key)

    def delete(self, keys: Iterable[str]) -> None:
        for key in keys:
            path = self._path(key)
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.error("Blob delete failed for %s: %s", key, exc)
                raise DependencyFailure("Failed to delete file") from exc


_PENDING_DELETES = "pending_blob_deletes"


def delete_on_commit(session: Session, blob_store: BlobStore, keys: Iterable[str]) -> None:
    """Remove *keys* from *blob_store* once the session commits.

    Rows go first and blobs follow, so a failed transaction never leaves rows
    pointing at missing files. A blob that cannot be removed after the commit
    is logged and left behind as an orphan.
    """
    keys = [key for key in keys if key]
    if not keys:
        return
    transaction = session.get_nested_transaction() or session.get_transaction()
    if transaction is None:
        blob_store.delete(keys)
        return
    session.info.setdefault(_PENDING_DELETES, []).append((transaction, blob_store, keys))


def _within(transaction: SessionTransaction | None, ancestor: SessionTransaction) -> bool:
    while transaction is not None:
        if transaction is ancestor:
            return True
        transaction = transaction.parent
    return False


@event.listens_for(Session, "after_commit")
def _run_pending_deletes(session: Session) -> None:
    if session.get_nested_transaction() is not None:
        # Savepoint release; wait for the outer commit.
        return
    for _, blob_store, keys in session.info.pop(_PENDING_DELETES, []):
        try:
            blob_store.delete(keys)
        except DependencyFailure:
            logger.warning("Left orphaned blobs after commit: %s", ", ".join(keys))


@event.listens_for(Session, "after_soft_rollback")
def _drop_rolled_back_deletes(session: Session, previous_transaction) -> None:
    pending = session.info.get(_PENDING_DELETES)
    if pending:
        session.info[_PENDING_DELETES] = [
            entry for entry in pending if not _within(entry[0], previous_transaction)
        ]


@event.listens_for(Session, "after_transaction_end")
def _forget_pending_deletes(session: Session, transaction: SessionTransaction) -> None:
    if transaction.parent is None:
        session.info.pop(_PENDING_DELETES, None)


def validate_upload(content_type: str | None, data: bytes, *, max_size: int) -> str:
    """Check the declared MIME type and size, returning the MIME type."""
    mime_type = (content_type or "").lower()
    if mime_type not in ALLOWED_MIME_TYPES:
        raise ValidationError("Invalid file type. Allowed types: JPEG, PNG, GIF, WEBP")
    if not data:
        raise ValidationError("Image file is required")
    if len(data) > max_size:
        raise ValidationError(f"File too large. Maximum size: {max_size // (1024 * 1024)} MB")
    return mime_type


def build_key(prefix: str, mime_type: str) -> str:
    if mime_type in {"image/jpeg", "image/jpg"}:
        extension = ".jpg"
    else:
        extension = mimetypes.guess_extension(mime_type) or ".bin"
    return f"{prefix}/{uuid.uuid4()}{extension}"


def event_image_key(event_id: str, mime_type: str) -> str:
    return build_key(f"events/{event_id}/images", mime_type)


def event_cover_key(event_id: str, mime_type: str) -> str:
    return build_key(f"events/{event_id}/cover", mime_type)


def user_avatar_key(user_id: str, mime_type: str) -> str:
    return build_key(f"users/{user_id}/avatar", mime_type)


def default_store() -> LocalBlobStore:
    return LocalBlobStore(settings.blob_dir, settings.public_base_url)
