"""Images, comments and likes.

None of these carry visibility state of their own; every check resolves to
the owning event through :mod:`eventgallery.access`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from . import access, blobs
from .blobs import BlobStore
from .crud import paginate
from .errors import (
    ALREADY_LIKED,
    NOT_LIKED,
    Conflict,
    Forbidden,
    GalleryError,
    NotFound,
    ValidationError,
)
from .models import Comment, Image, Like, User
from .utils import clean_text, utcnow
from .visibility import Capability, Subject

logger = logging.getLogger("uvicorn.error")

IMAGE_SORT_FIELDS = {"uploaded_at", "title"}
IMAGE_DETAIL_COMMENT_LIMIT = 50
MAX_COMMENT_LENGTH = 2000
LIKE_CONSTRAINT = "uq_image_likes_image_user"


def _now() -> datetime:
    return utcnow()


def _normalize_title(raw: str | None) -> str | None:
    value = clean_text(raw)
    if value and len(value) > 255:
        raise ValidationError("title must be at most 255 characters")
    return value


def _normalize_content(raw: str | None) -> str:
    value = clean_text(raw)
    if not value or len(value) > MAX_COMMENT_LENGTH:
        raise ValidationError(
            f"content must be between 1 and {MAX_COMMENT_LENGTH} characters"
        )
    return value


# -------- images --------


def upload_image(
    session: Session,
    subject: Subject,
    event_id: str,
    *,
    data: bytes,
    content_type: str | None,
    blob_store: BlobStore,
    title: str | None = None,
    description: str | None = None,
) -> Image:
    """Store an image for an event the subject participates in."""
    event = access.require_event(session, subject, event_id, Capability.CONTRIBUTE)
    mime_type = blobs.validate_upload(content_type, data, max_size=blobs.MAX_IMAGE_SIZE)
    fields = {
        "title": _normalize_title(title),
        "description": clean_text(description),
    }
    key = blobs.event_image_key(event.id, mime_type)
    url = blob_store.put(key, data, mime_type)
    image = Image(
        event_id=event.id,
        user_id=subject.user_id,
        image_url=url,
        image_key=key,
        mime_type=mime_type,
        file_size=len(data),
        uploaded_at=_now(),
        **fields,
    )
    session.add(image)
    session.flush()
    logger.info("User %s uploaded image %s to event %s", subject.user_id, image.id, event.id)
    return image


@dataclass
class ImageDetail:
    image: Image
    comments: list[Comment]
    is_liked_by_current_user: bool


def _has_liked(session: Session, image_id: str, user_id: str | None) -> bool:
    if not user_id:
        return False
    stmt = select(Like.id).where(Like.image_id == image_id, Like.user_id == user_id)
    return session.scalars(stmt).first() is not None


def get_image(session: Session, subject: Subject, image_id: str) -> ImageDetail:
    image = access.require_image(session, subject, image_id)
    stmt = (
        select(Comment)
        .where(Comment.image_id == image.id)
        .options(selectinload(Comment.user))
        .order_by(Comment.created_at.desc(), Comment.id.asc())
        .limit(IMAGE_DETAIL_COMMENT_LIMIT)
    )
    return ImageDetail(
        image=image,
        comments=list(session.scalars(stmt).all()),
        is_liked_by_current_user=_has_liked(session, image.id, subject.user_id),
    )


def list_event_images(
    session: Session,
    subject: Subject,
    event_id: str,
    *,
    page: int = 1,
    per_page: int = 20,
    sort_by: str = "uploaded_at",
    sort_order: str = "desc",
):
    event = access.require_event(session, subject, event_id)
    column = getattr(Image, sort_by if sort_by in IMAGE_SORT_FIELDS else "uploaded_at")
    order = column.asc() if sort_order == "asc" else column.desc()
    return paginate(
        session,
        Image,
        filters=[Image.event_id == event.id],
        order_by=(order, Image.id.asc()),
        page=page,
        per_page=per_page,
    )


def update_image(
    session: Session,
    subject: Subject,
    image_id: str,
    *,
    changes: dict,
) -> Image:
    image = access.get_image(session, image_id)
    if not subject.is_identified or image.user_id != subject.user_id:
        raise Forbidden("Only the image owner can update this image")
    if "title" in changes:
        image.title = _normalize_title(changes["title"])
    if "description" in changes:
        image.description = clean_text(changes["description"])
    session.add(image)
    session.flush()
    return image


def delete_image(
    session: Session, subject: Subject, image_id: str, *, blob_store: BlobStore
) -> None:
    """Delete an image; allowed for its uploader and for the event creator."""
    image = access.get_image(session, image_id)
    allowed = subject.is_identified and subject.user_id in {
        image.user_id,
        image.event.creator_id,
    }
    if not allowed:
        raise Forbidden("You do not have permission to delete this image")
    key = image.image_key
    session.delete(image)
    session.flush()
    blobs.delete_on_commit(session, blob_store, [key])


def bulk_delete_images(
    session: Session,
    subject: Subject,
    image_ids: Iterable[str],
    *,
    blob_store: BlobStore,
) -> dict:
    deleted_count = 0
    failed_ids: list[str] = []
    for image_id in image_ids:
        try:
            with session.begin_nested():
                delete_image(session, subject, image_id, blob_store=blob_store)
        except GalleryError as exc:
            logger.info("Bulk delete skipped image %s: %s", image_id, exc.reason)
            failed_ids.append(image_id)
            continue
        deleted_count += 1
    return {
        "deleted_count": deleted_count,
        "failed_ids": failed_ids,
        "message": f"Deleted {deleted_count} images, {len(failed_ids)} failed",
    }


# -------- likes --------


def _is_like_conflict(exc: IntegrityError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return LIKE_CONSTRAINT in message or (
        "image_likes.image_id" in message and "image_likes.user_id" in message
    )


def _like_count(session: Session, image: Image) -> int:
    session.expire(image, ["likes"])
    return image.like_count


def like_image(session: Session, subject: Subject, image_id: str) -> dict:
    image = access.require_image(session, subject, image_id, Capability.ENGAGE)
    if _has_liked(session, image.id, subject.user_id):
        raise Conflict(ALREADY_LIKED)
    try:
        with session.begin_nested():
            session.add(Like(image_id=image.id, user_id=subject.user_id, liked_at=_now()))
            session.flush()
    except IntegrityError as exc:
        if _is_like_conflict(exc):
            raise Conflict(ALREADY_LIKED) from exc
        raise
    return {"liked": True, "like_count": _like_count(session, image)}


def unlike_image(session: Session, subject: Subject, image_id: str) -> dict:
    image = access.require_image(session, subject, image_id, Capability.ENGAGE)
    stmt = select(Like).where(Like.image_id == image.id, Like.user_id == subject.user_id)
    like = session.scalars(stmt).first()
    if not like:
        raise NotFound(NOT_LIKED)
    session.delete(like)
    session.flush()
    return {"liked": False, "like_count": _like_count(session, image)}


def list_image_likes(session: Session, subject: Subject, image_id: str) -> list[User]:
    image = access.require_image(session, subject, image_id)
    stmt = (
        select(Like)
        .where(Like.image_id == image.id)
        .options(selectinload(Like.user))
        .order_by(Like.liked_at.desc(), Like.id.asc())
    )
    return [like.user for like in session.scalars(stmt).all()]


# -------- comments --------


def add_comment(
    session: Session, subject: Subject, image_id: str, *, content: str
) -> Comment:
    image = access.require_image(session, subject, image_id, Capability.ENGAGE)
    now = _now()
    comment = Comment(
        image_id=image.id,
        user_id=subject.user_id,
        content=_normalize_content(content),
        created_at=now,
        updated_at=now,
    )
    session.add(comment)
    session.flush()
    return comment


def list_image_comments(
    session: Session,
    subject: Subject,
    image_id: str,
    *,
    page: int = 1,
    per_page: int = 20,
    sort_order: str = "desc",
):
    image = access.require_image(session, subject, image_id)
    order = Comment.created_at.asc() if sort_order == "asc" else Comment.created_at.desc()
    return paginate(
        session,
        Comment,
        filters=[Comment.image_id == image.id],
        order_by=(order, Comment.id.asc()),
        page=page,
        per_page=per_page,
    )


def get_comment(session: Session, subject: Subject, comment_id: str) -> Comment:
    return access.require_comment(session, subject, comment_id)


def update_comment(
    session: Session, subject: Subject, comment_id: str, *, content: str
) -> Comment:
    comment = access.get_comment(session, comment_id)
    if not subject.is_identified or comment.user_id != subject.user_id:
        raise Forbidden("Only the comment author can update this comment")
    comment.content = _normalize_content(content)
    comment.updated_at = _now()
    session.add(comment)
    session.flush()
    return comment


def delete_comment(session: Session, subject: Subject, comment_id: str) -> None:
    """Delete a comment; allowed for its author, the image uploader and the event creator."""
    comment = access.get_comment(session, comment_id)
    allowed = subject.is_identified and subject.user_id in {
        comment.user_id,
        comment.image.user_id,
        comment.image.event.creator_id,
    }
    if not allowed:
        raise Forbidden("You do not have permission to delete this comment")
    session.delete(comment)
    session.flush()
