"""CRUD helpers for users and events."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import access, blobs, invite_codes
from .blobs import BlobStore
from .errors import (
    AUTHENTICATION_REQUIRED,
    NO_EVENT_ACCESS,
    USER_NOT_FOUND,
    Conflict,
    Forbidden,
    NotFound,
    ValidationError,
)
from .invite_codes import InviteCodeIssuer
from .models import EVENT_CATEGORIES, Comment, Event, Image, Like, Membership, User
from .utils import clean_text, is_valid_time, new_api_token, utcnow
from .visibility import Subject, can_read, is_participant

logger = logging.getLogger("uvicorn.error")

EVENT_SORT_FIELDS = {"date", "created_at", "name"}
SORT_ORDERS = {"asc", "desc"}
EVENT_UPDATE_FIELDS = {
    "name",
    "description",
    "date",
    "time",
    "location",
    "category",
    "is_private",
    "max_participants",
}


def _now() -> datetime:
    return utcnow()


# -------- pagination --------


def build_pagination(*, page: int, per_page: int, total: int) -> dict[str, Any]:
    total_pages = max(1, (total + per_page - 1) // per_page) if total else 1
    page = max(1, min(page, total_pages)) if total else 1
    return {
        "page": page,
        "per_page": per_page,
        "total": total,
        "total_pages": total_pages,
        "has_prev": page > 1,
        "has_next": page < total_pages and total > 0,
        "prev_page": page - 1 if page > 1 else None,
        "next_page": page + 1 if page < total_pages and total > 0 else None,
    }


def paginate(
    session: Session,
    model,
    *,
    filters: Iterable | None,
    order_by,
    page: int,
    per_page: int,
):
    """Return ``(rows, pagination)`` for *model* restricted by *filters*."""
    filters = list(filters or [])
    count_stmt = select(func.count()).select_from(model)
    for condition in filters:
        count_stmt = count_stmt.where(condition)
    total = session.scalar(count_stmt) or 0
    pagination = build_pagination(page=page, per_page=per_page, total=total)
    offset = (pagination["page"] - 1) * per_page if total else 0

    stmt = select(model)
    if isinstance(order_by, (list, tuple)):
        stmt = stmt.order_by(*order_by)
    else:
        stmt = stmt.order_by(order_by)
    for condition in filters:
        stmt = stmt.where(condition)
    stmt = stmt.offset(offset).limit(per_page)
    return session.scalars(stmt).all(), pagination


# -------- users --------


def _normalize_username(raw: str | None) -> str:
    username = (raw or "").strip().lower()
    if not username or len(username) > 64:
        raise ValidationError("Username must be between 1 and 64 characters")
    return username


def create_user(
    session: Session, *, username: str, full_name: str | None = None
) -> User:
    user = User(
        username=_normalize_username(username),
        full_name=clean_text(full_name),
        api_token=new_api_token(),
    )
    try:
        with session.begin_nested():
            session.add(user)
            session.flush()
    except IntegrityError as exc:
        raise Conflict("Username already taken") from exc
    return user


def get_user(session: Session, user_id: str) -> User:
    access.ensure_id(user_id, "user")
    user = session.get(User, user_id)
    if not user:
        raise NotFound(USER_NOT_FOUND)
    return user


def get_user_by_username(session: Session, username: str) -> User:
    stmt = select(User).where(User.username == (username or "").strip().lower())
    user = session.scalars(stmt).first()
    if not user:
        raise NotFound(USER_NOT_FOUND)
    return user


def get_user_by_token(session: Session, token: str | None) -> User | None:
    if not token:
        return None
    stmt = select(User).where(User.api_token == token)
    return session.scalars(stmt).first()


def rotate_user_token(session: Session, user: User) -> str:
    user.api_token = new_api_token()
    user.updated_at = _now()
    session.add(user)
    session.flush()
    return user.api_token


def update_user_avatar(
    session: Session,
    subject: Subject,
    user_id: str,
    *,
    data: bytes,
    content_type: str | None,
    blob_store: BlobStore,
) -> User:
    user = get_user(session, user_id)
    if subject.user_id != user.id:
        raise Forbidden("You can only update your own profile")
    mime_type = blobs.validate_upload(
        content_type, data, max_size=blobs.MAX_AVATAR_SIZE
    )
    key = blobs.user_avatar_key(user.id, mime_type)
    url = blob_store.put(key, data, mime_type)
    old_key = user.avatar_key
    user.avatar_url = url
    user.avatar_key = key
    session.add(user)
    session.flush()
    blobs.delete_on_commit(session, blob_store, [old_key])
    return user


def _require_self(session: Session, subject: Subject, user_id: str, message: str) -> User:
    user = get_user(session, user_id)
    if not subject.is_identified or subject.user_id != user.id:
        raise Forbidden(message)
    return user


def update_user(
    session: Session, subject: Subject, user_id: str, *, full_name: str | None
) -> User:
    user = _require_self(session, subject, user_id, "You can only update your own profile")
    value = clean_text(full_name)
    if value and len(value) > 128:
        raise ValidationError("full_name must be at most 128 characters")
    user.full_name = value
    user.updated_at = _now()
    session.add(user)
    session.flush()
    return user


def delete_user(
    session: Session, subject: Subject, user_id: str, *, blob_store: BlobStore
) -> None:
    """Delete an account together with its events, memberships and uploads.

    The database cascade removes the rows. The blobs they referenced (avatar,
    uploads, and the covers and images of events the user created) are
    removed once the deletion commits.
    """
    user = _require_self(session, subject, user_id, "You can only delete your own account")
    owned_events = select(Event.id).where(Event.creator_id == user.id)
    keys = [user.avatar_key]
    keys.extend(
        session.scalars(select(Event.cover_image_key).where(Event.creator_id == user.id))
    )
    keys.extend(
        session.scalars(
            select(Image.image_key).where(
                or_(Image.user_id == user.id, Image.event_id.in_(owned_events))
            )
        )
    )
    session.delete(user)
    session.flush()
    # Rows removed by the cascade may still sit in the identity map.
    session.expire_all()
    blobs.delete_on_commit(session, blob_store, keys)
    logger.info("Deleted user %s", user_id)


def user_statistics(session: Session, user_id: str) -> dict[str, Any]:
    user = get_user(session, user_id)

    def _count(model, condition) -> int:
        return session.scalar(select(func.count()).select_from(model).where(condition)) or 0

    return {
        "user_id": user.id,
        "username": user.username,
        "events_created": _count(Event, Event.creator_id == user.id),
        "events_joined": _count(Membership, Membership.user_id == user.id),
        "images_uploaded": _count(Image, Image.user_id == user.id),
        "images_liked": _count(Like, Like.user_id == user.id),
    }


# -------- events --------


def _require_identified(subject: Subject) -> str:
    if not subject.is_identified:
        raise Forbidden(AUTHENTICATION_REQUIRED)
    return subject.user_id


def _normalize_max_participants(raw: Any) -> int | None:
    if raw is None:
        return None
    if isinstance(raw, str) and not raw.strip():
        return None
    if isinstance(raw, bool):
        raise ValidationError("max_participants must be a positive integer")
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError("max_participants must be a positive integer") from exc
    if value < 1:
        raise ValidationError("max_participants must be a positive integer")
    return value


def _normalize_category(raw: str | None) -> str:
    category = (raw or "other").strip().lower()
    if category not in EVENT_CATEGORIES:
        raise ValidationError("Invalid category")
    return category


def _normalize_required_text(raw: str | None, field: str, *, max_length: int) -> str:
    value = clean_text(raw)
    if not value or len(value) > max_length:
        raise ValidationError(f"{field} must be between 1 and {max_length} characters")
    return value


def _normalize_description(raw: str | None) -> str | None:
    value = clean_text(raw)
    if value and len(value) > 5000:
        raise ValidationError("description must be at most 5000 characters")
    return value


def _normalize_time(raw: str | None) -> str | None:
    value = clean_text(raw)
    if value is not None and not is_valid_time(value):
        raise ValidationError("time must be in HH:MM format")
    return value


def _normalize_date(raw: date | datetime | str | None) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat((raw or "").strip()[:10])
    except ValueError as exc:
        raise ValidationError("date must be an ISO 8601 date") from exc


def create_event(
    session: Session,
    creator: Subject,
    *,
    name: str,
    date: date | datetime | str,
    location: str,
    description: str | None = None,
    time: str | None = None,
    category: str | None = "other",
    is_private: bool = False,
    max_participants: int | None = None,
    issuer: InviteCodeIssuer | None = None,
) -> Event:
    """Create an event with a unique invite code and its creator's membership.

    The event row and the creator's membership row are flushed in the same
    savepoint, so either both exist or neither does.
    """
    creator_id = _require_identified(creator)
    if not session.get(User, creator_id):
        raise NotFound(USER_NOT_FOUND)
    fields = {
        "name": _normalize_required_text(name, "name", max_length=255),
        "description": _normalize_description(description),
        "date": _normalize_date(date),
        "time": _normalize_time(time),
        "location": _normalize_required_text(location, "location", max_length=255),
        "category": _normalize_category(category),
        "is_private": bool(is_private),
        "max_participants": _normalize_max_participants(max_participants),
    }

    def reserve(code: str) -> Event:
        now = _now()
        event = Event(
            creator_id=creator_id,
            invite_code=code,
            created_at=now,
            updated_at=now,
            **fields,
        )
        session.add(event)
        session.flush()
        session.add(Membership(event_id=event.id, user_id=creator_id, joined_at=now))
        session.flush()
        return event

    event = (issuer or invite_codes.issuer).issue_unique(session, reserve)
    session.expire(event, ["memberships"])
    logger.info(
        "Created %s event %s for user %s",
        "private" if event.is_private else "public",
        event.id,
        creator_id,
    )
    return event


def _require_creator(event: Event, subject: Subject, message: str) -> None:
    if not subject.is_identified or event.creator_id != subject.user_id:
        raise Forbidden(message)


def update_event(
    session: Session, subject: Subject, event_id: str, changes: dict[str, Any]
) -> Event:
    """Apply *changes* (a partial field mapping) to an event its creator owns."""
    event = access.get_event(session, event_id)
    _require_creator(event, subject, "Only the event creator can update this event")
    unknown = set(changes) - EVENT_UPDATE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

    if "name" in changes:
        event.name = _normalize_required_text(changes["name"], "name", max_length=255)
    if "description" in changes:
        event.description = _normalize_description(changes["description"])
    if "date" in changes:
        event.date = _normalize_date(changes["date"])
    if "time" in changes:
        event.time = _normalize_time(changes["time"])
    if "location" in changes:
        event.location = _normalize_required_text(
            changes["location"], "location", max_length=255
        )
    if "category" in changes:
        event.category = _normalize_category(changes["category"])
    if "is_private" in changes:
        if not isinstance(changes["is_private"], bool):
            raise ValidationError("is_private must be true or false")
        event.is_private = changes["is_private"]
    if "max_participants" in changes:
        # Lowering the cap below the current count evicts no one.
        event.max_participants = _normalize_max_participants(
            changes["max_participants"]
        )
    event.updated_at = _now()
    session.add(event)
    session.flush()
    return event


def _event_blob_keys(event: Event) -> list[str]:
    keys = [event.cover_image_key] if event.cover_image_key else []
    keys.extend(image.image_key for image in event.images)
    return keys


def delete_event(
    session: Session, subject: Subject, event_id: str, *, blob_store: BlobStore
) -> None:
    """Delete an event and (by cascade) everything it owns; blobs go on commit."""
    event = access.get_event(session, event_id)
    _require_creator(event, subject, "Only the event creator can delete this event")
    keys = _event_blob_keys(event)
    session.delete(event)
    session.flush()
    blobs.delete_on_commit(session, blob_store, keys)
    logger.info("Deleted event %s", event_id)


def set_event_cover(
    session: Session,
    subject: Subject,
    event_id: str,
    *,
    data: bytes,
    content_type: str | None,
    blob_store: BlobStore,
) -> Event:
    event = access.get_event(session, event_id)
    _require_creator(event, subject, "Only the event creator can update this event")
    mime_type = blobs.validate_upload(content_type, data, max_size=blobs.MAX_COVER_SIZE)
    key = blobs.event_cover_key(event.id, mime_type)
    url = blob_store.put(key, data, mime_type)
    old_key = event.cover_image_key
    event.cover_image_url = url
    event.cover_image_key = key
    event.updated_at = _now()
    session.add(event)
    session.flush()
    blobs.delete_on_commit(session, blob_store, [old_key])
    return event


@dataclass
class EventFilters:
    category: str | None = None
    search: str | None = None
    is_private: bool | None = None
    start_date: date | None = None
    end_date: date | None = None
    created_by: str | None = None
    sort_by: str = "date"
    sort_order: str = "desc"


def _event_order_by(filters: EventFilters):
    sort_by = filters.sort_by if filters.sort_by in EVENT_SORT_FIELDS else "date"
    column = getattr(Event, sort_by)
    if filters.sort_order == "asc":
        return (column.asc(), Event.id.asc())
    return (column.desc(), Event.id.asc())


def event_search_clause(query: str | None):
    term = clean_text(query)
    if not term:
        return None
    pattern = f"%{term}%"
    return or_(
        Event.name.ilike(pattern),
        Event.description.ilike(pattern),
        Event.location.ilike(pattern),
    )


def list_events(
    session: Session,
    subject: Subject,
    filters: EventFilters | None = None,
    *,
    page: int = 1,
    per_page: int = 20,
):
    """Return readable events matching *filters*, one page at a time."""
    filters = filters or EventFilters()
    if filters.sort_order not in SORT_ORDERS:
        raise ValidationError("sort_order must be 'asc' or 'desc'")
    conditions = [access.readable_events_clause(subject)]
    if filters.category:
        conditions.append(Event.category == _normalize_category(filters.category))
    if filters.is_private is not None:
        conditions.append(Event.is_private.is_(bool(filters.is_private)))
    search = event_search_clause(filters.search)
    if search is not None:
        conditions.append(search)
    if filters.start_date:
        conditions.append(Event.date >= filters.start_date)
    if filters.end_date:
        conditions.append(Event.date <= filters.end_date)
    if filters.created_by:
        access.ensure_id(filters.created_by, "user")
        conditions.append(Event.creator_id == filters.created_by)
    return paginate(
        session,
        Event,
        filters=conditions,
        order_by=_event_order_by(filters),
        page=page,
        per_page=per_page,
    )


@dataclass
class EventDetail:
    event: Event
    is_participant: bool


def get_event_detail(session: Session, subject: Subject, event_id: str) -> EventDetail:
    event = access.get_event(session, event_id)
    snapshot = access.snapshot_for(session, event, subject)
    if not can_read(subject, snapshot):
        raise Forbidden(NO_EVENT_ACCESS)
    return EventDetail(event=event, is_participant=is_participant(subject, snapshot))


def event_statistics(session: Session, subject: Subject, event_id: str) -> dict[str, int]:
    event = access.require_event(session, subject, event_id)
    comment_count = (
        session.scalar(
            select(func.count())
            .select_from(Comment)
            .join(Image, Comment.image_id == Image.id)
            .where(Image.event_id == event.id)
        )
        or 0
    )
    like_count = (
        session.scalar(
            select(func.count())
            .select_from(Like)
            .join(Image, Like.image_id == Image.id)
            .where(Image.event_id == event.id)
        )
        or 0
    )
    image_count = (
        session.scalar(
            select(func.count()).select_from(Image).where(Image.event_id == event.id)
        )
        or 0
    )
    return {
        "participant_count": event.participant_count,
        "image_count": image_count,
        "total_likes": like_count,
        "total_comments": comment_count,
    }
