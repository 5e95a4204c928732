"""Apply the visibility predicates to single fetches and to SQL queries.

Single-object checks load the resource, resolve its owning event, build an
:class:`~eventgallery.visibility.EventSnapshot` and ask the predicate. Set-level
filters render the same named grants as SQLAlchemy clauses. For any subject
and event, ``can_read`` on the snapshot and membership in a query filtered by
``readable_events_clause`` give the same answer.
"""

from __future__ import annotations

from typing import Callable

from sqlalchemy import exists, false, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from .errors import (
    AUTHENTICATION_REQUIRED,
    COMMENT_NOT_FOUND,
    EVENT_NOT_FOUND,
    IMAGE_NOT_FOUND,
    MUST_BE_PARTICIPANT,
    NO_EVENT_ACCESS,
    NO_IMAGE_ACCESS,
    Forbidden,
    NotFound,
    ValidationError,
)
from .models import Comment, Event, Image, Membership
from .utils import is_valid_id
from .visibility import (
    CONTRIBUTE_GRANTS,
    READ_GRANTS,
    Capability,
    EventSnapshot,
    Subject,
    allows,
)


def _public_clause(subject: Subject) -> ColumnElement | None:
    return Event.is_private.is_(False)


def _creator_clause(subject: Subject) -> ColumnElement | None:
    if not subject.is_identified:
        return None
    return Event.creator_id == subject.user_id


def _member_clause(subject: Subject) -> ColumnElement | None:
    if not subject.is_identified:
        return None
    return exists().where(
        Membership.event_id == Event.id,
        Membership.user_id == subject.user_id,
    )


GRANT_CLAUSES: dict[str, Callable[[Subject], ColumnElement | None]] = {
    "public": _public_clause,
    "creator": _creator_clause,
    "member": _member_clause,
}


def _grants_clause(grants: tuple[str, ...], subject: Subject) -> ColumnElement:
    clauses = []
    for name in grants:
        clause = GRANT_CLAUSES[name](subject)
        if clause is not None:
            clauses.append(clause)
    if not clauses:
        return false()
    return or_(*clauses)


def readable_events_clause(subject: Subject) -> ColumnElement:
    """``WHERE`` clause on :class:`Event` matching :func:`visibility.can_read`."""
    return _grants_clause(READ_GRANTS, subject)


def contributable_events_clause(subject: Subject) -> ColumnElement:
    return _grants_clause(CONTRIBUTE_GRANTS, subject)


def readable_images_clause(subject: Subject) -> ColumnElement:
    """``WHERE`` clause on :class:`Image` through its owning event."""
    return Image.event.has(readable_events_clause(subject))


def readable_comments_clause(subject: Subject) -> ColumnElement:
    return Comment.image.has(readable_images_clause(subject))


def is_member_row(session: Session, event_id: str, user_id: str) -> bool:
    stmt = select(
        exists().where(Membership.event_id == event_id, Membership.user_id == user_id)
    )
    return bool(session.scalar(stmt))


def snapshot_for(session: Session, event: Event, subject: Subject) -> EventSnapshot:
    is_member = False
    if subject.is_identified:
        is_member = is_member_row(session, event.id, subject.user_id)
    return EventSnapshot(
        creator_id=event.creator_id,
        is_private=bool(event.is_private),
        is_member=is_member,
    )


def check(
    session: Session, subject: Subject, event: Event, capability: Capability
) -> bool:
    return allows(capability, subject, snapshot_for(session, event, subject))


def can_read(session: Session, subject: Subject, event: Event) -> bool:
    return check(session, subject, event, Capability.READ)


def can_read_image(session: Session, subject: Subject, image: Image) -> bool:
    return can_read(session, subject, image.event)


def can_engage(session: Session, subject: Subject, event: Event) -> bool:
    return check(session, subject, event, Capability.ENGAGE)


def can_contribute(session: Session, subject: Subject, event: Event) -> bool:
    return check(session, subject, event, Capability.CONTRIBUTE)


def _denied_reason(capability: Capability, subject: Subject, default: str) -> str:
    if capability is not Capability.READ and not subject.is_identified:
        return AUTHENTICATION_REQUIRED
    if capability is Capability.CONTRIBUTE:
        return MUST_BE_PARTICIPANT
    return default


def require(
    session: Session,
    subject: Subject,
    event: Event,
    capability: Capability = Capability.READ,
    *,
    denied: str = NO_EVENT_ACCESS,
) -> None:
    """Raise :class:`Forbidden` unless *subject* has *capability* on *event*."""
    if not check(session, subject, event, capability):
        raise Forbidden(_denied_reason(capability, subject, denied))


def ensure_id(value: str | None, label: str) -> str:
    if not is_valid_id(value):
        raise ValidationError(f"Invalid {label} id")
    return value


def get_event(session: Session, event_id: str) -> Event:
    ensure_id(event_id, "event")
    event = session.get(Event, event_id)
    if not event:
        raise NotFound(EVENT_NOT_FOUND)
    return event


def get_image(session: Session, image_id: str) -> Image:
    ensure_id(image_id, "image")
    image = session.get(Image, image_id)
    if not image:
        raise NotFound(IMAGE_NOT_FOUND)
    return image


def get_comment(session: Session, comment_id: str) -> Comment:
    ensure_id(comment_id, "comment")
    comment = session.get(Comment, comment_id)
    if not comment:
        raise NotFound(COMMENT_NOT_FOUND)
    return comment


def require_event(
    session: Session,
    subject: Subject,
    event_id: str,
    capability: Capability = Capability.READ,
) -> Event:
    event = get_event(session, event_id)
    require(session, subject, event, capability)
    return event


def require_image(
    session: Session,
    subject: Subject,
    image_id: str,
    capability: Capability = Capability.READ,
) -> Image:
    image = get_image(session, image_id)
    require(session, subject, image.event, capability, denied=NO_IMAGE_ACCESS)
    return image


def require_comment(
    session: Session,
    subject: Subject,
    comment_id: str,
    capability: Capability = Capability.READ,
) -> Comment:
    comment = get_comment(session, comment_id)
    require(session, subject, comment.image.event, capability, denied=NO_IMAGE_ACCESS)
    return comment
