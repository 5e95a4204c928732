"""Event membership: join, join by invite code, leave and member listings.

Membership rows are unique per ``(event_id, user_id)``. Joins are guarded by
that constraint rather than by a prior lookup; the lookup below only decides
which error wins when a request is both a duplicate and over capacity.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from . import access, invite_codes
from .config import settings
from .errors import (
    ALREADY_MEMBER,
    AUTHENTICATION_REQUIRED,
    CREATOR_CANNOT_LEAVE,
    EVENT_FULL,
    EVENT_NOT_FOUND,
    INVALID_INVITE_CODE,
    INVALID_INVITE_CODE_FORMAT,
    NOT_A_MEMBER,
    USER_NOT_FOUND,
    CapacityExceeded,
    Conflict,
    Forbidden,
    NotFound,
    ValidationError,
)
from .models import Event, Membership, User
from .utils import utcnow
from .visibility import Subject

logger = logging.getLogger("uvicorn.error")

MEMBERSHIP_CONSTRAINT = "uq_memberships_event_user"


@dataclass(frozen=True)
class InviteCodeCheck:
    valid: bool
    can_join: bool = False
    reason: str | None = None
    event: Event | None = None


def _require_identified(subject: Subject) -> str:
    if not subject.is_identified:
        raise Forbidden(AUTHENTICATION_REQUIRED)
    return subject.user_id


def _is_membership_conflict(exc: IntegrityError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return MEMBERSHIP_CONSTRAINT in message or (
        "memberships.event_id" in message and "memberships.user_id" in message
    )


def _load_event(session: Session, event_id: str, *, lock: bool) -> Event:
    access.ensure_id(event_id, "event")
    stmt = select(Event).where(Event.id == event_id)
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    event = session.scalars(stmt).first()
    if not event:
        raise NotFound(EVENT_NOT_FOUND)
    return event


def participant_count(session: Session, event_id: str) -> int:
    stmt = (
        select(func.count())
        .select_from(Membership)
        .where(Membership.event_id == event_id)
    )
    return session.scalar(stmt) or 0


def is_full(session: Session, event: Event) -> bool:
    if event.max_participants is None:
        return False
    return participant_count(session, event.id) >= event.max_participants


def is_member(session: Session, event_id: str, user_id: str) -> bool:
    """Return ``True`` for the creator or for a user with a membership row."""
    event = session.get(Event, event_id)
    if not event:
        return False
    if event.creator_id == user_id:
        return True
    return access.is_member_row(session, event_id, user_id)


def add_membership(session: Session, event: Event, user_id: str) -> Membership:
    """Insert a membership row, mapping a duplicate to :class:`Conflict`."""
    membership = Membership(event_id=event.id, user_id=user_id, joined_at=utcnow())
    try:
        with session.begin_nested():
            session.add(membership)
            session.flush()
    except IntegrityError as exc:
        if _is_membership_conflict(exc):
            raise Conflict(ALREADY_MEMBER) from exc
        raise
    session.expire(event, ["memberships"])
    return membership


def join(
    session: Session,
    event_id: str,
    subject: Subject,
    *,
    exact_capacity: bool | None = None,
) -> Event:
    """Make *subject* a member of the event and return the refreshed event."""
    user_id = _require_identified(subject)
    exact = settings.exact_capacity if exact_capacity is None else exact_capacity
    event = _load_event(session, event_id, lock=exact)
    if not session.get(User, user_id):
        raise NotFound(USER_NOT_FOUND)

    if access.is_member_row(session, event.id, user_id):
        raise Conflict(ALREADY_MEMBER)

    if is_full(session, event):
        logger.info(
            "Rejected join for user %s: event %s is at capacity (%s)",
            user_id,
            event.id,
            event.max_participants,
        )
        raise CapacityExceeded(EVENT_FULL)

    add_membership(session, event, user_id)
    logger.info(
        "User %s joined event %s (%d participants)",
        user_id,
        event.id,
        event.participant_count,
    )
    return event


def _resolve_invite_code(session: Session, invite_code: str) -> Event | None:
    if not invite_codes.is_well_formed(invite_code):
        raise ValidationError(INVALID_INVITE_CODE_FORMAT)
    stmt = select(Event).where(Event.invite_code == invite_code)
    return session.scalars(stmt).first()


def join_by_code(session: Session, invite_code: str, subject: Subject) -> Event:
    _require_identified(subject)
    event = _resolve_invite_code(session, invite_code)
    if not event:
        raise NotFound(INVALID_INVITE_CODE)
    return join(session, event.id, subject)


def leave(session: Session, event_id: str, subject: Subject) -> None:
    user_id = _require_identified(subject)
    event = _load_event(session, event_id, lock=False)
    if event.creator_id == user_id:
        raise Forbidden(CREATOR_CANNOT_LEAVE)

    stmt = select(Membership).where(
        Membership.event_id == event.id, Membership.user_id == user_id
    )
    membership = session.scalars(stmt).first()
    if not membership:
        raise NotFound(NOT_A_MEMBER)

    session.delete(membership)
    session.flush()
    session.expire(event, ["memberships"])
    logger.info("User %s left event %s", user_id, event.id)


def list_members(
    session: Session, event_id: str, requester: Subject
) -> list[Membership]:
    """Return memberships oldest first; the requester must be able to read."""
    event = access.require_event(session, requester, event_id)
    stmt = (
        select(Membership)
        .where(Membership.event_id == event.id)
        .options(selectinload(Membership.user))
        .order_by(Membership.joined_at.asc(), Membership.user_id.asc())
    )
    return list(session.scalars(stmt).all())


def validate_invite_code(session: Session, invite_code: str) -> InviteCodeCheck:
    event = _resolve_invite_code(session, invite_code)
    if not event:
        return InviteCodeCheck(valid=False, reason=INVALID_INVITE_CODE)
    if is_full(session, event):
        return InviteCodeCheck(
            valid=True, can_join=False, reason="Event is full", event=event
        )
    return InviteCodeCheck(valid=True, can_join=True, event=event)
