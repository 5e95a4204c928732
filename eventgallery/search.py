"""Search, per-user listings and public gallery feeds.

Everything here is a set-level read, so every query is ANDed with the
viewer's readable clause from :mod:`eventgallery.access`.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import exists, func, or_, select
from sqlalchemy.orm import Session

from . import access, crud
from .config import settings
from .errors import ValidationError
from .models import Comment, Event, Image, Like, Membership, User
from .utils import clean_text
from .visibility import ANONYMOUS, Subject

SEARCH_KINDS = ("all", "events", "images", "users")


def _like_count():
    return (
        select(func.count(Like.id))
        .where(Like.image_id == Image.id)
        .correlate(Image)
        .scalar_subquery()
    )


def _count(session: Session, model, *conditions) -> int:
    stmt = select(func.count()).select_from(model)
    for condition in conditions:
        stmt = stmt.where(condition)
    return session.scalar(stmt) or 0


def search(
    session: Session,
    subject: Subject,
    query: str | None,
    kind: str = "all",
    *,
    limit: int | None = None,
) -> dict[str, Any]:
    """Search events, images and users.

    With ``kind="all"`` each section is capped at ``search_preview_limit``;
    a single kind returns up to ``limit`` rows.
    """
    term = clean_text(query)
    if not term:
        raise ValidationError("Search query is required")
    if kind not in SEARCH_KINDS:
        raise ValidationError(f"type must be one of: {', '.join(SEARCH_KINDS)}")
    limit = limit or settings.events_per_page
    preview = settings.search_preview_limit
    pattern = f"%{term}%"
    results: dict[str, Any] = {"events": [], "images": [], "users": []}

    if kind in ("all", "events"):
        stmt = (
            select(Event)
            .where(access.readable_events_clause(subject))
            .where(crud.event_search_clause(term))
            .order_by(Event.date.desc(), Event.id.asc())
            .limit(limit if kind == "events" else preview)
        )
        results["events"] = list(session.scalars(stmt).all())

    if kind in ("all", "images"):
        stmt = (
            select(Image)
            .where(access.readable_images_clause(subject))
            .where(or_(Image.title.ilike(pattern), Image.description.ilike(pattern)))
            .order_by(Image.uploaded_at.desc(), Image.id.asc())
            .limit(limit if kind == "images" else preview)
        )
        results["images"] = list(session.scalars(stmt).all())

    if kind in ("all", "users"):
        stmt = (
            select(User)
            .where(or_(User.username.ilike(pattern), User.full_name.ilike(pattern)))
            .order_by(User.username.asc())
            .limit(limit if kind == "users" else preview)
        )
        results["users"] = list(session.scalars(stmt).all())

    results["total"] = sum(len(results[key]) for key in ("events", "images", "users"))
    return results


# -------- per-user listings --------


def user_events(
    session: Session,
    viewer: Subject,
    user_id: str,
    *,
    page: int = 1,
    per_page: int = 20,
):
    """Events *user_id* created or joined that *viewer* can read."""
    user = crud.get_user(session, user_id)
    involved = or_(
        Event.creator_id == user.id,
        exists().where(Membership.event_id == Event.id, Membership.user_id == user.id),
    )
    return crud.paginate(
        session,
        Event,
        filters=[involved, access.readable_events_clause(viewer)],
        order_by=(Event.date.desc(), Event.id.asc()),
        page=page,
        per_page=per_page,
    )


def user_images(
    session: Session,
    viewer: Subject,
    user_id: str,
    *,
    page: int = 1,
    per_page: int = 20,
):
    user = crud.get_user(session, user_id)
    return crud.paginate(
        session,
        Image,
        filters=[Image.user_id == user.id, access.readable_images_clause(viewer)],
        order_by=(Image.uploaded_at.desc(), Image.id.asc()),
        page=page,
        per_page=per_page,
    )


def user_liked_images(
    session: Session,
    viewer: Subject,
    user_id: str,
    *,
    page: int = 1,
    per_page: int = 20,
):
    user = crud.get_user(session, user_id)
    return crud.paginate(
        session,
        Image,
        filters=[
            Image.likes.any(Like.user_id == user.id),
            access.readable_images_clause(viewer),
        ],
        order_by=(Image.uploaded_at.desc(), Image.id.asc()),
        page=page,
        per_page=per_page,
    )


# -------- gallery feeds --------


def recent_images(
    session: Session, subject: Subject, *, page: int = 1, per_page: int = 20
):
    return crud.paginate(
        session,
        Image,
        filters=[access.readable_images_clause(subject)],
        order_by=(Image.uploaded_at.desc(), Image.id.asc()),
        page=page,
        per_page=per_page,
    )


def popular_images(
    session: Session, subject: Subject, *, page: int = 1, per_page: int = 20
):
    return crud.paginate(
        session,
        Image,
        filters=[access.readable_images_clause(subject)],
        order_by=(_like_count().desc(), Image.uploaded_at.desc(), Image.id.asc()),
        page=page,
        per_page=per_page,
    )


def featured_images(session: Session, subject: Subject, *, limit: int = 10) -> list[Image]:
    """The most liked readable images."""
    stmt = (
        select(Image)
        .where(access.readable_images_clause(subject))
        .order_by(_like_count().desc(), Image.uploaded_at.desc(), Image.id.asc())
        .limit(limit)
    )
    return list(session.scalars(stmt).all())


def gallery_stats(session: Session) -> dict[str, int]:
    """Site-wide totals as an anonymous visitor would see them."""
    readable_images = access.readable_images_clause(ANONYMOUS)
    return {
        "total_events": _count(session, Event, access.readable_events_clause(ANONYMOUS)),
        "total_images": _count(session, Image, readable_images),
        "total_users": _count(session, User),
        "total_likes": _count(session, Like, Like.image.has(readable_images)),
        "total_comments": _count(
            session, Comment, access.readable_comments_clause(ANONYMOUS)
        ),
    }
