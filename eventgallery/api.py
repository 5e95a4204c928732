"""FastAPI application for EventGallery."""

from __future__ import annotations

import datetime as dt
import logging
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
import tomllib

from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
)
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from . import crud, media, membership, search
from .blobs import BlobStore, default_store
from .config import settings
from .database import SessionLocal
from .errors import GalleryError
from .models import Comment, Event, Image, Membership, User
from .storage import init_db
from .utils import isoformat_or_none
from .visibility import ANONYMOUS, Subject

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")

EVENTS_PER_PAGE = settings.events_per_page
IMAGES_PER_PAGE = settings.images_per_page
COMMENTS_PER_PAGE = settings.comments_per_page
MAX_PER_PAGE = settings.max_per_page


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("eventgallery")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    yield


app = FastAPI(title="EventGallery", version=APP_VERSION, lifespan=lifespan)
app.mount(
    "/blobs",
    StaticFiles(directory=str(settings.blob_dir), check_dir=False),
    name="blobs",
)

blob_store: BlobStore = default_store()


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_blob_store() -> BlobStore:
    return blob_store


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def get_subject(request: Request, db: Session = Depends(get_db)) -> Subject:
    """Resolve the bearer token to a subject; no token means anonymous."""
    token = _get_bearer_token(request)
    if token is None:
        return ANONYMOUS
    user = crud.get_user_by_token(db, token)
    if not user:
        raise HTTPException(
            status_code=401,
            detail="Invalid API token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return Subject.of(user.id)


def require_subject(subject: Subject = Depends(get_subject)) -> Subject:
    if not subject.is_identified:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return subject


# -------- error handlers --------


@app.exception_handler(GalleryError)
async def gallery_error_handler(request: Request, exc: GalleryError):
    if exc.status_code >= 500:
        logger.error(
            "%s on %s %s: %s", exc.error, request.method, request.url.path, exc.reason
        )
    return JSONResponse(exc.as_dict(), status_code=exc.status_code)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please wait a few seconds and try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    return JSONResponse({"detail": detail}, status_code=status)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": jsonable_encoder(exc.errors())}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


# -------- payloads --------


class EventCreatePayload(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(None, max_length=5000)
    date: dt.date
    time: str | None = Field(None, description="HH:MM, 24-hour clock")
    location: str = Field(..., min_length=1, max_length=255)
    category: str = "other"
    is_private: bool = False
    max_participants: int | None = Field(None, ge=1)


class EventUpdatePayload(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = Field(None, max_length=5000)
    date: dt.date | None = None
    time: str | None = None
    location: str | None = Field(None, min_length=1, max_length=255)
    category: str | None = None
    is_private: bool | None = None
    max_participants: int | None = Field(None, ge=1)


class InviteCodePayload(BaseModel):
    invite_code: str


class UserUpdatePayload(BaseModel):
    full_name: str | None = Field(None, max_length=128)


class ImageUpdatePayload(BaseModel):
    title: str | None = Field(None, max_length=255)
    description: str | None = None


class BulkDeletePayload(BaseModel):
    image_ids: list[str] = Field(..., min_length=1)


class CommentPayload(BaseModel):
    content: str = Field(..., min_length=1, max_length=media.MAX_COMMENT_LENGTH)


# -------- serializers --------


def _serialize_user(user: User):
    return {
        "id": user.id,
        "username": user.username,
        "full_name": user.full_name,
        "avatar_url": user.avatar_url,
    }


def _serialize_event(event: Event, *, include_invite_code: bool = False):
    payload = {
        "id": event.id,
        "name": event.name,
        "description": event.description,
        "date": event.date.isoformat(),
        "time": event.time,
        "location": event.location,
        "category": event.category,
        "is_private": event.is_private,
        "max_participants": event.max_participants,
        "cover_image_url": event.cover_image_url,
        "creator_id": event.creator_id,
        "created_at": event.created_at.isoformat(),
        "updated_at": event.updated_at.isoformat(),
        "participant_count": event.participant_count,
        "image_count": event.image_count,
        "total_likes": event.total_likes,
    }
    if include_invite_code:
        payload["invite_code"] = event.invite_code
    return payload


def _serialize_membership(item: Membership):
    return {
        **_serialize_user(item.user),
        "joined_at": item.joined_at.isoformat(),
    }


def _serialize_image(image: Image):
    return {
        "id": image.id,
        "event_id": image.event_id,
        "user_id": image.user_id,
        "title": image.title,
        "description": image.description,
        "image_url": image.image_url,
        "mime_type": image.mime_type,
        "file_size": image.file_size,
        "uploaded_at": image.uploaded_at.isoformat(),
        "like_count": image.like_count,
        "comment_count": image.comment_count,
    }


def _serialize_comment(comment: Comment):
    return {
        "id": comment.id,
        "image_id": comment.image_id,
        "content": comment.content,
        "created_at": isoformat_or_none(comment.created_at),
        "updated_at": isoformat_or_none(comment.updated_at),
        "user": _serialize_user(comment.user),
    }


def _read_upload(file: UploadFile) -> bytes:
    try:
        return file.file.read()
    finally:
        file.file.close()


# -------- health --------


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/health/db")
def health_db(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok", "database": "reachable"}


# -------- events --------


@app.get("/api/v1/events")
def api_list_events(
    page: int = Query(1, ge=1),
    per_page: int = Query(EVENTS_PER_PAGE, ge=1, le=MAX_PER_PAGE),
    category: str | None = Query(None),
    q: str | None = Query(None),
    is_private: bool | None = Query(None),
    start_date: dt.date | None = Query(None),
    end_date: dt.date | None = Query(None),
    created_by: str | None = Query(None),
    sort_by: str = Query("date"),
    sort_order: str = Query("desc"),
    subject: Subject = Depends(get_subject),
    db: Session = Depends(get_db),
):
    if start_date and end_date and end_date < start_date:
        raise HTTPException(status_code=400, detail="end_date must be after start_date")
    filters = crud.EventFilters(
        category=category,
        search=q,
        is_private=is_private,
        start_date=start_date,
        end_date=end_date,
        created_by=created_by,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    events, pagination = crud.list_events(
        db, subject, filters, page=page, per_page=per_page
    )
    return {
        "events": [_serialize_event(event) for event in events],
        "pagination": pagination,
    }


@app.post("/api/v1/events", status_code=201)
def api_create_event(
    payload: EventCreatePayload,
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
):
    event = crud.create_event(db, subject, **payload.model_dump())
    return {"event": _serialize_event(event, include_invite_code=True)}


@app.post("/api/v1/events/join-by-code")
def api_join_by_code(
    payload: InviteCodePayload,
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
):
    event = membership.join_by_code(db, payload.invite_code, subject)
    return {"event": _serialize_event(event, include_invite_code=True)}


@app.post("/api/v1/events/validate-invite")
def api_validate_invite(payload: InviteCodePayload, db: Session = Depends(get_db)):
    check = membership.validate_invite_code(db, payload.invite_code)
    result = {"valid": check.valid, "can_join": check.can_join, "reason": check.reason}
    if check.event is not None:
        result["event"] = {
            "id": check.event.id,
            "name": check.event.name,
            "is_private": check.event.is_private,
            "participant_count": check.event.participant_count,
            "max_participants": check.event.max_participants,
        }
    return result


@app.get("/api/v1/events/{event_id}")
def api_get_event(
    event_id: str,
    subject: Subject = Depends(get_subject),
    db: Session = Depends(get_db),
):
    detail = crud.get_event_detail(db, subject, event_id)
    event = detail.event
    payload = _serialize_event(event, include_invite_code=detail.is_participant)
    payload["creator"] = _serialize_user(event.creator)
    payload["participants"] = [_serialize_membership(m) for m in event.memberships]
    payload["is_participant"] = detail.is_participant
    return {"event": payload}


@app.patch("/api/v1/events/{event_id}")
def api_update_event(
    event_id: str,
    payload: EventUpdatePayload,
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
):
    event = crud.update_event(
        db, subject, event_id, payload.model_dump(exclude_unset=True)
    )
    return {"event": _serialize_event(event, include_invite_code=True)}


@app.delete("/api/v1/events/{event_id}", status_code=204)
def api_delete_event(
    event_id: str,
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    crud.delete_event(db, subject, event_id, blob_store=store)
    return Response(status_code=204)


@app.post("/api/v1/events/{event_id}/cover")
def api_set_event_cover(
    event_id: str,
    file: UploadFile = File(...),
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    event = crud.set_event_cover(
        db,
        subject,
        event_id,
        data=_read_upload(file),
        content_type=file.content_type,
        blob_store=store,
    )
    return {"event": _serialize_event(event, include_invite_code=True)}


@app.post("/api/v1/events/{event_id}/join")
def api_join_event(
    event_id: str,
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
):
    event = membership.join(db, event_id, subject)
    return {"event": _serialize_event(event, include_invite_code=True)}


@app.delete("/api/v1/events/{event_id}/leave", status_code=204)
def api_leave_event(
    event_id: str,
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
):
    membership.leave(db, event_id, subject)
    return Response(status_code=204)


@app.get("/api/v1/events/{event_id}/participants")
def api_list_participants(
    event_id: str,
    subject: Subject = Depends(get_subject),
    db: Session = Depends(get_db),
):
    members = membership.list_members(db, event_id, subject)
    return {"participants": [_serialize_membership(m) for m in members]}


@app.get("/api/v1/events/{event_id}/statistics")
def api_event_statistics(
    event_id: str,
    subject: Subject = Depends(get_subject),
    db: Session = Depends(get_db),
):
    return crud.event_statistics(db, subject, event_id)


# -------- images --------


@app.get("/api/v1/events/{event_id}/images")
def api_list_event_images(
    event_id: str,
    page: int = Query(1, ge=1),
    per_page: int = Query(IMAGES_PER_PAGE, ge=1, le=MAX_PER_PAGE),
    sort_by: str = Query("uploaded_at"),
    sort_order: str = Query("desc"),
    subject: Subject = Depends(get_subject),
    db: Session = Depends(get_db),
):
    images, pagination = media.list_event_images(
        db,
        subject,
        event_id,
        page=page,
        per_page=per_page,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return {
        "images": [_serialize_image(image) for image in images],
        "pagination": pagination,
    }


@app.post("/api/v1/events/{event_id}/images", status_code=201)
def api_upload_image(
    event_id: str,
    file: UploadFile = File(...),
    title: str | None = Form(None),
    description: str | None = Form(None),
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    image = media.upload_image(
        db,
        subject,
        event_id,
        data=_read_upload(file),
        content_type=file.content_type,
        blob_store=store,
        title=title,
        description=description,
    )
    return {"image": _serialize_image(image)}


@app.post("/api/v1/images/bulk-delete")
def api_bulk_delete_images(
    payload: BulkDeletePayload,
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    return media.bulk_delete_images(db, subject, payload.image_ids, blob_store=store)


@app.get("/api/v1/images/{image_id}")
def api_get_image(
    image_id: str,
    subject: Subject = Depends(get_subject),
    db: Session = Depends(get_db),
):
    detail = media.get_image(db, subject, image_id)
    payload = _serialize_image(detail.image)
    payload["user"] = _serialize_user(detail.image.user)
    payload["comments"] = [_serialize_comment(c) for c in detail.comments]
    payload["is_liked_by_current_user"] = detail.is_liked_by_current_user
    return {"image": payload}


@app.patch("/api/v1/images/{image_id}")
def api_update_image(
    image_id: str,
    payload: ImageUpdatePayload,
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
):
    image = media.update_image(
        db, subject, image_id, changes=payload.model_dump(exclude_unset=True)
    )
    return {"image": _serialize_image(image)}


@app.delete("/api/v1/images/{image_id}", status_code=204)
def api_delete_image(
    image_id: str,
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    media.delete_image(db, subject, image_id, blob_store=store)
    return Response(status_code=204)


@app.post("/api/v1/images/{image_id}/like")
def api_like_image(
    image_id: str,
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
):
    return media.like_image(db, subject, image_id)


@app.delete("/api/v1/images/{image_id}/unlike")
def api_unlike_image(
    image_id: str,
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
):
    return media.unlike_image(db, subject, image_id)


@app.get("/api/v1/images/{image_id}/likes")
def api_list_image_likes(
    image_id: str,
    subject: Subject = Depends(get_subject),
    db: Session = Depends(get_db),
):
    users = media.list_image_likes(db, subject, image_id)
    return {"users": [_serialize_user(user) for user in users]}


# -------- comments --------


@app.get("/api/v1/images/{image_id}/comments")
def api_list_image_comments(
    image_id: str,
    page: int = Query(1, ge=1),
    per_page: int = Query(COMMENTS_PER_PAGE, ge=1, le=MAX_PER_PAGE),
    sort_order: str = Query("desc"),
    subject: Subject = Depends(get_subject),
    db: Session = Depends(get_db),
):
    comments, pagination = media.list_image_comments(
        db, subject, image_id, page=page, per_page=per_page, sort_order=sort_order
    )
    return {
        "comments": [_serialize_comment(c) for c in comments],
        "pagination": pagination,
    }


@app.post("/api/v1/images/{image_id}/comments", status_code=201)
def api_add_comment(
    image_id: str,
    payload: CommentPayload,
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
):
    comment = media.add_comment(db, subject, image_id, content=payload.content)
    return {"comment": _serialize_comment(comment)}


@app.get("/api/v1/comments/{comment_id}")
def api_get_comment(
    comment_id: str,
    subject: Subject = Depends(get_subject),
    db: Session = Depends(get_db),
):
    return {"comment": _serialize_comment(media.get_comment(db, subject, comment_id))}


@app.patch("/api/v1/comments/{comment_id}")
def api_update_comment(
    comment_id: str,
    payload: CommentPayload,
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
):
    comment = media.update_comment(db, subject, comment_id, content=payload.content)
    return {"comment": _serialize_comment(comment)}


@app.delete("/api/v1/comments/{comment_id}", status_code=204)
def api_delete_comment(
    comment_id: str,
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
):
    media.delete_comment(db, subject, comment_id)
    return Response(status_code=204)


# -------- search --------


@app.get("/api/v1/search")
def api_search(
    q: str = Query(..., min_length=1),
    type_: str = Query("all", alias="type"),
    limit: int = Query(EVENTS_PER_PAGE, ge=1, le=MAX_PER_PAGE),
    subject: Subject = Depends(get_subject),
    db: Session = Depends(get_db),
):
    results = search.search(db, subject, q, type_, limit=limit)
    return {
        "events": [_serialize_event(event) for event in results["events"]],
        "images": [_serialize_image(image) for image in results["images"]],
        "users": [_serialize_user(user) for user in results["users"]],
        "total": results["total"],
    }


# -------- users --------


@app.get("/api/v1/users/me")
def api_current_user(
    subject: Subject = Depends(require_subject), db: Session = Depends(get_db)
):
    return {"user": _serialize_user(crud.get_user(db, subject.user_id))}


@app.get("/api/v1/users/{user_id}")
def api_get_user(user_id: str, db: Session = Depends(get_db)):
    return {"user": _serialize_user(crud.get_user(db, user_id))}


@app.patch("/api/v1/users/{user_id}")
def api_update_user(
    user_id: str,
    payload: UserUpdatePayload,
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
):
    user = crud.update_user(db, subject, user_id, full_name=payload.full_name)
    return {"user": _serialize_user(user)}


@app.delete("/api/v1/users/{user_id}", status_code=204)
def api_delete_user(
    user_id: str,
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    crud.delete_user(db, subject, user_id, blob_store=store)
    return Response(status_code=204)


@app.post("/api/v1/users/{user_id}/avatar")
def api_update_avatar(
    user_id: str,
    file: UploadFile = File(...),
    subject: Subject = Depends(require_subject),
    db: Session = Depends(get_db),
    store: BlobStore = Depends(get_blob_store),
):
    user = crud.update_user_avatar(
        db,
        subject,
        user_id,
        data=_read_upload(file),
        content_type=file.content_type,
        blob_store=store,
    )
    return {"user": _serialize_user(user)}


@app.get("/api/v1/users/{user_id}/statistics")
def api_user_statistics(user_id: str, db: Session = Depends(get_db)):
    return crud.user_statistics(db, user_id)


@app.get("/api/v1/users/{user_id}/events")
def api_user_events(
    user_id: str,
    page: int = Query(1, ge=1),
    per_page: int = Query(EVENTS_PER_PAGE, ge=1, le=MAX_PER_PAGE),
    subject: Subject = Depends(get_subject),
    db: Session = Depends(get_db),
):
    events, pagination = search.user_events(
        db, subject, user_id, page=page, per_page=per_page
    )
    return {
        "events": [_serialize_event(event) for event in events],
        "pagination": pagination,
    }


@app.get("/api/v1/users/{user_id}/images")
def api_user_images(
    user_id: str,
    page: int = Query(1, ge=1),
    per_page: int = Query(IMAGES_PER_PAGE, ge=1, le=MAX_PER_PAGE),
    subject: Subject = Depends(get_subject),
    db: Session = Depends(get_db),
):
    images, pagination = search.user_images(
        db, subject, user_id, page=page, per_page=per_page
    )
    return {
        "images": [_serialize_image(image) for image in images],
        "pagination": pagination,
    }


@app.get("/api/v1/users/{user_id}/liked-images")
def api_user_liked_images(
    user_id: str,
    page: int = Query(1, ge=1),
    per_page: int = Query(IMAGES_PER_PAGE, ge=1, le=MAX_PER_PAGE),
    subject: Subject = Depends(get_subject),
    db: Session = Depends(get_db),
):
    images, pagination = search.user_liked_images(
        db, subject, user_id, page=page, per_page=per_page
    )
    return {
        "images": [_serialize_image(image) for image in images],
        "pagination": pagination,
    }


# -------- gallery --------


@app.get("/api/v1/gallery/featured")
def api_featured_images(
    limit: int = Query(10, ge=1, le=50),
    subject: Subject = Depends(get_subject),
    db: Session = Depends(get_db),
):
    images = search.featured_images(db, subject, limit=limit)
    return {"images": [_serialize_image(image) for image in images]}


@app.get("/api/v1/gallery/recent")
def api_recent_images(
    page: int = Query(1, ge=1),
    per_page: int = Query(IMAGES_PER_PAGE, ge=1, le=MAX_PER_PAGE),
    subject: Subject = Depends(get_subject),
    db: Session = Depends(get_db),
):
    images, pagination = search.recent_images(
        db, subject, page=page, per_page=per_page
    )
    return {
        "images": [_serialize_image(image) for image in images],
        "pagination": pagination,
    }


@app.get("/api/v1/gallery/popular")
def api_popular_images(
    page: int = Query(1, ge=1),
    per_page: int = Query(IMAGES_PER_PAGE, ge=1, le=MAX_PER_PAGE),
    subject: Subject = Depends(get_subject),
    db: Session = Depends(get_db),
):
    images, pagination = search.popular_images(
        db, subject, page=page, per_page=per_page
    )
    return {
        "images": [_serialize_image(image) for image in images],
        "pagination": pagination,
    }


@app.get("/api/v1/gallery/stats")
def api_gallery_stats(db: Session = Depends(get_db)):
    return search.gallery_stats(db)
