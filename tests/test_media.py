from __future__ import annotations

from datetime import date

import pytest

from eventgallery import crud, media, membership
from eventgallery.errors import (
    ALREADY_LIKED,
    AUTHENTICATION_REQUIRED,
    MUST_BE_PARTICIPANT,
    NO_IMAGE_ACCESS,
    NOT_LIKED,
    Conflict,
    Forbidden,
    NotFound,
    ValidationError,
)
from eventgallery.utils import new_id
from eventgallery.visibility import ANONYMOUS


@pytest.fixture()
def public_event(session, subjects):
    event = crud.create_event(
        session, subjects["alice"], name="Open Studio", date=date(2026, 2, 2), location="Loft"
    )
    session.commit()
    return event


@pytest.fixture()
def private_event(session, subjects):
    event = crud.create_event(
        session,
        subjects["alice"],
        name="Closed Studio",
        date=date(2026, 2, 3),
        location="Loft",
        is_private=True,
    )
    session.commit()
    return event


def _upload(session, subject, event, blob_store, data, content_type="image/png", **kwargs):
    return media.upload_image(
        session,
        subject,
        event.id,
        data=data,
        content_type=content_type,
        blob_store=blob_store,
        **kwargs,
    )


def test_upload_requires_participation(session, subjects, public_event, blob_store, png_bytes):
    with pytest.raises(Forbidden) as exc:
        _upload(session, subjects["bob"], public_event, blob_store, png_bytes)
    assert exc.value.reason == MUST_BE_PARTICIPANT

    with pytest.raises(Forbidden) as exc:
        _upload(session, ANONYMOUS, public_event, blob_store, png_bytes)
    assert exc.value.reason == AUTHENTICATION_REQUIRED

    image = _upload(
        session, subjects["alice"], public_event, blob_store, png_bytes, title=" Skyline "
    )
    assert image.title == "Skyline"
    assert image.file_size == len(png_bytes)
    assert (blob_store.root / image.image_key).read_bytes() == png_bytes


@pytest.mark.parametrize(
    "content_type,data",
    [
        ("application/pdf", b"%PDF"),
        (None, b"data"),
        ("image/png", b""),
        ("image/png", b"x" * (10 * 1024 * 1024 + 1)),
    ],
)
def test_upload_validation(session, subjects, public_event, blob_store, content_type, data):
    with pytest.raises(ValidationError):
        _upload(session, subjects["alice"], public_event, blob_store, data, content_type)


def test_get_image_of_private_event(session, subjects, private_event, blob_store, png_bytes):
    image = _upload(session, subjects["alice"], private_event, blob_store, png_bytes)
    session.commit()

    with pytest.raises(Forbidden) as exc:
        media.get_image(session, subjects["carol"], image.id)
    assert exc.value.reason == NO_IMAGE_ACCESS
    with pytest.raises(Forbidden):
        media.get_image(session, ANONYMOUS, image.id)

    membership.join_by_code(session, private_event.invite_code, subjects["carol"])
    detail = media.get_image(session, subjects["carol"], image.id)
    assert detail.image.id == image.id
    assert not detail.is_liked_by_current_user


def test_get_missing_image(session, subjects):
    with pytest.raises(NotFound):
        media.get_image(session, subjects["alice"], new_id())


def test_list_event_images(session, subjects, public_event, private_event, blob_store, png_bytes):
    for title in ("b", "a", "c"):
        _upload(session, subjects["alice"], public_event, blob_store, png_bytes, title=title)
    _upload(session, subjects["alice"], private_event, blob_store, png_bytes)

    images, pagination = media.list_event_images(
        session, ANONYMOUS, public_event.id, sort_by="title", sort_order="asc"
    )
    assert [i.title for i in images] == ["a", "b", "c"]
    assert pagination["total"] == 3

    with pytest.raises(Forbidden):
        media.list_event_images(session, ANONYMOUS, private_event.id)


def test_update_image_owner_only(session, subjects, public_event, blob_store, png_bytes):
    image = _upload(session, subjects["alice"], public_event, blob_store, png_bytes)
    with pytest.raises(Forbidden):
        media.update_image(session, subjects["bob"], image.id, changes={"title": "Mine"})
    updated = media.update_image(
        session, subjects["alice"], image.id, changes={"title": "Renamed", "description": ""}
    )
    assert updated.title == "Renamed"
    assert updated.description is None


def test_delete_image_by_uploader_or_creator(session, subjects, public_event, blob_store, png_bytes):
    alice, bob, carol = subjects["alice"], subjects["bob"], subjects["carol"]
    membership.join(session, public_event.id, bob)
    first = _upload(session, bob, public_event, blob_store, png_bytes)
    second = _upload(session, bob, public_event, blob_store, png_bytes)

    with pytest.raises(Forbidden):
        media.delete_image(session, carol, first.id, blob_store=blob_store)

    media.delete_image(session, bob, first.id, blob_store=blob_store)
    media.delete_image(session, alice, second.id, blob_store=blob_store)
    session.commit()

    images, _ = media.list_event_images(session, alice, public_event.id)
    assert images == []
    assert not list(blob_store.root.rglob("*.png"))


def test_bulk_delete_reports_failures(session, subjects, public_event, blob_store, png_bytes):
    alice, bob = subjects["alice"], subjects["bob"]
    membership.join(session, public_event.id, bob)
    mine = _upload(session, bob, public_event, blob_store, png_bytes)
    theirs = _upload(session, alice, public_event, blob_store, png_bytes)
    mine_path = blob_store.root / mine.image_key
    theirs_path = blob_store.root / theirs.image_key
    missing = new_id()

    result = media.bulk_delete_images(
        session, bob, [mine.id, theirs.id, missing, "garbage"], blob_store=blob_store
    )

    assert result["deleted_count"] == 1
    assert result["failed_ids"] == [theirs.id, missing, "garbage"]

    session.commit()
    assert not mine_path.exists()
    assert theirs_path.exists()


def test_like_and_unlike(session, subjects, public_event, blob_store, png_bytes):
    image = _upload(session, subjects["alice"], public_event, blob_store, png_bytes)
    bob = subjects["bob"]

    assert media.like_image(session, bob, image.id) == {"liked": True, "like_count": 1}
    with pytest.raises(Conflict) as exc:
        media.like_image(session, bob, image.id)
    assert exc.value.reason == ALREADY_LIKED

    assert media.get_image(session, bob, image.id).is_liked_by_current_user
    assert [u.username for u in media.list_image_likes(session, ANONYMOUS, image.id)] == ["bob"]

    assert media.unlike_image(session, bob, image.id) == {"liked": False, "like_count": 0}
    with pytest.raises(NotFound) as exc:
        media.unlike_image(session, bob, image.id)
    assert exc.value.reason == NOT_LIKED


def test_anonymous_cannot_engage(session, subjects, public_event, blob_store, png_bytes):
    image = _upload(session, subjects["alice"], public_event, blob_store, png_bytes)
    with pytest.raises(Forbidden) as exc:
        media.like_image(session, ANONYMOUS, image.id)
    assert exc.value.reason == AUTHENTICATION_REQUIRED
    with pytest.raises(Forbidden):
        media.add_comment(session, ANONYMOUS, image.id, content="hi")


def test_outsider_cannot_engage_private_event(session, subjects, private_event, blob_store, png_bytes):
    image = _upload(session, subjects["alice"], private_event, blob_store, png_bytes)
    with pytest.raises(Forbidden):
        media.like_image(session, subjects["carol"], image.id)
    with pytest.raises(Forbidden):
        media.add_comment(session, subjects["carol"], image.id, content="hi")
    with pytest.raises(Forbidden):
        media.list_image_likes(session, subjects["carol"], image.id)


def test_comments_lifecycle(session, subjects, public_event, blob_store, png_bytes):
    alice, bob, carol = subjects["alice"], subjects["bob"], subjects["carol"]
    image = _upload(session, alice, public_event, blob_store, png_bytes)

    comment = media.add_comment(session, bob, image.id, content="  Great light  ")
    assert comment.content == "Great light"
    assert media.get_comment(session, ANONYMOUS, comment.id).id == comment.id

    with pytest.raises(ValidationError):
        media.add_comment(session, bob, image.id, content="   ")

    with pytest.raises(Forbidden):
        media.update_comment(session, carol, comment.id, content="edited")
    edited = media.update_comment(session, bob, comment.id, content="Great colour")
    assert edited.content == "Great colour"

    comments, pagination = media.list_image_comments(session, carol, image.id)
    assert [c.id for c in comments] == [comment.id]
    assert pagination["total"] == 1

    with pytest.raises(Forbidden):
        media.delete_comment(session, carol, comment.id)
    media.delete_comment(session, alice, comment.id)
    comments, _ = media.list_image_comments(session, carol, image.id)
    assert comments == []


def test_get_comment_on_private_event_requires_read(
    session, subjects, private_event, blob_store, png_bytes
):
    image = _upload(session, subjects["alice"], private_event, blob_store, png_bytes)
    comment = media.add_comment(session, subjects["alice"], image.id, content="secret")
    with pytest.raises(Forbidden):
        media.get_comment(session, subjects["carol"], comment.id)
    with pytest.raises(Forbidden):
        media.list_image_comments(session, ANONYMOUS, image.id)
