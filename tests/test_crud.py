from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy import func, select

from eventgallery import crud, media, membership
from eventgallery.blobs import LocalBlobStore
from eventgallery.crud import EventFilters
from eventgallery.errors import Conflict, DependencyFailure, Forbidden, ValidationError
from eventgallery.models import Comment, Event, Image, Like, Membership
from eventgallery.visibility import ANONYMOUS


def _create(session, subject, **overrides):
    fields = {"name": "Spring Fair", "date": date(2026, 4, 18), "location": "Green"}
    fields.update(overrides)
    event = crud.create_event(session, subject, **fields)
    session.commit()
    return event


def _upload(session, subject, event, blob_store, png_bytes, **kwargs):
    return media.upload_image(
        session,
        subject,
        event.id,
        data=png_bytes,
        content_type="image/png",
        blob_store=blob_store,
        **kwargs,
    )


def test_create_user_rejects_duplicate_username(session, users):
    with pytest.raises(Conflict):
        crud.create_user(session, username="Alice")


def test_rotate_user_token_invalidates_old_token(session, users):
    alice = users["alice"]
    old = alice.api_token
    new = crud.rotate_user_token(session, alice)
    assert new != old
    assert crud.get_user_by_token(session, old) is None
    assert crud.get_user_by_token(session, new).id == alice.id


def test_create_event_normalizes_fields(session, subjects):
    event = _create(
        session,
        subjects["alice"],
        name="  Spring Fair  ",
        date="2026-04-18",
        time="18:30",
        category="Music",
        max_participants="",
    )
    assert event.name == "Spring Fair"
    assert event.date == date(2026, 4, 18)
    assert event.category == "music"
    assert event.max_participants is None
    assert event.creator_id == subjects["alice"].user_id


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_participants": 0},
        {"max_participants": -3},
        {"max_participants": True},
        {"max_participants": "many"},
        {"time": "25:00"},
        {"category": "party"},
        {"name": "   "},
        {"date": "not-a-date"},
    ],
)
def test_create_event_validation(session, subjects, overrides):
    with pytest.raises(ValidationError):
        _create(session, subjects["alice"], **overrides)
    assert session.scalar(select(func.count()).select_from(Event)) == 0


def test_anonymous_cannot_create_event(session):
    with pytest.raises(Forbidden):
        crud.create_event(
            session, ANONYMOUS, name="X", date=date(2026, 1, 1), location="Y"
        )


def test_update_event_is_creator_only(session, subjects):
    event = _create(session, subjects["alice"])
    with pytest.raises(Forbidden):
        crud.update_event(session, subjects["bob"], event.id, {"name": "Hijack"})

    updated = crud.update_event(
        session, subjects["alice"], event.id, {"name": "Summer Fair", "is_private": True}
    )
    assert updated.name == "Summer Fair"
    assert updated.is_private


def test_update_event_rejects_unknown_fields(session, subjects):
    event = _create(session, subjects["alice"])
    with pytest.raises(ValidationError):
        crud.update_event(session, subjects["alice"], event.id, {"invite_code": "AAAAAAAA"})


def test_lowering_capacity_evicts_no_one(session, subjects):
    event = _create(session, subjects["alice"], max_participants=3)
    membership.join(session, event.id, subjects["bob"])
    membership.join(session, event.id, subjects["carol"])

    crud.update_event(session, subjects["alice"], event.id, {"max_participants": 1})

    assert membership.participant_count(session, event.id) == 3
    assert membership.is_full(session, event)


def test_list_events_hides_unreadable_events(session, subjects):
    alice, bob = subjects["alice"], subjects["bob"]
    _create(session, alice, name="Open Day")
    secret = _create(session, alice, name="Secret Supper", is_private=True)

    events, pagination = crud.list_events(session, ANONYMOUS)
    assert [e.name for e in events] == ["Open Day"]
    assert pagination["total"] == 1

    membership.join_by_code(session, secret.invite_code, bob)
    events, _ = crud.list_events(session, bob, EventFilters(sort_by="name", sort_order="asc"))
    assert [e.name for e in events] == ["Open Day", "Secret Supper"]


def test_list_events_filters(session, subjects):
    alice, bob = subjects["alice"], subjects["bob"]
    _create(session, alice, name="Jazz Night", category="music", date=date(2026, 3, 1))
    _create(session, alice, name="Board Meeting", category="corporate", date=date(2026, 5, 1))
    _create(session, bob, name="Jazz Brunch", category="music", date=date(2026, 8, 1))

    events, _ = crud.list_events(session, ANONYMOUS, EventFilters(category="music"))
    assert {e.name for e in events} == {"Jazz Night", "Jazz Brunch"}

    events, _ = crud.list_events(session, ANONYMOUS, EventFilters(search="jazz"))
    assert len(events) == 2

    events, _ = crud.list_events(
        session,
        ANONYMOUS,
        EventFilters(start_date=date(2026, 4, 1), end_date=date(2026, 6, 1)),
    )
    assert [e.name for e in events] == ["Board Meeting"]

    events, _ = crud.list_events(
        session, ANONYMOUS, EventFilters(created_by=bob.user_id)
    )
    assert [e.name for e in events] == ["Jazz Brunch"]

    with pytest.raises(ValidationError):
        crud.list_events(session, ANONYMOUS, EventFilters(sort_order="sideways"))


def test_list_events_pagination(session, subjects):
    for i in range(5):
        _create(session, subjects["alice"], name=f"Event {i}")
    events, pagination = crud.list_events(session, ANONYMOUS, page=2, per_page=2)
    assert len(events) == 2
    assert pagination["total_pages"] == 3
    assert pagination["has_prev"] and pagination["has_next"]
    assert pagination["prev_page"] == 1 and pagination["next_page"] == 3


def test_build_pagination_clamps_page():
    pagination = crud.build_pagination(page=9, per_page=10, total=15)
    assert pagination["page"] == 2
    assert not pagination["has_next"]
    empty = crud.build_pagination(page=3, per_page=10, total=0)
    assert empty["page"] == 1 and empty["total_pages"] == 1


def test_event_detail_marks_participants(session, subjects):
    event = _create(session, subjects["alice"])
    assert crud.get_event_detail(session, subjects["alice"], event.id).is_participant
    assert not crud.get_event_detail(session, subjects["bob"], event.id).is_participant
    assert not crud.get_event_detail(session, ANONYMOUS, event.id).is_participant


def test_event_statistics(session, subjects, blob_store, png_bytes):
    alice, bob = subjects["alice"], subjects["bob"]
    event = _create(session, alice)
    membership.join(session, event.id, bob)
    image = _upload(session, alice, event, blob_store, png_bytes)
    media.like_image(session, bob, image.id)
    media.add_comment(session, bob, image.id, content="Lovely")

    stats = crud.event_statistics(session, ANONYMOUS, event.id)

    assert stats == {
        "participant_count": 2,
        "image_count": 1,
        "total_likes": 1,
        "total_comments": 1,
    }


def test_delete_event_cascades_and_removes_blobs(session, subjects, blob_store, png_bytes):
    alice, bob = subjects["alice"], subjects["bob"]
    event = _create(session, alice)
    membership.join(session, event.id, bob)
    image = _upload(session, bob, event, blob_store, png_bytes)
    media.like_image(session, alice, image.id)
    media.add_comment(session, alice, image.id, content="Nice")
    crud.set_event_cover(
        session,
        alice,
        event.id,
        data=png_bytes,
        content_type="image/png",
        blob_store=blob_store,
    )
    session.commit()
    assert list(blob_store.root.rglob("*.png"))

    with pytest.raises(Forbidden):
        crud.delete_event(session, bob, event.id, blob_store=blob_store)

    crud.delete_event(session, alice, event.id, blob_store=blob_store)
    session.commit()

    for model in (Event, Membership, Image, Like, Comment):
        assert session.scalar(select(func.count()).select_from(model)) == 0
    assert not list(blob_store.root.rglob("*.png"))


def test_delete_event_rolled_back_keeps_blobs(session, subjects, blob_store, png_bytes):
    alice = subjects["alice"]
    event = _create(session, alice)
    image = _upload(session, alice, event, blob_store, png_bytes)
    session.commit()
    blob_path = blob_store.root / image.image_key

    crud.delete_event(session, alice, event.id, blob_store=blob_store)
    session.rollback()

    assert session.get(Event, event.id) is not None
    assert blob_path.exists()
    session.commit()
    assert blob_path.exists()


def test_delete_event_survives_blob_store_failure(session, subjects, blob_store, png_bytes):
    class BrokenStore(LocalBlobStore):
        def delete(self, keys):
            raise DependencyFailure("Failed to delete file")

    alice = subjects["alice"]
    event = _create(session, alice)
    image = _upload(session, alice, event, blob_store, png_bytes)
    session.commit()
    blob_path = blob_store.root / image.image_key

    broken = BrokenStore(blob_store.root, "/blobs")
    crud.delete_event(session, alice, event.id, blob_store=broken)
    session.commit()

    assert session.get(Event, event.id) is None
    # The orphaned file is left behind; no row points at it.
    assert blob_path.exists()


def test_set_event_cover_replaces_previous_blob(session, subjects, blob_store, png_bytes):
    alice = subjects["alice"]
    event = _create(session, alice)
    first = crud.set_event_cover(
        session, alice, event.id, data=png_bytes, content_type="image/png", blob_store=blob_store
    )
    first_key = first.cover_image_key
    second = crud.set_event_cover(
        session, alice, event.id, data=png_bytes, content_type="image/png", blob_store=blob_store
    )
    session.commit()
    assert second.cover_image_key != first_key
    assert not (blob_store.root / first_key).exists()
    assert (blob_store.root / second.cover_image_key).exists()
    assert second.cover_image_url.startswith("/blobs/events/")

    with pytest.raises(Forbidden):
        crud.set_event_cover(
            session,
            subjects["bob"],
            event.id,
            data=png_bytes,
            content_type="image/png",
            blob_store=blob_store,
        )


def test_user_statistics(session, subjects, blob_store, png_bytes):
    alice, bob = subjects["alice"], subjects["bob"]
    event = _create(session, alice)
    image = _upload(session, alice, event, blob_store, png_bytes)
    media.like_image(session, bob, image.id)
    membership.join(session, event.id, bob)

    stats = crud.user_statistics(session, bob.user_id)
    assert stats["events_created"] == 0
    assert stats["events_joined"] == 1
    assert stats["images_liked"] == 1

    alice_stats = crud.user_statistics(session, alice.user_id)
    assert alice_stats["events_created"] == 1
    assert alice_stats["events_joined"] == 1
    assert alice_stats["images_uploaded"] == 1


def test_update_user_avatar(session, users, subjects, blob_store, png_bytes):
    alice = users["alice"]
    user = crud.update_user_avatar(
        session,
        subjects["alice"],
        alice.id,
        data=png_bytes,
        content_type="image/png",
        blob_store=blob_store,
    )
    assert user.avatar_key.startswith(f"users/{alice.id}/avatar/")
    with pytest.raises(Forbidden):
        crud.update_user_avatar(
            session,
            subjects["bob"],
            alice.id,
            data=png_bytes,
            content_type="image/png",
            blob_store=blob_store,
        )


@pytest.mark.parametrize("value", [None, "no", 0])
def test_update_event_rejects_non_boolean_privacy(session, subjects, value):
    event = _create(session, subjects["alice"], is_private=True)
    with pytest.raises(ValidationError):
        crud.update_event(session, subjects["alice"], event.id, {"is_private": value})
    session.rollback()
    assert session.get(Event, event.id).is_private
    with pytest.raises(Forbidden):
        crud.get_event_detail(session, ANONYMOUS, event.id)


def test_update_user_is_self_only(session, users, subjects):
    alice = users["alice"]
    updated = crud.update_user(session, subjects["alice"], alice.id, full_name="  Alice Liddell ")
    assert updated.full_name == "Alice Liddell"

    with pytest.raises(Forbidden):
        crud.update_user(session, subjects["bob"], alice.id, full_name="Mallory")
    with pytest.raises(ValidationError):
        crud.update_user(session, subjects["alice"], alice.id, full_name="x" * 129)


def test_delete_user_cascades_memberships_and_blobs(
    session, users, subjects, blob_store, png_bytes
):
    alice, bob = subjects["alice"], subjects["bob"]
    hosted = _create(session, alice, name="Alice Hosts")
    bobs_event = _create(session, bob, name="Bob Hosts")
    membership.join(session, hosted.id, bob)
    membership.join(session, bobs_event.id, alice)
    uploaded = _upload(session, bob, hosted, blob_store, png_bytes)
    kept = _upload(session, alice, hosted, blob_store, png_bytes)
    media.like_image(session, bob, kept.id)
    crud.update_user_avatar(
        session, bob, bob.user_id, data=png_bytes, content_type="image/png", blob_store=blob_store
    )
    session.commit()
    uploaded_path = blob_store.root / uploaded.image_key
    avatar_path = blob_store.root / users["bob"].avatar_key
    assert membership.participant_count(session, hosted.id) == 2

    with pytest.raises(Forbidden):
        crud.delete_user(session, alice, bob.user_id, blob_store=blob_store)

    crud.delete_user(session, bob, bob.user_id, blob_store=blob_store)
    session.commit()

    assert crud.get_user_by_username(session, "alice").id == alice.user_id
    assert session.get(Event, bobs_event.id) is None
    assert membership.participant_count(session, hosted.id) == 1
    assert not membership.is_member(session, hosted.id, bob.user_id)
    assert session.scalar(
        select(func.count()).select_from(Membership).where(Membership.user_id == bob.user_id)
    ) == 0
    assert session.scalar(select(func.count()).select_from(Like)) == 0
    assert [i.id for i in session.scalars(select(Image)).all()] == [kept.id]
    assert not uploaded_path.exists()
    assert not avatar_path.exists()
    assert (blob_store.root / kept.image_key).exists()
