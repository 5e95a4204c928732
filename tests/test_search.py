from __future__ import annotations

from datetime import date

import pytest

from eventgallery import crud, media, membership, search
from eventgallery.errors import NotFound, ValidationError
from eventgallery.utils import new_id
from eventgallery.visibility import ANONYMOUS


@pytest.fixture()
def gallery(session, subjects, blob_store, png_bytes):
    """alice hosts a public and a private event; bob belongs to the private one."""
    alice, bob = subjects["alice"], subjects["bob"]
    public = crud.create_event(
        session, alice, name="Sunset Regatta", date=date(2026, 6, 20), location="Bay"
    )
    private = crud.create_event(
        session,
        alice,
        name="Sunset Dinner",
        date=date(2026, 6, 21),
        location="Villa",
        is_private=True,
    )
    membership.join(session, private.id, bob)

    def upload(subject, event, title):
        return media.upload_image(
            session,
            subject,
            event.id,
            data=png_bytes,
            content_type="image/png",
            blob_store=blob_store,
            title=title,
        )

    images = {
        "boats": upload(alice, public, "Sunset boats"),
        "crowd": upload(alice, public, "Crowd"),
        "table": upload(bob, private, "Sunset table"),
    }
    media.like_image(session, bob, images["crowd"].id)
    media.like_image(session, subjects["carol"], images["crowd"].id)
    media.like_image(session, alice, images["boats"].id)
    media.like_image(session, alice, images["table"].id)
    media.add_comment(session, bob, images["table"].id, content="Delicious")
    media.add_comment(session, bob, images["boats"].id, content="Windy")
    session.commit()
    return {"public": public, "private": private, "images": images}


def test_search_respects_visibility(session, subjects, gallery):
    anonymous = search.search(session, ANONYMOUS, "sunset")
    assert [e.name for e in anonymous["events"]] == ["Sunset Regatta"]
    assert [i.title for i in anonymous["images"]] == ["Sunset boats"]

    member = search.search(session, subjects["bob"], "sunset")
    assert {e.name for e in member["events"]} == {"Sunset Regatta", "Sunset Dinner"}
    assert {i.title for i in member["images"]} == {"Sunset boats", "Sunset table"}
    assert member["total"] == 4


def test_search_users_and_kinds(session, subjects, gallery):
    results = search.search(session, ANONYMOUS, "ali", "users")
    assert [u.username for u in results["users"]] == ["alice"]
    assert results["events"] == [] and results["images"] == []

    with pytest.raises(ValidationError):
        search.search(session, ANONYMOUS, "sunset", "places")
    with pytest.raises(ValidationError):
        search.search(session, ANONYMOUS, "   ")


def test_user_listings_use_viewer_visibility(session, subjects, gallery):
    bob = subjects["bob"]

    events, _ = search.user_events(session, ANONYMOUS, bob.user_id)
    assert events == []
    events, _ = search.user_events(session, bob, bob.user_id)
    assert [e.name for e in events] == ["Sunset Dinner"]
    events, _ = search.user_events(session, subjects["alice"], subjects["alice"].user_id)
    assert len(events) == 2

    images, _ = search.user_images(session, subjects["carol"], bob.user_id)
    assert images == []
    images, _ = search.user_images(session, subjects["alice"], bob.user_id)
    assert [i.title for i in images] == ["Sunset table"]

    liked, _ = search.user_liked_images(session, ANONYMOUS, subjects["alice"].user_id)
    assert [i.title for i in liked] == ["Sunset boats"]
    liked, pagination = search.user_liked_images(session, bob, subjects["alice"].user_id)
    assert {i.title for i in liked} == {"Sunset boats", "Sunset table"}
    assert pagination["total"] == 2


def test_user_listing_for_unknown_user(session):
    with pytest.raises(NotFound):
        search.user_events(session, ANONYMOUS, new_id())


def test_gallery_feeds(session, subjects, gallery):
    recent, pagination = search.recent_images(session, ANONYMOUS)
    assert {i.title for i in recent} == {"Sunset boats", "Crowd"}
    assert pagination["total"] == 2

    popular, _ = search.popular_images(session, ANONYMOUS)
    assert [i.title for i in popular] == ["Crowd", "Sunset boats"]

    featured = search.featured_images(session, subjects["bob"], limit=2)
    assert [i.title for i in featured][0] == "Crowd"
    assert len(featured) == 2


def test_gallery_stats_count_public_content_only(session, gallery):
    assert search.gallery_stats(session) == {
        "total_events": 1,
        "total_images": 2,
        "total_users": 3,
        "total_likes": 3,
        "total_comments": 1,
    }
