"""Development helpers for populating fake users, events and images."""

from __future__ import annotations

import base64
import random
from datetime import timedelta

from faker import Faker
from sqlalchemy.orm import Session

from . import crud, media, membership
from .blobs import BlobStore, default_store
from .database import get_session
from .errors import CapacityExceeded
from .models import EVENT_CATEGORIES, Event, User
from .storage import init_db
from .utils import utcnow
from .visibility import Subject

# 1x1 transparent PNG.
_PLACEHOLDER_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)
_event_types = [
    "Reunion",
    "Meetup",
    "Showcase",
    "Photo Walk",
    "Festival",
    "Gala",
    "Workshop",
    "Picnic",
]


def seed_fake_data(
    *,
    user_count: int = 8,
    event_count: int = 6,
    max_images_per_event: int = 4,
    private_percentage: int = 30,
    blob_store: BlobStore | None = None,
) -> dict[str, int]:
    """Populate the database with synthetic users, events and images."""
    if user_count < 1:
        raise ValueError("user_count must be >= 1")
    if event_count < 0:
        raise ValueError("event_count must be >= 0")
    if max_images_per_event < 0:
        raise ValueError("max_images_per_event must be >= 0")
    if not 0 <= private_percentage <= 100:
        raise ValueError("private_percentage must be between 0 and 100")

    init_db()
    fake = Faker()
    store = blob_store or default_store()
    stats = {"users": 0, "events": 0, "memberships": 0, "images": 0}

    with get_session() as session:
        users = [_create_user(session, fake) for _ in range(user_count)]
        stats["users"] = len(users)
        for _ in range(event_count):
            event = _create_event(
                session, fake, random.choice(users), private_percentage
            )
            stats["events"] += 1
            stats["memberships"] += _join_members(session, event, users)
            stats["images"] += _upload_images(
                session, fake, event, max_images_per_event, store
            )

    return stats


def _create_user(session: Session, fake: Faker) -> User:
    return crud.create_user(
        session, username=fake.unique.user_name(), full_name=fake.name()
    )


def _create_event(
    session: Session, fake: Faker, creator: User, private_percentage: int
) -> Event:
    when = utcnow() + timedelta(days=random.randint(-60, 30))
    max_participants = random.choice([None, None, random.randint(2, 10)])
    return crud.create_event(
        session,
        Subject.of(creator.id),
        name=f"{fake.city()} {random.choice(_event_types)}",
        description="\n\n".join(fake.paragraphs(nb=2)),
        date=when.date(),
        time=f"{random.randint(8, 21):02d}:{random.choice([0, 15, 30, 45]):02d}",
        location=fake.address().replace("\n", ", "),
        category=random.choice(EVENT_CATEGORIES),
        is_private=random.randint(1, 100) <= private_percentage,
        max_participants=max_participants,
    )


def _join_members(session: Session, event: Event, users: list[User]) -> int:
    others = [user for user in users if user.id != event.creator_id]
    joined = 0
    for user in random.sample(others, k=random.randint(0, len(others))):
        try:
            membership.join(session, event.id, Subject.of(user.id))
        except CapacityExceeded:
            break
        joined += 1
    return joined


def _upload_images(
    session: Session,
    fake: Faker,
    event: Event,
    max_images: int,
    store: BlobStore,
) -> int:
    if max_images <= 0:
        return 0
    uploaders = [m.user_id for m in event.memberships]
    total = random.randint(0, max_images)
    for _ in range(total):
        uploader = Subject.of(random.choice(uploaders))
        image = media.upload_image(
            session,
            uploader,
            event.id,
            data=_PLACEHOLDER_PNG,
            content_type="image/png",
            blob_store=store,
            title=fake.sentence(nb_words=4).rstrip("."),
            description=fake.sentence() if random.random() < 0.5 else None,
        )
        for user_id in random.sample(uploaders, k=random.randint(0, len(uploaders))):
            media.like_image(session, Subject.of(user_id), image.id)
        if random.random() < 0.5:
            media.add_comment(
                session, Subject.of(random.choice(uploaders)), image.id, content=fake.sentence()
            )
    return total
