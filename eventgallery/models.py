"""SQLAlchemy models for EventGallery."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import new_id, utcnow

Base = declarative_base()

EVENT_CATEGORIES = (
    "wedding",
    "birthday",
    "conference",
    "music",
    "sports",
    "art",
    "corporate",
    "other",
)


def _now() -> datetime:
    return utcnow()


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    username = Column(String(64), nullable=False, unique=True)
    full_name = Column(String(128), nullable=True)
    avatar_url = Column(String(512), nullable=True)
    avatar_key = Column(String(255), nullable=True)
    api_token = Column(String(128), nullable=False, unique=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    # Deleting a user leaves event removal to the ON DELETE CASCADE.
    events_created = relationship(
        "Event", back_populates="creator", passive_deletes="all"
    )


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        UniqueConstraint("invite_code", name="uq_events_invite_code"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    creator_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    invite_code = Column(String(8), nullable=False)
    is_private = Column(Boolean, default=False, nullable=False)
    max_participants = Column(Integer, nullable=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    date = Column(Date, nullable=False)
    time = Column(String(5), nullable=True)
    location = Column(String(255), nullable=False)
    category = Column(String(32), default="other", nullable=False)
    cover_image_url = Column(String(512), nullable=True)
    cover_image_key = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    creator = relationship("User", back_populates="events_created")
    memberships = relationship(
        "Membership",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Membership.joined_at",
    )
    images = relationship(
        "Image",
        back_populates="event",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def participant_count(self) -> int:
        """Return the number of membership rows, creator included."""
        return len(self.memberships)

    @property
    def image_count(self) -> int:
        return len(self.images)

    @property
    def total_likes(self) -> int:
        return sum(len(image.likes) for image in self.images)


class Membership(Base):
    __tablename__ = "memberships"
    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_memberships_event_user"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    joined_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("Event", back_populates="memberships")
    user = relationship("User")


class Image(Base):
    __tablename__ = "images"

    id = Column(String(36), primary_key=True, default=new_id)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    image_url = Column(String(512), nullable=False)
    image_key = Column(String(255), nullable=False)
    mime_type = Column(String(64), nullable=True)
    file_size = Column(Integer, nullable=True)
    uploaded_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("Event", back_populates="images")
    user = relationship("User")
    comments = relationship(
        "Comment",
        back_populates="image",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="desc(Comment.created_at)",
    )
    likes = relationship(
        "Like",
        back_populates="image",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def like_count(self) -> int:
        return len(self.likes)

    @property
    def comment_count(self) -> int:
        return len(self.comments)


class Comment(Base):
    __tablename__ = "comments"

    id = Column(String(36), primary_key=True, default=new_id)
    image_id = Column(
        String(36), ForeignKey("images.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    image = relationship("Image", back_populates="comments")
    user = relationship("User")


class Like(Base):
    __tablename__ = "image_likes"
    __table_args__ = (
        UniqueConstraint("image_id", "user_id", name="uq_image_likes_image_user"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    image_id = Column(
        String(36), ForeignKey("images.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    liked_at = Column(DateTime, default=_now, nullable=False)

    image = relationship("Image", back_populates="likes")
    user = relationship("User")
