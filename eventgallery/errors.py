"""Typed outcomes raised by the EventGallery core.

Every error carries an HTTP-style ``status_code``, a short machine readable
``error`` name and a human ``reason``. The API layer renders them as JSON; the
core never catches them itself except where an integrity conflict is turned
into one of these.
"""

from __future__ import annotations

EVENT_NOT_FOUND = "Event not found"
IMAGE_NOT_FOUND = "Image not found"
COMMENT_NOT_FOUND = "Comment not found"
USER_NOT_FOUND = "User not found"
INVALID_INVITE_CODE = "Invalid invite code"
INVALID_INVITE_CODE_FORMAT = "Invalid invite code format"
NOT_A_MEMBER = "You are not a participant of this event"
NOT_LIKED = "You have not liked this image"
ALREADY_MEMBER = "You are already a participant of this event"
ALREADY_LIKED = "You have already liked this image"
EVENT_FULL = "Event has reached maximum participants"
CREATOR_CANNOT_LEAVE = "Event creator cannot leave the event"
NO_EVENT_ACCESS = "You do not have access to this event"
NO_IMAGE_ACCESS = "You do not have access to this image"
MUST_BE_PARTICIPANT = "You must be a participant to upload images"
AUTHENTICATION_REQUIRED = "Authentication required"


class GalleryError(Exception):
    """Base class for terminal, typed outcomes."""

    status_code = 500
    error = "GalleryError"
    default_reason = "Something went wrong"

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason or self.default_reason
        super().__init__(self.reason)

    def as_dict(self) -> dict:
        return {
            "error": self.error,
            "detail": self.reason,
            "status_code": self.status_code,
        }


class NotFound(GalleryError):
    status_code = 404
    error = "NotFound"
    default_reason = "Not found"


class Conflict(GalleryError):
    status_code = 409
    error = "Conflict"
    default_reason = "Conflict"


class Forbidden(GalleryError):
    status_code = 403
    error = "Forbidden"
    default_reason = "Forbidden"


class CapacityExceeded(GalleryError):
    status_code = 409
    error = "CapacityExceeded"
    default_reason = EVENT_FULL


class ValidationError(GalleryError):
    status_code = 400
    error = "ValidationError"
    default_reason = "Invalid input"


class DependencyFailure(GalleryError):
    """A collaborator (blob storage) failed after authorization succeeded."""

    status_code = 502
    error = "DependencyFailure"
    default_reason = "A storage dependency failed"
