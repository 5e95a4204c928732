"""Read, engage and contribute predicates for event-scoped resources.

Every rule is the disjunction of named grants:

* ``public``  - the event is not private;
* ``creator`` - the subject created the event;
* ``member``  - the subject has a membership row for the event.

``READ_GRANTS`` and ``CONTRIBUTE_GRANTS`` list which grants open each
capability. :mod:`eventgallery.access` renders the very same grant names as SQL
clauses, so listings and single-object checks cannot drift apart.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable


class Capability(str, enum.Enum):
    READ = "read"
    ENGAGE = "engage"
    CONTRIBUTE = "contribute"


@dataclass(frozen=True)
class Subject:
    """The caller: an identified user or anonymous (``user_id is None``)."""

    user_id: str | None = None

    @property
    def is_identified(self) -> bool:
        return self.user_id is not None

    @classmethod
    def of(cls, user_id: str | None) -> Subject:
        return cls(user_id=user_id) if user_id else ANONYMOUS


ANONYMOUS = Subject()


@dataclass(frozen=True)
class EventSnapshot:
    """What the predicates need to know about one event for one subject."""

    creator_id: str
    is_private: bool
    is_member: bool


def _public_grant(subject: Subject, snapshot: EventSnapshot) -> bool:
    return not snapshot.is_private


def _creator_grant(subject: Subject, snapshot: EventSnapshot) -> bool:
    return subject.is_identified and subject.user_id == snapshot.creator_id


def _member_grant(subject: Subject, snapshot: EventSnapshot) -> bool:
    return subject.is_identified and snapshot.is_member


GRANTS: dict[str, Callable[[Subject, EventSnapshot], bool]] = {
    "public": _public_grant,
    "creator": _creator_grant,
    "member": _member_grant,
}

READ_GRANTS = ("public", "creator", "member")
CONTRIBUTE_GRANTS = ("creator", "member")


def _granted(grants: tuple[str, ...], subject: Subject, snapshot: EventSnapshot) -> bool:
    return any(GRANTS[name](subject, snapshot) for name in grants)


def is_participant(subject: Subject, snapshot: EventSnapshot) -> bool:
    """Creator or member. Creator status never depends on the membership row."""
    return _granted(CONTRIBUTE_GRANTS, subject, snapshot)


def can_read(subject: Subject, snapshot: EventSnapshot) -> bool:
    return _granted(READ_GRANTS, subject, snapshot)


def can_engage(subject: Subject, snapshot: EventSnapshot) -> bool:
    """Same gate as reading; a like or comment also needs an author."""
    return subject.is_identified and can_read(subject, snapshot)


def can_contribute(subject: Subject, snapshot: EventSnapshot) -> bool:
    """Uploads need participation on public and private events alike."""
    return _granted(CONTRIBUTE_GRANTS, subject, snapshot)


PREDICATES: dict[Capability, Callable[[Subject, EventSnapshot], bool]] = {
    Capability.READ: can_read,
    Capability.ENGAGE: can_engage,
    Capability.CONTRIBUTE: can_contribute,
}


def allows(capability: Capability, subject: Subject, snapshot: EventSnapshot) -> bool:
    return PREDICATES[capability](subject, snapshot)
