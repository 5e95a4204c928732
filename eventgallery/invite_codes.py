"""Invite code generation and collision-free issuance."""

from __future__ import annotations

import logging
import re
import secrets
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

INVITE_CODE_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
INVITE_CODE_LENGTH = 8
INVITE_CODE_CONSTRAINT = "uq_events_invite_code"

_invite_code_pattern = re.compile(rf"^[A-Z0-9]{{{INVITE_CODE_LENGTH}}}$")

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")


def generate() -> str:
    """Return a random code drawn uniformly from ``[A-Z0-9]``."""
    return "".join(
        secrets.choice(INVITE_CODE_CHARS) for _ in range(INVITE_CODE_LENGTH)
    )


def is_well_formed(code: str | None) -> bool:
    """Return ``True`` iff *code* is exactly eight ``[A-Z0-9]`` characters."""
    if not code or not isinstance(code, str):
        return False
    return bool(_invite_code_pattern.match(code))


def is_invite_code_conflict(exc: IntegrityError) -> bool:
    """Tell invite-code unique violations apart from other integrity errors."""
    message = str(getattr(exc, "orig", exc)).lower()
    return INVITE_CODE_CONSTRAINT in message or "events.invite_code" in message


class InviteCodeIssuer:
    """Issue invite codes whose uniqueness is enforced by the database.

    ``issue_unique`` never looks a candidate up before using it. It hands the
    candidate to ``reserve`` inside a savepoint and treats a unique-constraint
    violation on the invite code as the signal to draw again. The loop has no
    attempt cap: with 36**8 candidates a second draw is already rare.

    ``generator`` can be replaced to force collisions in tests.
    """

    def __init__(self, generator: Callable[[], str] = generate) -> None:
        self.generator = generator
        self.collisions = 0

    def issue_unique(self, session: Session, reserve: Callable[[str], T]) -> T:
        """Call ``reserve(code)`` with fresh candidates until one sticks.

        ``reserve`` must add and flush the row that carries the code so the
        constraint is checked inside the savepoint.
        """
        while True:
            code = self.generator()
            try:
                with session.begin_nested():
                    return reserve(code)
            except IntegrityError as exc:
                if not is_invite_code_conflict(exc):
                    raise
                self.collisions += 1
                logger.warning(
                    "Invite code collision on %s (attempt %d); drawing a new code",
                    code,
                    self.collisions,
                )


issuer = InviteCodeIssuer()
