"""
Invite codes for challenges, body-doubling sessions and shared rooms.

Codes are six characters from a 32-symbol alphabet without the look-alikes
0/O and 1/I. Uniqueness is checked against the active documents of the
same kind when a code is issued; it is best-effort, not transactional.
"""

from datetime import datetime, timedelta
import logging
import secrets
from typing import Optional

from database import DocumentStore
from timestamps import to_date, utcnow

logger = logging.getLogger(__name__)

ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6
MAX_ISSUE_ATTEMPTS = 10

# kind -> (collection, statuses that count as active)
KINDS = {
    "challenge": ("challenges", ("pending", "in_progress")),
    "session": ("bodyDoublingSessions", ("scheduled", "active")),
    "shared_room": ("sharedRooms", None),
}


def generate_invite_code() -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(CODE_LENGTH))


def normalize_code(code: str) -> Optional[str]:
    """Upper-case and strip a user-typed code; None if it cannot be valid."""
    if not code:
        return None
    code = code.strip().upper()
    if len(code) != CODE_LENGTH or any(c not in ALPHABET for c in code):
        return None
    return code


def _is_active(kind: str, doc: dict) -> bool:
    _, statuses = KINDS[kind]
    return statuses is None or doc.get("status") in statuses


async def issue_invite_code(store: DocumentStore, kind: str) -> str:
    """A fresh code not used by any active document of ``kind``."""
    collection, _ = KINDS[kind]
    code = generate_invite_code()
    for _ in range(MAX_ISSUE_ATTEMPTS):
        taken = await store.query(collection, where=[("invite_code", "==", code)])
        if not any(_is_active(kind, d) for d in taken):
            return code
        logger.info("Invite code collision in %s, drawing again", collection)
        code = generate_invite_code()
    logger.warning("No free invite code in %s after %d draws; issuing %s anyway", collection, MAX_ISSUE_ATTEMPTS, code)
    return code


async def resolve_invite_code(store: DocumentStore, kind: str, code: str) -> Optional[dict]:
    """The document carrying ``code``, preferring active ones; None if unknown."""
    code = normalize_code(code)
    if code is None:
        return None
    collection, _ = KINDS[kind]
    matches = await store.query(collection, where=[("invite_code", "==", code)])
    if not matches:
        return None
    active = [d for d in matches if _is_active(kind, d)]
    return (active or matches)[0]


def is_joinable(kind: str, doc: dict, now: Optional[datetime] = None) -> bool:
    """Whether a resolved document can still be joined.

    Challenges past their end date and sessions that ended (or ran past
    their duration) count as not found.
    """
    now = now or utcnow()
    if kind == "challenge":
        if doc.get("status") not in ("pending", "in_progress"):
            return False
        return now <= to_date(doc.get("end_date"))
    if kind == "session":
        if doc.get("status") == "ended":
            return False
        started = to_date(doc.get("started_at"), optional=True)
        if doc.get("status") == "active" and started is not None:
            return now <= started + timedelta(minutes=doc.get("duration", 0))
        return True
    return True
