"""
Social features: challenges, body-doubling sessions, room sharing and
connections.

Challenges and sessions embed their participant lists. Every change to
such a list is an optimistic transaction on the parent document
(``DocumentStore.transact``): the mutation is re-run against fresh data if
another client wrote in between. That keeps one entry per user, never loses
a concurrent progress update and checks session capacity against the very
snapshot that gets written.
"""

from datetime import datetime, timedelta
import functools
import logging
from typing import List, Optional

from pydantic import ValidationError

from activity import new_activity_id
from database import DocumentStore, StoreError
from documents import challenge_from_document, encode, session_from_document, shared_room_from_document
from invites import is_joinable, issue_invite_code, resolve_invite_code
from schemas import (
    BodyDoublingSession,
    Challenge,
    ChallengeParticipant,
    Connection,
    Room,
    SessionParticipant,
    SharedRoom,
    UserIdentity,
)
from timestamps import SERVER_TIMESTAMP, to_date, utcnow

logger = logging.getLogger(__name__)

CHALLENGES = "challenges"
SESSIONS = "bodyDoublingSessions"
SHARED_ROOMS = "sharedRooms"
CONNECTIONS = "connections"

ACTIVE_CHALLENGE = ("pending", "in_progress")
CHALLENGE_TRANSITIONS = {
    "pending": {"in_progress", "expired"},
    "in_progress": {"completed", "failed", "expired"},
}


def can_transition(current: str, new: str) -> bool:
    return new in CHALLENGE_TRANSITIONS.get(current, set())


def connection_id(a: str, b: str) -> str:
    return "_".join(sorted([a, b]))


def _degrades_to(default, needs_user: bool = True):
    """Unconfigured store, no user or a store failure -> ``default``."""

    def wrap(func):
        @functools.wraps(func)
        async def inner(self, *args, **kwargs):
            fallback = list(default) if isinstance(default, list) else default
            if not self.store.configured:
                return fallback
            if needs_user and kwargs.get("user", args[0] if args else None) is None:
                return fallback
            try:
                return await func(self, *args, **kwargs)
            except StoreError as e:
                logger.error("%s failed (%s): %s", func.__name__, e.kind, e)
                return fallback

        return inner

    return wrap


def _find(participants: List[dict], uid: str) -> Optional[dict]:
    return next((p for p in participants if p.get("user_id") == uid), None)


class SocialCoordinator:
    def __init__(self, store: DocumentStore, clock=utcnow):
        self.store = store
        self._clock = clock

    # =====================
    # CHALLENGES
    # =====================

    @_degrades_to(None)
    async def create_challenge(
        self,
        user: UserIdentity,
        type: str,
        title: str,
        description: str,
        target: int,
        duration_days: int,
    ) -> Optional[Challenge]:
        if target < 1 or duration_days < 1:
            raise ValueError("target and duration_days must be at least 1")
        now = self._clock()
        challenge = Challenge(
            id=new_activity_id(now),
            creator_id=user.uid,
            creator_name=user.name,
            type=type,
            title=title,
            description=description,
            target=target,
            start_date=now,
            end_date=now + timedelta(days=duration_days),
            status="in_progress",
            created_at=now,
            invite_code=await issue_invite_code(self.store, "challenge"),
            participants=[ChallengeParticipant(user_id=user.uid, display_name=user.name, joined=now)],
        )
        doc = encode(challenge)
        doc["participant_ids"] = [user.uid]
        await self.store.set(f"{CHALLENGES}/{challenge.id}", doc)
        return challenge

    @_degrades_to(None)
    async def join_challenge(self, user: UserIdentity, invite_code: str) -> Optional[Challenge]:
        """Join by code. None for unknown or expired codes and existing members."""
        now = self._clock()
        found = await resolve_invite_code(self.store, "challenge", invite_code)
        if found is None or not is_joinable("challenge", found, now):
            return None

        def add_me(current):
            if current is None or not is_joinable("challenge", current, now):
                return None
            participants = current.setdefault("participants", [])
            if _find(participants, user.uid) is not None:
                return None
            participants.append(encode(ChallengeParticipant(user_id=user.uid, display_name=user.name, joined=now)))
            current["participant_ids"] = current.get("participant_ids", []) + [user.uid]
            return current

        written = await self.store.transact(f"{CHALLENGES}/{found['id']}", add_me)
        if written is None:
            return None
        logger.info("%s joined challenge %s", user.uid, found["id"])
        return challenge_from_document(written)

    @_degrades_to(None)
    async def update_challenge_progress(self, user: UserIdentity, challenge_id: str, progress: int) -> Optional[Challenge]:
        """Raise the caller's progress. Lower values leave it unchanged."""
        if progress < 0:
            raise ValueError("progress cannot be negative")
        now = self._clock()
        unchanged = {}

        def bump(current):
            if current is None or current.get("status") != "in_progress":
                return None
            if now > to_date(current.get("end_date")):
                return None
            mine = _find(current.get("participants", []), user.uid)
            if mine is None:
                return None
            new_progress = max(mine.get("progress", 0), progress)
            if new_progress == mine.get("progress", 0):
                unchanged["doc"] = current
                return None
            mine["progress"] = new_progress
            if new_progress >= current["target"] and not mine.get("completed"):
                mine["completed"] = True
                mine["completed_at"] = encode(now)
            return current

        written = await self.store.transact(f"{CHALLENGES}/{challenge_id}", bump)
        if written is None:
            return challenge_from_document(unchanged["doc"]) if "doc" in unchanged else None
        return challenge_from_document(written)

    @_degrades_to(None, needs_user=False)
    async def close_challenge(self, challenge_id: str) -> Optional[Challenge]:
        """Settle a challenge whose window has passed.

        completed if anyone reached the target, failed if someone made
        progress, expired otherwise (and always for a never-started one).
        """
        now = self._clock()

        def settle(current):
            if current is None or current.get("status") not in ACTIVE_CHALLENGE:
                return None
            if now <= to_date(current.get("end_date")):
                return None
            participants = current.get("participants", [])
            if current["status"] == "pending":
                final = "expired"
            elif any(p.get("completed") for p in participants):
                final = "completed"
            elif any(p.get("progress", 0) > 0 for p in participants):
                final = "failed"
            else:
                final = "expired"
            if not can_transition(current["status"], final):
                return None
            current["status"] = final
            return current

        written = await self.store.transact(f"{CHALLENGES}/{challenge_id}", settle)
        return challenge_from_document(written) if written else None

    @_degrades_to(None, needs_user=False)
    async def get_challenge(self, challenge_id: str) -> Optional[Challenge]:
        doc = await self.store.get(f"{CHALLENGES}/{challenge_id}")
        return challenge_from_document(doc) if doc else None

    @_degrades_to([])
    async def get_my_challenges(self, user: UserIdentity) -> List[Challenge]:
        docs = await self.store.query(CHALLENGES, where=[("participant_ids", "array_contains", user.uid)])
        challenges = []
        for doc in docs:
            try:
                challenges.append(challenge_from_document(doc))
            except ValidationError:
                logger.warning("Skipping malformed challenge %s", doc.get("id"))
        return sorted(challenges, key=lambda c: c.created_at, reverse=True)

    # =====================
    # BODY DOUBLING
    # =====================

    @_degrades_to(None)
    async def create_session(
        self,
        user: UserIdentity,
        title: str,
        duration: int,
        max_participants: int = 10,
        description: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> Optional[BodyDoublingSession]:
        now = self._clock()
        session = BodyDoublingSession(
            id=new_activity_id(now),
            host_id=user.uid,
            host_name=user.name,
            title=title,
            description=description,
            scheduled_at=scheduled_at,
            started_at=None if scheduled_at else now,
            duration=duration,
            max_participants=max_participants,
            participants=[SessionParticipant(user_id=user.uid, display_name=user.name, joined_at=now)],
            status="scheduled" if scheduled_at else "active",
            invite_code=await issue_invite_code(self.store, "session"),
            created_at=now,
        )
        doc = encode(session)
        doc["participant_ids"] = [user.uid]
        await self.store.set(f"{SESSIONS}/{session.id}", doc)
        return session

    @_degrades_to(None)
    async def join_session(self, user: UserIdentity, invite_code: str) -> Optional[BodyDoublingSession]:
        """Join by code.

        Returns the session unchanged if the caller is already active in it,
        None if the code is unknown, the session is over or it is full.
        """
        now = self._clock()
        found = await resolve_invite_code(self.store, "session", invite_code)
        if found is None or not is_joinable("session", found, now):
            return None
        already = {}

        def add_me(current):
            if current is None or not is_joinable("session", current, now):
                return None
            participants = current.setdefault("participants", [])
            mine = _find(participants, user.uid)
            if mine is not None and mine.get("is_active"):
                already["doc"] = current
                return None
            active = sum(1 for p in participants if p.get("is_active"))
            if active >= current.get("max_participants", 0):
                return None
            if mine is not None:
                mine.update({"is_active": True, "joined_at": encode(now)})
            else:
                participants.append(encode(SessionParticipant(user_id=user.uid, display_name=user.name, joined_at=now)))
                current["participant_ids"] = current.get("participant_ids", []) + [user.uid]
            return current

        written = await self.store.transact(f"{SESSIONS}/{found['id']}", add_me)
        if written is None:
            if "doc" in already:
                return session_from_document(already["doc"])
            logger.info("%s could not join session %s", user.uid, found["id"])
            return None
        return session_from_document(written)

    @_degrades_to(None)
    async def start_session(self, user: UserIdentity, session_id: str) -> Optional[BodyDoublingSession]:
        now = self._clock()

        def start(current):
            if current is None or current.get("host_id") != user.uid or current.get("status") != "scheduled":
                return None
            current.update({"status": "active", "started_at": encode(now)})
            return current

        written = await self.store.transact(f"{SESSIONS}/{session_id}", start)
        return session_from_document(written) if written else None

    @_degrades_to(False)
    async def leave_session(self, user: UserIdentity, session_id: str) -> bool:
        def leave(current):
            mine = _find(current.get("participants", []), user.uid) if current else None
            if mine is None or not mine.get("is_active"):
                return None
            mine["is_active"] = False
            return current

        return await self.store.transact(f"{SESSIONS}/{session_id}", leave) is not None

    @_degrades_to(False)
    async def end_session(self, user: UserIdentity, session_id: str) -> bool:
        """Only the host can end a session."""

        def end(current):
            if current is None or current.get("host_id") != user.uid or current.get("status") == "ended":
                return None
            current.update({"status": "ended", "ended_at": SERVER_TIMESTAMP})
            return current

        return await self.store.transact(f"{SESSIONS}/{session_id}", end) is not None

    @_degrades_to([], needs_user=False)
    async def get_active_sessions(self, limit: int = 20) -> List[BodyDoublingSession]:
        docs = await self.store.query(
            SESSIONS,
            where=[("status", "in", ["scheduled", "active"])],
            order_by=("created_at", "desc"),
            limit=limit,
        )
        sessions = []
        for doc in docs:
            try:
                sessions.append(session_from_document(doc))
            except ValidationError:
                logger.warning("Skipping malformed session %s", doc.get("id"))
        return sessions

    @_degrades_to(None, needs_user=False)
    async def get_session(self, session_id: str) -> Optional[BodyDoublingSession]:
        doc = await self.store.get(f"{SESSIONS}/{session_id}")
        return session_from_document(doc) if doc else None

    # =====================
    # ROOM SHARING
    # =====================

    @_degrades_to(None)
    async def share_room(self, user: UserIdentity, room: Room, is_public: bool = False) -> Optional[SharedRoom]:
        now = self._clock()
        shared = SharedRoom(
            id=new_activity_id(now),
            room_id=room.id,
            owner_id=user.uid,
            owner_name=user.name,
            room_name=room.name,
            room_emoji=room.emoji,
            room_type=room.type,
            shared_at=now,
            invite_code=await issue_invite_code(self.store, "shared_room"),
            is_public=is_public,
        )
        await self.store.set(f"{SHARED_ROOMS}/{shared.id}", encode(shared))
        return shared

    @_degrades_to(None)
    async def join_shared_room(self, user: UserIdentity, invite_code: str) -> Optional[SharedRoom]:
        found = await resolve_invite_code(self.store, "shared_room", invite_code)
        if found is None:
            return None
        if found.get("owner_id") == user.uid or user.uid in found.get("shared_with", []):
            return shared_room_from_document(found)

        def add_viewer(current):
            if current is None or user.uid in current.get("shared_with", []):
                return None
            current["shared_with"] = current.get("shared_with", []) + [user.uid]
            return current

        written = await self.store.transact(f"{SHARED_ROOMS}/{found['id']}", add_viewer)
        if written is None:
            # Lost a race against our own other device; the viewer is in.
            doc = await self.store.get(f"{SHARED_ROOMS}/{found['id']}")
            return shared_room_from_document(doc) if doc else None
        return shared_room_from_document(written)

    @_degrades_to([])
    async def get_shared_with_me(self, user: UserIdentity) -> List[SharedRoom]:
        docs = await self.store.query(SHARED_ROOMS, where=[("shared_with", "array_contains", user.uid)])
        return [shared_room_from_document(d) for d in docs]

    # =====================
    # CONNECTIONS
    # =====================

    @_degrades_to(False)
    async def add_connection(self, user: UserIdentity, target_user_id: str) -> bool:
        if not target_user_id or target_user_id == user.uid:
            return False
        return await self.store.set(f"{CONNECTIONS}/{connection_id(user.uid, target_user_id)}", {
            "users": [user.uid, target_user_id],
            "created_at": SERVER_TIMESTAMP,
            "initiated_by": user.uid,
        })

    @_degrades_to([])
    async def get_connections(self, user: UserIdentity) -> List[Connection]:
        docs = await self.store.query(CONNECTIONS, where=[("users", "array_contains", user.uid)])
        mine = await self.get_my_challenges(user)
        connections = []
        for doc in docs:
            other = next((uid for uid in doc.get("users", []) if uid != user.uid), None)
            if other is None:
                continue
            profile = await self.store.get(f"users/{other}") or {}
            connections.append(Connection(
                user_id=other,
                display_name=profile.get("name") or "Anonymous",
                avatar_url=profile.get("avatar"),
                added_at=to_date(doc.get("created_at")),
                mutual_challenges=sum(1 for c in mine if any(p.user_id == other for p in c.participants)),
            ))
        return connections

    @_degrades_to(False)
    async def remove_connection(self, user: UserIdentity, target_user_id: str) -> bool:
        return await self.store.delete(f"{CONNECTIONS}/{connection_id(user.uid, target_user_id)}")
