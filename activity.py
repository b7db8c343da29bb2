"""
Activity log: append-only record of what a user did, read back for charts.
"""

from datetime import datetime, timedelta
import logging
from typing import Any, Dict, List, Optional, get_args
import uuid

from pydantic import ValidationError

from database import DocumentStore, StoreError
from documents import activity_from_document
from schemas import ActivityEntry, ActivityType, UserIdentity
from timestamps import SERVER_TIMESTAMP, to_date, to_server_value, utcnow

logger = logging.getLogger(__name__)

WEEKDAYS = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]
WEEKLY_SCAN_LIMIT = 1000


def new_activity_id(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:9]}"


def weekday_name(moment: datetime) -> str:
    # isoweekday: Mon=1 .. Sun=7
    return WEEKDAYS[moment.isoweekday() % 7]


class ActivityLog:
    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def _collection(user: UserIdentity) -> str:
        return f"users/{user.uid}/activities"

    async def log_activity(
        self,
        user: Optional[UserIdentity],
        type: str,
        data: Optional[Dict[str, Any]] = None,
        activity_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> bool:
        """Append one entry.

        ``activity_id`` makes a retried write idempotent; ``at`` keeps the
        original time of an action replayed from the offline queue.
        """
        if type not in get_args(ActivityType):
            raise ValueError(f"Unknown activity type: {type!r}")
        if user is None or not self.store.configured:
            return False
        activity_id = activity_id or new_activity_id()
        try:
            return await self.store.set(f"{self._collection(user)}/{activity_id}", {
                "type": type,
                "data": data or {},
                "timestamp": to_server_value(at) if at else SERVER_TIMESTAMP,
            })
        except StoreError:
            logger.warning("Could not log %s activity for %s", type, user.uid)
            return False

    async def get_recent_activities(self, user: Optional[UserIdentity], limit: int = 50) -> List[ActivityEntry]:
        if user is None:
            return []
        try:
            docs = await self.store.query(self._collection(user), order_by=("timestamp", "desc"), limit=limit)
        except StoreError:
            logger.warning("Could not load activities for %s", user.uid)
            return []
        entries = []
        for doc in docs:
            try:
                entries.append(activity_from_document(doc))
            except ValidationError:
                logger.warning("Skipping malformed activity %s", doc.get("id"))
        return entries

    async def get_weekly_activity_counts(
        self, user: Optional[UserIdentity], now: Optional[datetime] = None
    ) -> Dict[str, int]:
        """Activities per weekday over the last seven days."""
        if user is None or not self.store.configured:
            return {}
        now = now or utcnow()
        since = now - timedelta(days=7)
        try:
            docs = await self.store.query(
                self._collection(user), order_by=("timestamp", "desc"), limit=WEEKLY_SCAN_LIMIT
            )
        except StoreError:
            logger.warning("Could not load weekly activity for %s", user.uid)
            return {}

        counts = {day: 0 for day in WEEKDAYS}
        for doc in docs:
            moment = to_date(doc.get("timestamp"), optional=True)
            if moment is None or moment < since:
                continue
            counts[weekday_name(moment)] += 1
        return counts
