"""
Local progress store.

The device's copy of rooms, stats, settings, mascot and collection. UI code
mutates it synchronously and renders from it; observers (the cloud sync
engine among them) are told about every change.

Gamification arithmetic lives here as pure functions over UserStats so it
can be tested without a store.
"""

from datetime import date, datetime, timedelta
import logging
from pathlib import Path
from typing import Callable, List, NamedTuple, Optional, Tuple
import uuid

from pydantic import ValidationError

from schemas import (
    AppSettings,
    Badge,
    CleaningTask,
    CloudSnapshot,
    CollectedItem,
    CollectionStats,
    Mascot,
    PhotoCapture,
    Room,
    RoomAnalysis,
    UserProfile,
    UserStats,
)
from timestamps import utcnow

logger = logging.getLogger(__name__)

TASK_XP = 10
XP_PER_LEVEL = 100

BADGES: List[Badge] = [
    Badge(id="first-task", name="First Step", emoji="✨", type="tasks", requirement=1,
          description="Complete your first task"),
    Badge(id="tasks-10", name="Getting Started", emoji="🧹", type="tasks", requirement=10,
          description="Complete 10 tasks"),
    Badge(id="tasks-50", name="Tidy Habit", emoji="🧺", type="tasks", requirement=50,
          description="Complete 50 tasks"),
    Badge(id="tasks-100", name="Declutter Pro", emoji="🏆", type="tasks", requirement=100,
          description="Complete 100 tasks"),
    Badge(id="first-room", name="Room Rescuer", emoji="🏠", type="rooms", requirement=1,
          description="Finish every task in a room"),
    Badge(id="rooms-5", name="Home Hero", emoji="🏡", type="rooms", requirement=5,
          description="Finish 5 rooms"),
    Badge(id="streak-3", name="On a Roll", emoji="🔥", type="streak", requirement=3,
          description="Clean 3 days in a row"),
    Badge(id="streak-7", name="Week Warrior", emoji="📅", type="streak", requirement=7,
          description="Clean 7 days in a row"),
    Badge(id="streak-30", name="Unstoppable", emoji="💎", type="streak", requirement=30,
          description="Clean 30 days in a row"),
    Badge(id="time-60", name="Hour of Power", emoji="⏱️", type="time", requirement=60,
          description="Clean for 60 minutes in total"),
    Badge(id="time-300", name="Marathon", emoji="🏃", type="time", requirement=300,
          description="Clean for 300 minutes in total"),
    Badge(id="time-1000", name="Time Lord", emoji="⌛", type="time", requirement=1000,
          description="Clean for 1000 minutes in total"),
]


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


# ---------- Pure gamification helpers ----------

def level_for(xp: int) -> int:
    return xp // XP_PER_LEVEL + 1


def badge_counter(stats: UserStats, badge_type: str) -> int:
    if badge_type == "tasks":
        return stats.total_tasks_completed
    if badge_type == "rooms":
        return stats.total_rooms_cleaned
    if badge_type == "streak":
        return max(stats.current_streak, stats.longest_streak)
    if badge_type == "time":
        return stats.total_minutes_cleaned
    return 0


def unlock_badges(stats: UserStats, now: datetime, catalog: List[Badge] = BADGES) -> Tuple[UserStats, List[Badge]]:
    """Return stats with newly earned badges added, and those badges.

    Running it again with the same counters unlocks nothing.
    """
    have = {b.id for b in stats.badges}
    earned = [
        badge.model_copy(update={"unlocked_at": now})
        for badge in catalog
        if badge.id not in have and badge_counter(stats, badge.type) >= badge.requirement
    ]
    if not earned:
        return stats, []
    return stats.model_copy(update={"badges": stats.badges + earned}), earned


def record_activity_day(stats: UserStats, today: date) -> UserStats:
    """Streak bookkeeping for a completed task on ``today``."""
    last = stats.last_active_date
    if last == today:
        current = max(stats.current_streak, 1)
    elif last == today - timedelta(days=1):
        current = stats.current_streak + 1
    else:
        current = 1
    return stats.model_copy(update={
        "current_streak": current,
        "longest_streak": max(stats.longest_streak, current),
        "last_active_date": today,
    })


def evaluate_streak(stats: UserStats, today: date) -> UserStats:
    """Day-boundary check: a full day without completions breaks the streak."""
    last = stats.last_active_date
    if last is not None and last >= today - timedelta(days=1):
        return stats.model_copy(update={"longest_streak": max(stats.longest_streak, stats.current_streak)})
    return stats.model_copy(update={"current_streak": 0})


def room_progress(room: Room) -> int:
    if not room.tasks:
        return 0
    done = sum(1 for t in room.tasks if t.completed)
    return round(done * 100 / len(room.tasks))


# ---------- Store ----------

class StoreEvent(NamedTuple):
    kind: str  # profile | rooms | stats | settings | mascot | collection
    origin: str = "local"  # local | remote | restore
    room_id: Optional[str] = None
    deleted: bool = False
    activity: Optional[Tuple[str, dict]] = None


Listener = Callable[[StoreEvent], None]


class ProgressStore:
    """In-memory, observable state for one user."""

    def __init__(self, alerts=None, clock: Callable[[], datetime] = utcnow):
        self._alerts = alerts
        self._clock = clock
        self._listeners: List[Listener] = []
        self.profile: Optional[UserProfile] = None
        self.rooms: List[Room] = []
        self.stats = UserStats()
        self.settings = AppSettings()
        self.mascot: Optional[Mascot] = None
        self.collection: List[CollectedItem] = []
        self.collection_stats = CollectionStats()

    # ----- observers -----

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, origin: str = "local", **details) -> None:
        event = StoreEvent(kind, origin, **details)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener failed for %s", kind)

    def _alert(self, title: str, body: str, category: str) -> None:
        if self._alerts is not None and self.settings.notifications:
            self._alerts.fire(title, body, category)

    def _today(self) -> date:
        return self._clock().date()

    # ----- lookups -----

    def get_room(self, room_id: str) -> Optional[Room]:
        return next((r for r in self.rooms if r.id == room_id), None)

    def _find_task(self, room_id: str, task_id: str) -> Tuple[Optional[Room], Optional[CleaningTask]]:
        room = self.get_room(room_id)
        if room is None:
            return None, None
        return room, next((t for t in room.tasks if t.id == task_id), None)

    @property
    def level(self) -> int:
        return level_for(self.stats.xp)

    # ----- rooms -----

    def add_room(self, name: str, type: str = "other", emoji: str = "🏠", room_id: Optional[str] = None) -> Room:
        room = Room(id=room_id or _new_id(), name=name, type=type, emoji=emoji, created_at=self._clock())
        self.rooms.insert(0, room)
        self._emit("rooms", room_id=room.id, activity=("room_added", {"room_id": room.id, "name": name}))
        return room

    def update_room(self, room_id: str, **changes) -> Optional[Room]:
        room = self.get_room(room_id)
        if room is None:
            return None
        updated = Room.model_validate({**room.model_dump(), **changes, "id": room_id})
        self.rooms[self.rooms.index(room)] = updated
        self._emit("rooms", room_id=room_id)
        return updated

    def delete_room(self, room_id: str) -> Optional[Room]:
        room = self.get_room(room_id)
        if room is None:
            return None
        self.rooms.remove(room)
        self._emit("rooms", room_id=room_id, deleted=True)
        return room

    def add_photo_to_room(self, room_id: str, uri: str, photo_type: str = "before") -> Optional[PhotoCapture]:
        room = self.get_room(room_id)
        if room is None:
            return None
        photo = PhotoCapture(id=_new_id(), uri=uri, timestamp=self._clock(), type=photo_type)
        room.photos.append(photo)
        self._emit("rooms", room_id=room_id)
        return photo

    def apply_analysis(self, room_id: str, analysis: RoomAnalysis) -> Optional[Room]:
        """Replace the room's tasks with a fresh analysis result."""
        room = self.get_room(room_id)
        if room is None:
            return None
        room.tasks = [t.model_copy(deep=True) for t in analysis.tasks]
        room.mess_level = analysis.mess_level
        room.ai_summary = analysis.summary
        room.last_analyzed_at = self._clock()
        room.current_progress = room_progress(room)
        self._emit("rooms", room_id=room_id)
        return room

    # ----- tasks & stats -----

    def complete_task(self, room_id: str, task_id: str) -> bool:
        room, task = self._find_task(room_id, task_id)
        if task is None or task.completed:
            return False

        now = self._clock()
        task.completed = True
        task.completed_at = now
        previous_progress = room.current_progress
        room.current_progress = room_progress(room)

        stats = self.stats.model_copy(update={
            "total_tasks_completed": self.stats.total_tasks_completed + 1,
            "total_minutes_cleaned": self.stats.total_minutes_cleaned + task.estimated_minutes,
        })
        room_done = previous_progress < 100 and room.current_progress == 100
        if room_done:
            stats = stats.model_copy(update={"total_rooms_cleaned": stats.total_rooms_cleaned + 1})
        self.stats = record_activity_day(stats, now.date())

        self._emit("rooms", room_id=room_id, activity=("task_completed", {
            "room_id": room_id, "task_id": task_id, "minutes": task.estimated_minutes,
        }))
        if room_done:
            self._emit("rooms", room_id=room_id, activity=("room_completed", {"room_id": room_id}))
        self.award_xp(TASK_XP)
        return True

    def uncomplete_task(self, room_id: str, task_id: str) -> bool:
        """Mark a task open again. XP and counters are not taken back."""
        room, task = self._find_task(room_id, task_id)
        if task is None or not task.completed:
            return False
        task.completed = False
        task.completed_at = None
        room.current_progress = room_progress(room)
        self._emit("rooms", room_id=room_id)
        return True

    def toggle_task(self, room_id: str, task_id: str) -> bool:
        _, task = self._find_task(room_id, task_id)
        if task is None:
            return False
        if task.completed:
            return self.uncomplete_task(room_id, task_id)
        return self.complete_task(room_id, task_id)

    def toggle_subtask(self, room_id: str, task_id: str, subtask_id: str) -> bool:
        _, task = self._find_task(room_id, task_id)
        subtask = next((s for s in task.subtasks if s.id == subtask_id), None) if task else None
        if subtask is None:
            return False
        subtask.completed = not subtask.completed
        self._emit("rooms", room_id=room_id)
        return True

    def award_xp(self, amount: int) -> int:
        """Add xp, announce a level-up, re-check badges. Returns the new level."""
        if amount < 0:
            raise ValueError("xp only grows")
        before = level_for(self.stats.xp)
        self.stats = self.stats.model_copy(update={"xp": self.stats.xp + amount})
        after = level_for(self.stats.xp)
        if after > before:
            self._alert("Level up!", f"You reached level {after}", "achievement")
        self.evaluate_badges(emit=False)
        self._emit("stats")
        return after

    def evaluate_streak(self, today: Optional[date] = None) -> int:
        self.stats = evaluate_streak(self.stats, today or self._today())
        self.evaluate_badges(emit=False)
        self._emit("stats")
        return self.stats.current_streak

    def evaluate_badges(self, emit: bool = True) -> List[Badge]:
        self.stats, earned = unlock_badges(self.stats, self._clock())
        for badge in earned:
            self._alert(f"{badge.emoji} Badge unlocked", badge.name, "achievement")
        if earned and emit:
            self._emit("stats")
        return earned

    def reset_stats(self) -> None:
        self.stats = UserStats()
        self._emit("stats")

    # ----- settings, mascot, collection -----

    def set_profile(self, profile: UserProfile) -> None:
        self.profile = profile
        self._emit("profile")

    def update_settings(self, **changes) -> AppSettings:
        self.settings = AppSettings.model_validate({**self.settings.model_dump(), **changes})
        self._emit("settings")
        return self.settings

    def set_mascot(self, mascot: Mascot) -> None:
        self.mascot = mascot
        self._emit("mascot")

    def feed_mascot(self) -> Optional[Mascot]:
        if self.mascot is None:
            return None
        now = self._clock()
        self.mascot = self.mascot.model_copy(update={
            "hunger": 100,
            "happiness": min(100, self.mascot.happiness + 10),
            "mood": "happy",
            "last_fed": now,
            "last_interaction": now,
        })
        self._emit("mascot")
        return self.mascot

    def interact_with_mascot(self) -> Optional[Mascot]:
        if self.mascot is None:
            return None
        self.mascot = self.mascot.model_copy(update={
            "happiness": min(100, self.mascot.happiness + 5),
            "last_interaction": self._clock(),
        })
        self._emit("mascot")
        return self.mascot

    def collect_item(self, collectible_id: str, name: str = "", rarity: str = "common",
                     room_id: Optional[str] = None) -> CollectedItem:
        now = self._clock()
        item = CollectedItem(id=_new_id(), collectible_id=collectible_id, name=name,
                             rarity=rarity, collected_at=now, room_id=room_id)
        self.collection.append(item)
        counts = self.collection_stats.model_dump()
        counts[f"{rarity}_count"] += 1
        counts.update({
            "total_collected": len(self.collection),
            "unique_collected": len({i.collectible_id for i in self.collection}),
            "last_collected": now,
        })
        self.collection_stats = CollectionStats.model_validate(counts)
        self._emit("collection", activity=("collectible_found", {"collectible_id": collectible_id, "rarity": rarity}))
        return item

    # ----- reconciliation -----

    def replace_rooms(self, rooms: List[Room], origin: str = "remote") -> None:
        """Wholesale replacement; the incoming list wins."""
        self.rooms = list(rooms)
        self._emit("rooms", origin=origin)

    def apply_remote_snapshot(self, snapshot: CloudSnapshot) -> bool:
        """Merge a one-shot cloud load. Remote wins for every part it has.

        An empty remote account merges nothing and returns False.
        """
        if snapshot.is_empty():
            return False
        if snapshot.profile is not None:
            self.profile = snapshot.profile
            self._emit("profile", origin="remote")
        self.replace_rooms(snapshot.rooms)
        if snapshot.stats is not None:
            self.stats = snapshot.stats
            self._emit("stats", origin="remote")
        if snapshot.settings is not None:
            self.settings = snapshot.settings
            self._emit("settings", origin="remote")
        if snapshot.mascot is not None:
            self.mascot = snapshot.mascot
            self._emit("mascot", origin="remote")
        if snapshot.collection_stats is not None:
            self.collection = list(snapshot.collection)
            self.collection_stats = snapshot.collection_stats
            self._emit("collection", origin="remote")
        return True

    def snapshot(self) -> CloudSnapshot:
        return CloudSnapshot(
            profile=self.profile,
            rooms=self.rooms,
            stats=self.stats,
            settings=self.settings,
            mascot=self.mascot,
            collection=self.collection,
            collection_stats=self.collection_stats,
        ).model_copy(deep=True)

    def clear_all_data(self) -> None:
        self.profile = None
        self.rooms = []
        self.stats = UserStats()
        self.settings = AppSettings()
        self.mascot = None
        self.collection = []
        self.collection_stats = CollectionStats()
        for kind in ("profile", "rooms", "stats", "settings", "mascot", "collection"):
            self._emit(kind)

    # ----- device-local persistence -----

    def save(self, path) -> None:
        Path(path).write_text(self.snapshot().model_dump_json(), encoding="utf-8")

    def load(self, path) -> bool:
        """Restore state written by ``save``; False if there is none."""
        file = Path(path)
        if not file.exists():
            return False
        try:
            saved = CloudSnapshot.model_validate_json(file.read_text(encoding="utf-8"))
        except ValidationError:
            logger.warning("Ignoring unreadable local snapshot at %s", file)
            return False
        self.profile = saved.profile
        self.rooms = saved.rooms
        self.stats = saved.stats or UserStats()
        self.settings = saved.settings or AppSettings()
        self.mascot = saved.mascot
        self.collection = saved.collection
        self.collection_stats = saved.collection_stats or CollectionStats()
        for kind in ("profile", "rooms", "stats", "settings", "mascot", "collection"):
            self._emit(kind, origin="restore")
        return True
