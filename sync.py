"""
Cloud sync engine.

Moves one user's progress between the local ProgressStore and the document
store:

- one-shot: ``load_all_data_from_cloud`` on sign-in (parallel loaders) and
  ``sync_all_data_to_cloud`` on explicit save (profile in a batch, the rest
  as independent parallel writes; a partial failure is reported, not fatal);
- live: ``subscribe_to_rooms`` re-delivers the whole room list on every
  remote change;
- queued: local mutations are queued per document (latest wins) and pushed
  when online, with a small retry budget.

Conflicts are resolved last-writer-wins per document. Two devices editing
different fields of the same room will lose one of the edits.
"""

import asyncio
from datetime import datetime
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
import uuid

from pydantic import BaseModel, Field, ValidationError

from activity import ActivityLog, new_activity_id
from database import DocumentStore, StoreError, Unsubscribe, WriteBatch
from documents import (
    collection_from_document,
    collection_stats_from_document,
    encode,
    mascot_from_document,
    profile_from_document,
    room_from_document,
    settings_from_document,
    stats_from_document,
    to_document,
)
from progress import ProgressStore, StoreEvent
from schemas import (
    AppSettings,
    CloudSnapshot,
    CollectedItem,
    CollectionStats,
    Mascot,
    Room,
    UserIdentity,
    UserProfile,
    UserStats,
)
from timestamps import SERVER_TIMESTAMP, to_date, utcnow

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
SYNC_DEBOUNCE_SECONDS = 2.0


class SyncQueueItem(BaseModel):
    id: str
    kind: str
    key: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    retries: int = 0


class SyncState(BaseModel):
    """What the engine keeps on disk between app launches."""
    queue: List[SyncQueueItem] = Field(default_factory=list)
    last_synced: Optional[datetime] = None


class CloudSyncEngine:
    """Sync for one signed-in user.

    ``photos`` is the photo-storage collaborator; when given, its
    ``delete_room_photos(uid, room_id)`` coroutine runs after a room is
    deleted.
    """

    def __init__(
        self,
        store: DocumentStore,
        user: Optional[UserIdentity],
        activity_log: Optional[ActivityLog] = None,
        photos=None,
        debounce: float = SYNC_DEBOUNCE_SECONDS,
    ):
        self.store = store
        self.user = user
        self.activity_log = activity_log or ActivityLog(store)
        self.photos = photos
        self.debounce = debounce
        self.status = "idle"  # idle | syncing | synced | error | offline
        self.last_synced: Optional[datetime] = None
        self.online = True
        self._queue: List[SyncQueueItem] = []
        self._flushing = False
        self._flush_handle = None
        self._flush_task: Optional[asyncio.Task] = None
        self._progress: Optional[ProgressStore] = None
        self._detach: Optional[Callable[[], None]] = None

    @property
    def enabled(self) -> bool:
        return self.user is not None and self.store.configured

    @property
    def pending_changes(self) -> int:
        return len(self._queue)

    @property
    def queue(self) -> List[SyncQueueItem]:
        return list(self._queue)

    # ---------- paths ----------

    def _user_path(self) -> str:
        return f"users/{self.user.uid}"

    def _rooms_path(self) -> str:
        return f"{self._user_path()}/rooms"

    def _data_path(self, name: str) -> str:
        return f"{self._user_path()}/data/{name}"

    # ---------- fetchers (raise StoreError) ----------

    async def _fetch_profile(self) -> Optional[UserProfile]:
        doc = await self.store.get(self._user_path())
        if doc is None:
            return None
        try:
            return profile_from_document(doc, self.user.uid)
        except ValidationError:
            logger.warning("Malformed profile for %s", self.user.uid)
            return None

    def _decode_rooms(self, docs: List[dict]) -> List[Room]:
        rooms = []
        for doc in docs:
            try:
                rooms.append(room_from_document(doc))
            except ValidationError:
                logger.warning("Skipping malformed room %s", doc.get("id"))
        return rooms

    async def _fetch_rooms(self) -> List[Room]:
        docs = await self.store.query(self._rooms_path(), order_by=("created_at", "desc"))
        return self._decode_rooms(docs)

    async def _fetch_data(self, name: str, decode):
        doc = await self.store.get(self._data_path(name))
        if doc is None:
            return None
        try:
            return decode(doc)
        except ValidationError:
            logger.warning("Malformed %s document for %s", name, self.user.uid)
            return None

    async def _fetch_collection(self) -> Tuple[List[CollectedItem], Optional[CollectionStats]]:
        items, stats = await asyncio.gather(
            self._fetch_data("collection", collection_from_document),
            self._fetch_data("collectionStats", collection_stats_from_document),
        )
        return items or [], stats

    # ---------- per-entity load ----------

    async def _load(self, what: str, fetch, default=None):
        if not self.enabled:
            return default
        try:
            return await fetch()
        except StoreError:
            logger.error("Error loading %s for %s", what, self.user.uid)
            return default

    async def load_user_profile(self) -> Optional[UserProfile]:
        return await self._load("profile", self._fetch_profile)

    async def load_all_rooms(self) -> List[Room]:
        return await self._load("rooms", self._fetch_rooms, [])

    async def load_user_stats(self) -> Optional[UserStats]:
        return await self._load("stats", lambda: self._fetch_data("stats", stats_from_document))

    async def load_app_settings(self) -> Optional[AppSettings]:
        return await self._load("settings", lambda: self._fetch_data("settings", settings_from_document))

    async def load_mascot(self) -> Optional[Mascot]:
        return await self._load("mascot", lambda: self._fetch_data("mascot", mascot_from_document))

    async def load_collection(self) -> Optional[Tuple[List[CollectedItem], CollectionStats]]:
        loaded = await self._load("collection", self._fetch_collection)
        if loaded is None:
            return None
        items, stats = loaded
        return items, stats or CollectionStats()

    # ---------- per-entity save ----------

    async def _write(self, what: str, op) -> bool:
        try:
            return await op
        except StoreError:
            logger.error("Error saving %s for %s", what, self.user.uid)
            return False

    def _profile_document(self, profile: UserProfile) -> dict:
        return to_document(profile, uid=self.user.uid, email=self.user.email)

    def _room_document(self, room: Room) -> dict:
        return to_document(room, user_id=self.user.uid)

    async def save_user_profile(self, profile: UserProfile) -> bool:
        if not self.enabled:
            return False
        return await self._write("profile", self.store.set(self._user_path(), self._profile_document(profile)))

    async def save_room(self, room: Room) -> bool:
        if not self.enabled:
            return False
        return await self._write("room", self.store.set(f"{self._rooms_path()}/{room.id}", self._room_document(room)))

    async def save_all_rooms(self, rooms: List[Room]) -> bool:
        if not self.enabled:
            return False
        batch = WriteBatch()
        for room in rooms:
            batch.set(f"{self._rooms_path()}/{room.id}", self._room_document(room))
        return await self._write("rooms", self.store.batch(batch))

    async def delete_room(self, room_id: str) -> bool:
        if not self.enabled:
            return False
        deleted = await self._write("room deletion", self.store.delete(f"{self._rooms_path()}/{room_id}"))
        if deleted and self.photos is not None:
            try:
                await self.photos.delete_room_photos(self.user.uid, room_id)
            except Exception:
                logger.exception("Could not delete photos of room %s", room_id)
        return deleted

    async def save_user_stats(self, stats: UserStats) -> bool:
        if not self.enabled:
            return False
        return await self._write("stats", self.store.set(self._data_path("stats"), to_document(stats)))

    async def save_app_settings(self, settings: AppSettings) -> bool:
        if not self.enabled:
            return False
        return await self._write("settings", self.store.set(self._data_path("settings"), to_document(settings)))

    async def save_mascot(self, mascot: Mascot) -> bool:
        if not self.enabled:
            return False
        return await self._write("mascot", self.store.set(self._data_path("mascot"), to_document(mascot)))

    async def save_collection(self, items: List[CollectedItem], stats: CollectionStats) -> bool:
        if not self.enabled:
            return False
        batch = WriteBatch()
        batch.set(self._data_path("collection"), {"items": encode(items), "updated_at": SERVER_TIMESTAMP})
        batch.set(self._data_path("collectionStats"), to_document(stats))
        return await self._write("collection", self.store.batch(batch))

    # ---------- one-shot full sync ----------

    async def sync_all_data_to_cloud(self, snapshot: CloudSnapshot) -> bool:
        """Push everything. False if any part failed; the call can be retried."""
        if not self.enabled:
            return False
        if snapshot.profile is not None:
            batch = WriteBatch().set(self._user_path(), self._profile_document(snapshot.profile))
            if not await self._write("profile", self.store.batch(batch)):
                return False

        async def done():
            return True

        results = await asyncio.gather(
            self.save_all_rooms(snapshot.rooms),
            self.save_user_stats(snapshot.stats) if snapshot.stats else done(),
            self.save_app_settings(snapshot.settings) if snapshot.settings else done(),
            self.save_mascot(snapshot.mascot) if snapshot.mascot else done(),
            self.save_collection(snapshot.collection, snapshot.collection_stats or CollectionStats()),
        )
        if not all(results):
            logger.warning("Partial sync for %s: %s", self.user.uid, results)
            return False
        return True

    async def load_all_data_from_cloud(self) -> Optional[CloudSnapshot]:
        """Pull everything in parallel. None if any loader failed."""
        if not self.enabled:
            return None
        try:
            profile, rooms, stats, settings, mascot, (items, collection_stats) = await asyncio.gather(
                self._fetch_profile(),
                self._fetch_rooms(),
                self._fetch_data("stats", stats_from_document),
                self._fetch_data("settings", settings_from_document),
                self._fetch_data("mascot", mascot_from_document),
                self._fetch_collection(),
            )
        except StoreError:
            logger.error("Error loading all data from cloud for %s", self.user.uid)
            return None
        return CloudSnapshot(
            profile=profile,
            rooms=rooms,
            stats=stats,
            settings=settings,
            mascot=mascot,
            collection=items,
            collection_stats=collection_stats,
        )

    # ---------- live ----------

    async def subscribe_to_rooms(self, callback: Callable[[List[Room]], None]) -> Optional[Unsubscribe]:
        if not self.enabled:
            return None

        def deliver(docs: List[dict]) -> None:
            callback(self._decode_rooms(docs))

        try:
            return await self.store.subscribe(self._rooms_path(), deliver, order_by=("created_at", "desc"))
        except StoreError:
            logger.error("Could not subscribe to rooms for %s", self.user.uid)
            return None

    async def follow_rooms(self, progress: ProgressStore) -> Optional[Unsubscribe]:
        """Keep ``progress.rooms`` equal to the remote room list."""
        return await self.subscribe_to_rooms(lambda rooms: progress.replace_rooms(rooms, origin="remote"))

    # ---------- local store integration ----------

    def attach(self, progress: ProgressStore) -> None:
        self.detach()
        self._progress = progress
        self._detach = progress.subscribe(self._on_store_event)

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
        self._detach = None
        self._progress = None

    def _on_store_event(self, event: StoreEvent) -> None:
        if event.origin != "local" or self._progress is None:
            return
        progress = self._progress

        if event.activity is not None:
            activity_type, data = event.activity
            activity_id = new_activity_id()
            self.queue_sync("activity", {"id": activity_id, "type": activity_type, "data": data},
                            key=f"activity:{activity_id}")

        if event.kind == "rooms":
            if event.room_id is None:
                self.queue_sync("rooms", {"rooms": [r.model_dump(mode="json") for r in progress.rooms]})
            elif event.deleted:
                self.queue_sync("room_delete", {"room_id": event.room_id}, key=f"room:{event.room_id}")
            else:
                room = progress.get_room(event.room_id)
                if room is not None:
                    self.queue_sync("room", room.model_dump(mode="json"), key=f"room:{room.id}")
        elif event.kind == "profile" and progress.profile is not None:
            self.queue_sync("profile", progress.profile.model_dump(mode="json"))
        elif event.kind == "stats":
            self.queue_sync("stats", progress.stats.model_dump(mode="json"))
        elif event.kind == "settings":
            self.queue_sync("settings", progress.settings.model_dump(mode="json"))
        elif event.kind == "mascot" and progress.mascot is not None:
            self.queue_sync("mascot", progress.mascot.model_dump(mode="json"))
        elif event.kind == "collection":
            self.queue_sync("collection", {
                "items": [i.model_dump(mode="json") for i in progress.collection],
                "stats": progress.collection_stats.model_dump(mode="json"),
            })

    def queue_sync(self, kind: str, payload: Dict[str, Any], key: Optional[str] = None) -> None:
        """Queue a push, replacing any pending push of the same document."""
        if not self.enabled:
            return
        key = key or kind
        self._queue = [i for i in self._queue if i.key != key]
        self._queue.append(SyncQueueItem(id=f"{kind}-{uuid.uuid4().hex[:8]}", kind=kind, key=key, payload=payload))
        if not self.online:
            self.status = "offline"
        else:
            self._schedule_flush()

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop: the caller flushes with process_sync_queue().
            return
        if self._flush_handle is not None:
            self._flush_handle.cancel()
        self._flush_handle = loop.call_later(self.debounce, self._start_flush, loop)

    def _start_flush(self, loop) -> None:
        self._flush_handle = None
        self._flush_task = loop.create_task(self.process_sync_queue())

    async def _push(self, item: SyncQueueItem) -> bool:
        payload = item.payload
        try:
            if item.kind == "room":
                return await self.save_room(Room.model_validate(payload))
            if item.kind == "rooms":
                return await self.save_all_rooms([Room.model_validate(r) for r in payload["rooms"]])
            if item.kind == "room_delete":
                return await self.delete_room(payload["room_id"])
            if item.kind == "profile":
                return await self.save_user_profile(UserProfile.model_validate(payload))
            if item.kind == "stats":
                return await self.save_user_stats(UserStats.model_validate(payload))
            if item.kind == "settings":
                return await self.save_app_settings(AppSettings.model_validate(payload))
            if item.kind == "mascot":
                return await self.save_mascot(Mascot.model_validate(payload))
            if item.kind == "collection":
                return await self.save_collection(
                    [CollectedItem.model_validate(i) for i in payload["items"]],
                    CollectionStats.model_validate(payload["stats"]),
                )
            if item.kind == "activity":
                return await self.activity_log.log_activity(
                    self.user, payload["type"], payload.get("data"),
                    activity_id=payload["id"], at=to_date(item.timestamp),
                )
        except (ValidationError, KeyError):
            logger.error("Dropping unreadable %s sync item %s", item.kind, item.id)
            return True
        logger.error("Unknown sync item kind %r", item.kind)
        return True

    async def process_sync_queue(self) -> bool:
        """Push pending changes. True when nothing is left pending."""
        if not self.enabled:
            return False
        if not self.online:
            self.status = "offline"
            return False
        if self._flushing:
            return False
        if not self._queue:
            self.status = "synced"
            return True

        self._flushing = True
        self.status = "syncing"
        failed = False
        try:
            for item in list(self._queue):
                ok = await self._push(item)
                self._queue = [i for i in self._queue if i is not item]
                if ok:
                    continue
                failed = True
                superseded = any(i.key == item.key for i in self._queue)
                if superseded:
                    continue
                if item.retries < MAX_RETRIES:
                    self._queue.append(item.model_copy(update={"retries": item.retries + 1}))
                else:
                    logger.error("Giving up on %s after %d retries", item.kind, MAX_RETRIES)
        finally:
            self._flushing = False
            # Changes queued while this pass ran, and retries, get their own pass.
            if self._queue and self.online:
                self._schedule_flush()

        if failed:
            self.status = "error"
            return False
        if self._queue:
            return False
        self.status = "synced"
        self.last_synced = utcnow()
        return True

    async def set_online(self, online: bool) -> None:
        """Connectivity changed; coming back online flushes the queue."""
        self.online = online
        if not online:
            self.status = "offline"
            return
        if self._queue:
            await self.process_sync_queue()

    async def pull_from_cloud(self, progress: ProgressStore) -> bool:
        """Sign-in reconciliation: remote wins; an empty account is seeded."""
        if not self.enabled:
            return False
        self.status = "syncing"
        snapshot = await self.load_all_data_from_cloud()
        if snapshot is None:
            self.status = "error"
            return False
        if not progress.apply_remote_snapshot(snapshot):
            logger.info("No cloud data for %s yet; uploading local progress", self.user.uid)
            if not await self.sync_all_data_to_cloud(progress.snapshot()):
                self.status = "error"
                return False
        self.status = "synced"
        self.last_synced = utcnow()
        return True

    async def force_sync(self, progress: ProgressStore) -> bool:
        """Push the whole local state and drop the now-redundant queue."""
        if not self.enabled:
            return False
        self.status = "syncing"
        if not await self.sync_all_data_to_cloud(progress.snapshot()):
            self.status = "error"
            return False
        # Activities are not part of the snapshot.
        self._queue = [i for i in self._queue if i.kind == "activity"]
        self.status = "synced"
        self.last_synced = utcnow()
        return True

    # ---------- persistence ----------

    def save_queue(self, path) -> None:
        state = SyncState(queue=self._queue, last_synced=self.last_synced)
        Path(path).write_text(state.model_dump_json(), encoding="utf-8")

    def load_queue(self, path) -> bool:
        file = Path(path)
        if not file.exists():
            return False
        try:
            state = SyncState.model_validate_json(file.read_text(encoding="utf-8"))
        except ValidationError:
            logger.warning("Ignoring unreadable sync queue at %s", file)
            return False
        self._queue = state.queue
        self.last_synced = state.last_synced
        return True


def format_last_sync_time(moment: Optional[datetime], now: Optional[datetime] = None) -> str:
    if moment is None:
        return "Never"
    minutes = int(((now or utcnow()) - moment).total_seconds() // 60)
    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes}m ago"
    if minutes < 24 * 60:
        return f"{minutes // 60}h ago"
    return f"{minutes // (24 * 60)}d ago"
