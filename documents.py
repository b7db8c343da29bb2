"""
Model <-> document mapping.

Encoding turns every datetime into a millisecond UTC server value and dates
into ISO strings. Decoding goes field by field so that optional timestamps
(completed_at, unlocked_at, last_analyzed_at, ...) stay None when absent
while required ones fall back to "now" on half-written documents.
"""

from datetime import date, datetime
from typing import Any, Dict, List

from pydantic import BaseModel

from schemas import (
    ActivityEntry,
    AppSettings,
    BodyDoublingSession,
    Challenge,
    CollectedItem,
    CollectionStats,
    Mascot,
    Room,
    SharedRoom,
    UserProfile,
    UserStats,
)
from timestamps import SERVER_TIMESTAMP, to_date, to_server_value


def encode(value: Any) -> Any:
    if isinstance(value, BaseModel):
        value = value.model_dump()
    if isinstance(value, datetime):
        return to_server_value(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode(v) for v in value]
    return value


def to_document(model: BaseModel, **extra) -> Dict[str, Any]:
    """Encode a model and stamp it with ``updated_at``."""
    doc = encode(model)
    doc.update(extra)
    doc["updated_at"] = SERVER_TIMESTAMP
    return doc


def _decode_list(items, **fields) -> List[dict]:
    decoded = []
    for item in items or []:
        item = dict(item)
        for name, optional in fields.items():
            item[name] = to_date(item.get(name), optional=optional)
        decoded.append(item)
    return decoded


def profile_from_document(data: dict, uid: str) -> UserProfile:
    data = dict(data)
    data["id"] = data.get("id") or uid
    data["created_at"] = to_date(data.get("created_at"))
    return UserProfile.model_validate(data)


def room_from_document(data: dict) -> Room:
    data = dict(data)
    data["created_at"] = to_date(data.get("created_at"))
    data["last_analyzed_at"] = to_date(data.get("last_analyzed_at"), optional=True)
    data["photos"] = _decode_list(data.get("photos"), timestamp=False)
    data["tasks"] = _decode_list(data.get("tasks"), completed_at=True)
    return Room.model_validate(data)


def stats_from_document(data: dict) -> UserStats:
    data = dict(data)
    data["badges"] = _decode_list(data.get("badges"), unlocked_at=True)
    return UserStats.model_validate(data)


def settings_from_document(data: dict) -> AppSettings:
    return AppSettings.model_validate(data)


def mascot_from_document(data: dict) -> Mascot:
    data = dict(data)
    for name in ("last_fed", "last_interaction", "created_at"):
        data[name] = to_date(data.get(name))
    return Mascot.model_validate(data)


def collection_from_document(data: dict) -> List[CollectedItem]:
    return [CollectedItem.model_validate(i) for i in _decode_list(data.get("items"), collected_at=False)]


def collection_stats_from_document(data: dict) -> CollectionStats:
    data = dict(data)
    data["last_collected"] = to_date(data.get("last_collected"), optional=True)
    return CollectionStats.model_validate(data)


def activity_from_document(data: dict) -> ActivityEntry:
    data = dict(data)
    data["timestamp"] = to_date(data.get("timestamp"))
    data["data"] = data.get("data") or {}
    return ActivityEntry.model_validate(data)


def challenge_from_document(data: dict) -> Challenge:
    data = dict(data)
    for name in ("start_date", "end_date", "created_at"):
        data[name] = to_date(data.get(name))
    data["participants"] = _decode_list(data.get("participants"), joined=False, completed_at=True)
    return Challenge.model_validate(data)


def session_from_document(data: dict) -> BodyDoublingSession:
    data = dict(data)
    for name in ("scheduled_at", "started_at", "ended_at"):
        data[name] = to_date(data.get(name), optional=True)
    data["created_at"] = to_date(data.get("created_at"))
    data["participants"] = _decode_list(data.get("participants"), joined_at=False)
    return BodyDoublingSession.model_validate(data)


def shared_room_from_document(data: dict) -> SharedRoom:
    data = dict(data)
    data["shared_at"] = to_date(data.get("shared_at"))
    return SharedRoom.model_validate(data)
