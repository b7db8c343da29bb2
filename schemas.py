"""
Database Schemas for the Declutter app

Each Pydantic model describes one kind of document (or an entry embedded in
one). Collections are addressed by path:

- users/{uid}                          -> UserProfile
- users/{uid}/rooms/{roomId}           -> Room
- users/{uid}/data/stats               -> UserStats
- users/{uid}/data/settings            -> AppSettings
- users/{uid}/data/mascot              -> Mascot
- users/{uid}/data/collection          -> {"items": [CollectedItem]}
- users/{uid}/data/collectionStats     -> CollectionStats
- users/{uid}/activities/{activityId}  -> ActivityEntry
- challenges/{id}                      -> Challenge
- bodyDoublingSessions/{id}            -> BodyDoublingSession
- sharedRooms/{id}                     -> SharedRoom
- connections/{uidA_uidB}              -> connection pair
"""
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, computed_field

from timestamps import utcnow

Priority = Literal["high", "medium", "low"]
PhotoType = Literal["before", "progress", "after"]
BadgeType = Literal["tasks", "rooms", "streak", "time"]
Rarity = Literal["common", "uncommon", "rare", "epic", "legendary"]
WhiteNoise = Literal["none", "rain", "ocean", "forest", "cafe"]
ChallengeType = Literal["tasks_count", "time_spent", "room_complete", "streak", "collectibles"]
ChallengeStatus = Literal["pending", "in_progress", "completed", "failed", "expired"]
SessionStatus = Literal["scheduled", "active", "ended"]
ActivityType = Literal["task_completed", "room_added", "room_completed", "focus_session", "collectible_found"]


# -------- Identity --------

class UserIdentity(BaseModel):
    """Signed-in user as reported by the identity provider."""
    uid: str = Field(..., min_length=1)
    display_name: Optional[str] = None
    email: Optional[str] = None

    @property
    def name(self) -> str:
        return self.display_name or "Anonymous"


class UserProfile(BaseModel):
    """
    Document: users/{uid}
    """
    id: str
    name: str = Field("", description="Display name")
    avatar: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    onboarding_complete: bool = False


# -------- Rooms & tasks --------

class SubTask(BaseModel):
    id: str
    title: str
    completed: bool = False


class CleaningTask(BaseModel):
    """A task proposed by room analysis; embedded in its Room."""
    id: str
    title: str
    description: Optional[str] = None
    emoji: Optional[str] = None
    priority: Priority = "medium"
    estimated_minutes: int = Field(5, ge=0, description="Expected effort in minutes")
    completed: bool = False
    completed_at: Optional[datetime] = None
    tips: List[str] = Field(default_factory=list)
    subtasks: List[SubTask] = Field(default_factory=list)


class PhotoCapture(BaseModel):
    id: str
    uri: str
    timestamp: datetime = Field(default_factory=utcnow)
    type: PhotoType = "before"


class Room(BaseModel):
    """
    Document: users/{uid}/rooms/{roomId}
    Owned by a single user; tasks are replaced wholesale on re-analysis.
    """
    id: str
    name: str
    type: str = "other"
    emoji: str = "🏠"
    created_at: datetime = Field(default_factory=utcnow)
    tasks: List[CleaningTask] = Field(default_factory=list)
    photos: List[PhotoCapture] = Field(default_factory=list)
    current_progress: int = Field(0, ge=0, le=100, description="Percent of tasks done")
    mess_level: int = Field(0, ge=0, le=100)
    ai_summary: Optional[str] = None
    last_analyzed_at: Optional[datetime] = None


# -------- Stats & badges --------

class Badge(BaseModel):
    """Catalog entry; unlocked_at goes from None to a timestamp exactly once."""
    id: str
    name: str
    description: str = ""
    emoji: str = "🏅"
    type: BadgeType
    requirement: int = Field(..., ge=1)
    unlocked_at: Optional[datetime] = None


class UserStats(BaseModel):
    """
    Document: users/{uid}/data/stats
    Level is derived from xp and never stored independently.
    """
    xp: int = Field(0, ge=0)
    current_streak: int = Field(0, ge=0)
    longest_streak: int = Field(0, ge=0)
    total_tasks_completed: int = Field(0, ge=0)
    total_rooms_cleaned: int = Field(0, ge=0)
    total_minutes_cleaned: int = Field(0, ge=0)
    badges: List[Badge] = Field(default_factory=list)
    last_active_date: Optional[date] = Field(None, description="Last day with a completed task")

    @computed_field
    @property
    def level(self) -> int:
        return self.xp // 100 + 1

    @property
    def level_progress(self) -> int:
        return self.xp % 100


# -------- Settings, mascot, collection --------

class FocusModeSettings(BaseModel):
    default_duration: int = Field(25, ge=1, description="Minutes")
    white_noise_type: WhiteNoise = "none"
    break_reminders: bool = True


class AppSettings(BaseModel):
    """
    Document: users/{uid}/data/settings
    """
    notifications: bool = True
    theme: Literal["light", "dark", "auto"] = "auto"
    haptic_feedback: bool = True
    encouragement_level: Literal["minimal", "moderate", "maximum"] = "moderate"
    task_breakdown_level: Literal["normal", "detailed", "ultra"] = "detailed"
    focus_mode: FocusModeSettings = Field(default_factory=FocusModeSettings)


class Mascot(BaseModel):
    """
    Document: users/{uid}/data/mascot
    """
    name: str
    personality: str = "cheerful"
    mood: Literal["ecstatic", "happy", "content", "neutral", "sad", "sleepy"] = "happy"
    level: int = Field(1, ge=1)
    xp: int = Field(0, ge=0)
    hunger: int = Field(100, ge=0, le=100)
    energy: int = Field(100, ge=0, le=100)
    happiness: int = Field(100, ge=0, le=100)
    last_fed: datetime = Field(default_factory=utcnow)
    last_interaction: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)


class CollectedItem(BaseModel):
    id: str
    collectible_id: str
    name: str = ""
    rarity: Rarity = "common"
    collected_at: datetime = Field(default_factory=utcnow)
    room_id: Optional[str] = None


class CollectionStats(BaseModel):
    """
    Document: users/{uid}/data/collectionStats
    """
    total_collected: int = 0
    unique_collected: int = 0
    common_count: int = 0
    uncommon_count: int = 0
    rare_count: int = 0
    epic_count: int = 0
    legendary_count: int = 0
    last_collected: Optional[datetime] = None


class CloudSnapshot(BaseModel):
    """Everything one-shot sync moves between device and cloud."""
    profile: Optional[UserProfile] = None
    rooms: List[Room] = Field(default_factory=list)
    stats: Optional[UserStats] = None
    settings: Optional[AppSettings] = None
    mascot: Optional[Mascot] = None
    collection: List[CollectedItem] = Field(default_factory=list)
    collection_stats: Optional[CollectionStats] = None

    def is_empty(self) -> bool:
        return self.profile is None and self.stats is None and not self.rooms


# -------- Activity --------

class ActivityEntry(BaseModel):
    """
    Document: users/{uid}/activities/{activityId}
    Append-only.
    """
    id: str
    type: ActivityType
    timestamp: datetime
    data: Dict[str, Any] = Field(default_factory=dict)


# -------- Social --------

class ChallengeParticipant(BaseModel):
    user_id: str
    display_name: str = "Anonymous"
    progress: int = Field(0, ge=0)
    joined: datetime = Field(default_factory=utcnow)
    completed: bool = False
    completed_at: Optional[datetime] = None


class Challenge(BaseModel):
    """
    Document: challenges/{id}
    Participants are embedded; each user appears at most once.
    """
    id: str
    creator_id: str
    creator_name: str = "Anonymous"
    type: ChallengeType
    title: str
    description: str = ""
    target: int = Field(..., ge=1)
    start_date: datetime
    end_date: datetime
    status: ChallengeStatus = "in_progress"
    created_at: datetime = Field(default_factory=utcnow)
    invite_code: str
    participants: List[ChallengeParticipant] = Field(default_factory=list)


class SessionParticipant(BaseModel):
    user_id: str
    display_name: str = "Anonymous"
    joined_at: datetime = Field(default_factory=utcnow)
    is_active: bool = True


class BodyDoublingSession(BaseModel):
    """
    Document: bodyDoublingSessions/{id}
    Only the host may start or end it.
    """
    id: str
    host_id: str
    host_name: str = "Anonymous"
    title: str
    description: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration: int = Field(..., ge=1, description="Minutes")
    max_participants: int = Field(10, ge=1)
    participants: List[SessionParticipant] = Field(default_factory=list)
    status: SessionStatus = "active"
    invite_code: str
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def active_count(self) -> int:
        return sum(1 for p in self.participants if p.is_active)


class SharedRoom(BaseModel):
    """
    Document: sharedRooms/{id}
    sharedWith only ever grows.
    """
    id: str
    room_id: str
    owner_id: str
    owner_name: str = "Anonymous"
    room_name: str
    room_emoji: str = "🏠"
    room_type: str = "other"
    shared_with: List[str] = Field(default_factory=list)
    shared_at: datetime = Field(default_factory=utcnow)
    invite_code: str
    is_public: bool = False


class Connection(BaseModel):
    user_id: str
    display_name: str = "Anonymous"
    avatar_url: Optional[str] = None
    added_at: datetime
    mutual_challenges: int = 0


# -------- AI analysis (external collaborator contract) --------

class RoomAnalysis(BaseModel):
    mess_level: int = Field(..., ge=0, le=100)
    summary: str
    tasks: List[CleaningTask] = Field(default_factory=list)
    quick_wins: List[str] = Field(default_factory=list)
    encouragement: str = ""


class ProgressAnalysis(BaseModel):
    progress_percentage: int = Field(..., ge=0, le=100)
    completed_tasks: List[str] = Field(default_factory=list)
    remaining_tasks: List[str] = Field(default_factory=list)
    encouragement: str = ""
