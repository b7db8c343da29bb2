import logging
import os
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from progress import ProgressStore
from runtime import AppContext
from schemas import (
    ActivityEntry,
    ActivityType,
    BodyDoublingSession,
    Challenge,
    ChallengeType,
    CloudSnapshot,
    Connection,
    Room,
    SharedRoom,
    UserIdentity,
)
from sync import CloudSyncEngine

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Declutter API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_context: Optional[AppContext] = None


# ---------- Dependencies ----------

def get_context() -> AppContext:
    global _context
    if _context is None:
        _context = AppContext.from_env()
    return _context


def current_user(
    x_user_id: Optional[str] = Header(None),
    x_display_name: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
) -> UserIdentity:
    if not x_user_id:
        raise HTTPException(401, "Sign in required")
    return UserIdentity(uid=x_user_id, display_name=x_display_name, email=x_user_email)


def cloud(context: AppContext = Depends(get_context)) -> AppContext:
    if not context.store.configured:
        raise HTTPException(503, "Database not configured")
    return context


INVALID_CODE = "Invalid or expired invite code"


# ---------- Models (request/response) ----------

class LogActivityRequest(BaseModel):
    type: ActivityType
    data: Dict = Field(default_factory=dict)


class CreateChallengeRequest(BaseModel):
    type: ChallengeType
    title: str = Field(..., min_length=1)
    description: str = ""
    target: int = Field(..., ge=1)
    duration_days: int = Field(7, ge=1)


class JoinRequest(BaseModel):
    invite_code: str


class ProgressRequest(BaseModel):
    progress: int = Field(..., ge=0)


class CreateSessionRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    duration: int = Field(25, ge=1, description="Minutes")
    max_participants: int = Field(10, ge=1)
    scheduled_at: Optional[datetime] = None


class ShareRoomRequest(BaseModel):
    room: Room
    is_public: bool = False


# ---------- Routes ----------

@app.get("/")
def root():
    return {"message": "Declutter API running"}


@app.get("/test")
def test_database(context: AppContext = Depends(get_context)):
    resp = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
        "ai_requests_remaining": context.rate_limiter.remaining_requests(),
    }
    if context.store.configured:
        resp["database"] = "✅ Available"
        resp["connection_status"] = "Connected"
        try:
            resp["collections"] = context.store.collection_names()[:10]
            resp["database"] = "✅ Connected & Working"
        except Exception as e:
            resp["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return resp


# Sync

@app.get("/api/me/data", response_model=CloudSnapshot)
async def load_my_data(user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)):
    snapshot = await CloudSyncEngine(context.store, user, context.activity).load_all_data_from_cloud()
    if snapshot is None:
        raise HTTPException(502, "Could not load data from cloud")
    return snapshot


@app.put("/api/me/data")
async def save_my_data(
    payload: CloudSnapshot, user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)
):
    if not await CloudSyncEngine(context.store, user, context.activity).sync_all_data_to_cloud(payload):
        raise HTTPException(502, "Sync incomplete, retry")
    return {"message": "Synced"}


@app.post("/api/me/pull", response_model=CloudSnapshot)
async def pull_my_data(
    payload: CloudSnapshot, user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)
):
    """Sign-in reconciliation against the device's local state."""
    progress = ProgressStore(alerts=context.alerts)
    progress.apply_remote_snapshot(payload)
    if not await CloudSyncEngine(context.store, user, context.activity).pull_from_cloud(progress):
        raise HTTPException(502, "Could not reach cloud")
    return progress.snapshot()


# Activity

@app.post("/api/activities")
async def log_activity(
    payload: LogActivityRequest, user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)
):
    if not await context.activity.log_activity(user, payload.type, payload.data):
        raise HTTPException(502, "Activity not recorded")
    return {"message": "Logged"}


@app.get("/api/activities", response_model=List[ActivityEntry])
async def recent_activities(
    limit: int = 50, user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)
):
    return await context.activity.get_recent_activities(user, limit=max(1, min(limit, 200)))


@app.get("/api/activities/weekly")
async def weekly_activity(user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)):
    return await context.activity.get_weekly_activity_counts(user)


# Challenges

@app.post("/api/challenges", response_model=Challenge)
async def create_challenge(
    payload: CreateChallengeRequest, user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)
):
    challenge = await context.social.create_challenge(
        user, payload.type, payload.title, payload.description, payload.target, payload.duration_days
    )
    if challenge is None:
        raise HTTPException(502, "Challenge not created")
    return challenge


@app.post("/api/challenges/join", response_model=Challenge)
async def join_challenge(
    payload: JoinRequest, user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)
):
    challenge = await context.social.join_challenge(user, payload.invite_code)
    if challenge is None:
        raise HTTPException(404, INVALID_CODE)
    return challenge


@app.post("/api/challenges/{challenge_id}/progress", response_model=Challenge)
async def update_challenge_progress(
    challenge_id: str,
    payload: ProgressRequest,
    user: UserIdentity = Depends(current_user),
    context: AppContext = Depends(cloud),
):
    challenge = await context.social.update_challenge_progress(user, challenge_id, payload.progress)
    if challenge is None:
        raise HTTPException(409, "Challenge is not open for this user")
    return challenge


@app.post("/api/challenges/{challenge_id}/close", response_model=Challenge)
async def close_challenge(
    challenge_id: str, user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)
):
    challenge = await context.social.close_challenge(challenge_id)
    if challenge is None:
        raise HTTPException(409, "Challenge is still running or already settled")
    return challenge


@app.get("/api/challenges", response_model=List[Challenge])
async def my_challenges(user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)):
    return await context.social.get_my_challenges(user)


# Body doubling

@app.post("/api/sessions", response_model=BodyDoublingSession)
async def create_session(
    payload: CreateSessionRequest, user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)
):
    session = await context.social.create_session(
        user,
        payload.title,
        payload.duration,
        max_participants=payload.max_participants,
        description=payload.description,
        scheduled_at=payload.scheduled_at,
    )
    if session is None:
        raise HTTPException(502, "Session not created")
    return session


@app.post("/api/sessions/join", response_model=BodyDoublingSession)
async def join_session(
    payload: JoinRequest, user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)
):
    session = await context.social.join_session(user, payload.invite_code)
    if session is None:
        raise HTTPException(404, INVALID_CODE)
    return session


@app.post("/api/sessions/{session_id}/start", response_model=BodyDoublingSession)
async def start_session(
    session_id: str, user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)
):
    session = await context.social.start_session(user, session_id)
    if session is None:
        raise HTTPException(409, "Only the host can start a scheduled session")
    return session


@app.post("/api/sessions/{session_id}/leave")
async def leave_session(
    session_id: str, user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)
):
    if not await context.social.leave_session(user, session_id):
        raise HTTPException(409, "Not in this session")
    return {"message": "Left session"}


@app.post("/api/sessions/{session_id}/end")
async def end_session(
    session_id: str, user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)
):
    if not await context.social.end_session(user, session_id):
        raise HTTPException(403, "Only the host can end this session")
    return {"message": "Session ended"}


@app.get("/api/sessions/active", response_model=List[BodyDoublingSession])
async def active_sessions(context: AppContext = Depends(cloud)):
    return await context.social.get_active_sessions()


# Room sharing

@app.post("/api/shared-rooms", response_model=SharedRoom)
async def share_room(
    payload: ShareRoomRequest, user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)
):
    shared = await context.social.share_room(user, payload.room, payload.is_public)
    if shared is None:
        raise HTTPException(502, "Room not shared")
    return shared


@app.post("/api/shared-rooms/join", response_model=SharedRoom)
async def join_shared_room(
    payload: JoinRequest, user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)
):
    shared = await context.social.join_shared_room(user, payload.invite_code)
    if shared is None:
        raise HTTPException(404, INVALID_CODE)
    return shared


@app.get("/api/shared-rooms", response_model=List[SharedRoom])
async def shared_with_me(user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)):
    return await context.social.get_shared_with_me(user)


# Connections

@app.post("/api/connections/{target_user_id}")
async def add_connection(
    target_user_id: str, user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)
):
    if not await context.social.add_connection(user, target_user_id):
        raise HTTPException(400, "Cannot connect to this user")
    return {"message": "Connected"}


@app.delete("/api/connections/{target_user_id}")
async def remove_connection(
    target_user_id: str, user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)
):
    if not await context.social.remove_connection(user, target_user_id):
        raise HTTPException(502, "Connection not removed")
    return {"message": "Disconnected"}


@app.get("/api/connections", response_model=List[Connection])
async def my_connections(user: UserIdentity = Depends(current_user), context: AppContext = Depends(cloud)):
    return await context.social.get_connections(user)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
