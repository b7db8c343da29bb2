"""
Process-wide handles: AI rate limiting, ambient sound, alerts and the
analysis API key.

Everything here is owned by one ``AppContext`` built at startup and handed
to whoever needs it. Tests build their own context instead of sharing
module globals.
"""

from dataclasses import dataclass, field
from datetime import datetime
import logging
import os
import re
from typing import Callable, Optional

from dotenv import get_key, load_dotenv, set_key, unset_key

from activity import ActivityLog
from database import DocumentStore, get_store
from progress import ProgressStore
from schemas import ProgressAnalysis, RoomAnalysis
from social import SocialCoordinator
from timestamps import utcnow

load_dotenv()

logger = logging.getLogger(__name__)

AI_RATE_LIMIT = int(os.getenv("AI_RATE_LIMIT", "10"))
AI_RATE_WINDOW_SECONDS = float(os.getenv("AI_RATE_WINDOW_SECONDS", "60"))
API_KEY_ENV_FILE = os.getenv("API_KEY_ENV_FILE", ".env.local")
API_KEY_NAME = "GEMINI_API_KEY"

API_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]{30,50}$")


# ---------- Rate limiting ----------

class RateLimiter:
    """Fixed-window counter for outbound analysis calls.

    Advisory only: it saves API quota, it does not protect any data.
    """

    def __init__(self, max_requests: int = AI_RATE_LIMIT, window_seconds: float = AI_RATE_WINDOW_SECONDS,
                 clock: Callable[[], datetime] = utcnow):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._window_start: Optional[datetime] = None
        self._count = 0

    def _roll(self) -> datetime:
        now = self._clock()
        if self._window_start is None or (now - self._window_start).total_seconds() >= self.window_seconds:
            self._window_start = now
            self._count = 0
        return now

    def can_make_request(self) -> bool:
        """Count one request if the window has room for it."""
        self._roll()
        if self._count >= self.max_requests:
            return False
        self._count += 1
        return True

    def remaining_requests(self) -> int:
        self._roll()
        return max(0, self.max_requests - self._count)

    def time_until_reset(self) -> float:
        """Seconds until the current window closes; 0 if nothing is counted."""
        now = self._roll()
        if self._count == 0:
            return 0.0
        elapsed = (now - self._window_start).total_seconds()
        return max(0.0, self.window_seconds - elapsed)

    def reset(self) -> None:
        self._window_start = None
        self._count = 0


# ---------- Ambient sound ----------

SOUND_INFO = {
    "none": {"name": "None", "emoji": "🔇"},
    "rain": {"name": "Rain", "emoji": "🌧️"},
    "ocean": {"name": "Ocean", "emoji": "🌊"},
    "forest": {"name": "Forest", "emoji": "🌲"},
    "cafe": {"name": "Cafe", "emoji": "☕"},
}


class SilentBackend:
    """Audio backend used when no device is available."""

    def load(self, sound: str) -> None:
        pass

    def play(self) -> None:
        pass

    def stop(self) -> None:
        pass


class AmbientSoundPlayer:
    """One looping ambient sound at a time."""

    def __init__(self, backend=None):
        self._backend = backend or SilentBackend()
        self._initialized = False
        self._current: Optional[str] = None

    def initialize(self) -> None:
        self._initialized = True

    @property
    def current(self) -> Optional[str]:
        return self._current

    def is_playing(self) -> bool:
        return self._current is not None

    def play(self, sound: str) -> None:
        if sound not in SOUND_INFO:
            raise ValueError(f"Unknown sound: {sound!r}")
        if not self._initialized:
            self.initialize()
        if sound == self._current:
            return
        self.stop()
        if sound == "none":
            return
        self._backend.load(sound)
        self._backend.play()
        self._current = sound

    def stop(self) -> None:
        if self._current is None:
            return
        try:
            self._backend.stop()
        except Exception:
            logger.exception("Stopping %s failed", self._current)
        self._current = None


# ---------- Alerts ----------

class LoggingAlertSink:
    """Fire-and-forget alerts; the notification service itself is external."""

    def __init__(self):
        self.fired = []

    def fire(self, title: str, body: str, category: str = "general") -> None:
        self.fired.append((title, body, category))
        logger.info("[%s] %s: %s", category, title, body)


# ---------- API key ----------

class InvalidApiKey(ValueError):
    pass


def is_valid_api_key_format(key: Optional[str]) -> bool:
    return bool(key) and API_KEY_PATTERN.match(key.strip()) is not None


class ApiKeyStore:
    """Analysis API key, kept in a keystore if one is given.

    Without a keystore (or when it fails) the key goes to a dotenv file.
    """

    def __init__(self, keystore=None, env_file: str = API_KEY_ENV_FILE, name: str = API_KEY_NAME):
        self._keystore = keystore
        self._env_file = env_file
        self._name = name

    def save(self, key: str) -> None:
        if not is_valid_api_key_format(key):
            raise InvalidApiKey("API key must be 30-50 letters, digits, '-' or '_'")
        key = key.strip()
        if self._keystore is not None:
            try:
                self._keystore.set(self._name, key)
                return
            except Exception as e:
                logger.warning("Keystore unavailable (%s); storing API key in %s", type(e).__name__, self._env_file)
        else:
            logger.warning("No keystore configured; storing API key in %s", self._env_file)
        if not os.path.exists(self._env_file):
            open(self._env_file, "a").close()
        set_key(self._env_file, self._name, key)

    def load(self) -> Optional[str]:
        if self._keystore is not None:
            try:
                key = self._keystore.get(self._name)
                if key:
                    return key
            except Exception as e:
                logger.warning("Keystore read failed (%s)", type(e).__name__)
        if os.path.exists(self._env_file):
            return get_key(self._env_file, self._name)
        return None

    def delete(self) -> None:
        if self._keystore is not None:
            try:
                self._keystore.delete(self._name)
            except Exception as e:
                logger.warning("Keystore delete failed (%s)", type(e).__name__)
        if os.path.exists(self._env_file):
            unset_key(self._env_file, self._name)


# ---------- AI analysis ----------

class AnalysisGate:
    """Calls the external room analyzer, subject to the rate limiter.

    ``analyzer`` provides async ``analyze(image)`` and
    ``analyze_progress(before, after)``.
    """

    def __init__(self, analyzer, rate_limiter: RateLimiter):
        self.analyzer = analyzer
        self.rate_limiter = rate_limiter

    async def analyze_room(self, progress: ProgressStore, room_id: str, image: bytes) -> Optional[RoomAnalysis]:
        if progress.get_room(room_id) is None:
            return None
        if not self.rate_limiter.can_make_request():
            logger.info("Analysis rate limited; retry in %.0fs", self.rate_limiter.time_until_reset())
            return None
        analysis = RoomAnalysis.model_validate(await self.analyzer.analyze(image))
        progress.apply_analysis(room_id, analysis)
        return analysis

    async def analyze_progress(self, before: bytes, after: bytes) -> Optional[ProgressAnalysis]:
        if not self.rate_limiter.can_make_request():
            logger.info("Progress analysis rate limited")
            return None
        return ProgressAnalysis.model_validate(await self.analyzer.analyze_progress(before, after))


# ---------- Context ----------

@dataclass
class AppContext:
    store: DocumentStore
    rate_limiter: RateLimiter = field(default_factory=RateLimiter)
    sound: AmbientSoundPlayer = field(default_factory=AmbientSoundPlayer)
    alerts: LoggingAlertSink = field(default_factory=LoggingAlertSink)
    api_keys: ApiKeyStore = field(default_factory=ApiKeyStore)
    social: Optional[SocialCoordinator] = None
    activity: Optional[ActivityLog] = None

    def __post_init__(self):
        if self.social is None:
            self.social = SocialCoordinator(self.store)
        if self.activity is None:
            self.activity = ActivityLog(self.store)

    @classmethod
    def from_env(cls, store: Optional[DocumentStore] = None) -> "AppContext":
        context = cls(store=store or get_store())
        context.sound.initialize()
        logger.info("App context ready (cloud sync %s)", "on" if context.store.configured else "off")
        return context

    def shutdown(self) -> None:
        self.sound.stop()
