"""
Adaptive streaming sessions: initial quality selection, heartbeat-driven
switch recommendations and inactivity reaping.

Session state is kept in Redis with a TTL equal to the inactivity window, so
any API instance can serve any session.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from vidstream.app.errors import InputError, SessionLimitError, SessionNotFoundError
from vidstream.app.services.base_service import BaseService
from vidstream.app.services.logging_service import session_id_var
from vidstream.app.services.quality_profile_service import QualityProfile, QualityProfileCatalog
from vidstream.app.services.redis_client import RedisClient

logger = logging.getLogger(__name__)

BANDWIDTH_SAFETY_FACTOR = 0.8
SWITCH_UP_HEADROOM = 1.5
LOW_BUFFER_SECONDS = 5
HIGH_BUFFER_SECONDS = 20


@dataclass
class QualitySwitch:
    from_quality: str
    to_quality: str
    reason: str


@dataclass
class SessionStart:
    session_id: str
    initial_quality: str
    manifest_location: Optional[str]
    available_qualities: List[str]


def device_height_ceiling(device_class: Optional[str], screen_size: Optional[str]) -> Optional[int]:
    """Maximum rendition height for a device class, None when uncapped."""
    device = (device_class or "").lower()
    if device == "mobile":
        return 480 if "small" in (screen_size or "").lower() else 720
    if device in ("tablet", "desktop"):
        return 1080
    return None


def select_for_bandwidth(profiles: Sequence[QualityProfile], bandwidth_kbps: float) -> QualityProfile:
    """Highest-bitrate profile within 80% of bandwidth, else the lowest profile."""
    ordered = sorted(profiles, key=lambda p: p.bitrate)
    budget = bandwidth_kbps * BANDWIDTH_SAFETY_FACTOR
    fitting = [p for p in ordered if p.bitrate <= budget]
    return fitting[-1] if fitting else ordered[0]


def recommend_switch(profiles: Sequence[QualityProfile], current: QualityProfile,
                     bandwidth_kbps: float, buffer_seconds: float) -> Optional[QualitySwitch]:
    ordered = sorted(profiles, key=lambda p: p.bitrate)
    index = next((i for i, p in enumerate(ordered) if p.name == current.name), None)
    if index is None:
        return None

    if buffer_seconds < LOW_BUFFER_SECONDS:
        if index > 0:
            return QualitySwitch(current.name, ordered[index - 1].name, "buffer")
        return None

    if buffer_seconds > HIGH_BUFFER_SECONDS and bandwidth_kbps > SWITCH_UP_HEADROOM * current.bitrate:
        target = select_for_bandwidth(ordered, bandwidth_kbps)
        if target.bitrate > current.bitrate:
            return QualitySwitch(current.name, target.name, "bandwidth")

    return None


class StreamingSessionService(BaseService):
    """Playback sessions for adaptive delivery."""

    def __init__(self, redis_client: RedisClient, catalog: QualityProfileCatalog,
                 inactivity_timeout: int = 300, default_max_sessions: int = 3,
                 clock: Callable[[], datetime] = datetime.utcnow, key_prefix: str = "streaming"):
        self.redis = redis_client
        self.catalog = catalog
        self.inactivity_timeout = inactivity_timeout
        self.default_max_sessions = default_max_sessions
        self.clock = clock
        self.key_prefix = key_prefix
        self.index_key = f"{key_prefix}:sessions"

    def session_key(self, session_id: str) -> str:
        return f"{self.key_prefix}:session:{session_id}"

    def user_sessions_key(self, user_id: str, video_id: str) -> str:
        return f"{self.key_prefix}:user_sessions:{user_id}:{video_id}"

    async def _save(self, session: Dict[str, Any]) -> None:
        await self.redis.set_json(
            self.session_key(session["session_id"]), session, expire=self.inactivity_timeout
        )

    async def _live_user_sessions(self, user_id: str, video_id: str) -> List[str]:
        client = await self.redis.ensure_connected()
        key = self.user_sessions_key(user_id, video_id)
        live = []
        for session_id in await client.smembers(key):
            if await client.exists(self.session_key(session_id)):
                live.append(session_id)
            else:
                await client.srem(key, session_id)
        return live

    async def _reserve_slot(self, session: Dict[str, Any], max_sessions: int) -> None:
        """
        Register the session with its user, then count.

        Every start adds itself before counting, so of any number of concurrent
        starts at most ``max_sessions`` can see a count within the limit. A start
        over the limit removes itself again and raises SessionLimitError.
        """
        session_id = session["session_id"]
        key = self.user_sessions_key(session["user_id"], session["video_id"])
        await self._save(session)
        client = await self.redis.ensure_connected()
        await client.sadd(key, session_id)

        active = await self._live_user_sessions(session["user_id"], session["video_id"])
        if len(active) > max_sessions:
            await client.srem(key, session_id)
            await client.delete(self.session_key(session_id))
            raise SessionLimitError(
                f"User already has {len(active) - 1} sessions for this video (limit {max_sessions})"
            )

    async def start_session(self, video_id: str, user_id: str, client_bandwidth: float,
                            device_class: Optional[str], screen_size: Optional[str],
                            available_qualities: Sequence[str],
                            token_claims: Optional[Dict[str, Any]] = None,
                            manifest_location: Optional[str] = None) -> SessionStart:
        """
        Open a session and choose its starting rendition.

        Renditions are capped by device class and by the token's quality
        restriction, then the best fit for ``client_bandwidth`` (kbps) is used.
        """
        profiles = self.catalog.sort_by_bitrate(q for q in available_qualities if self.catalog.get(q))
        if not profiles:
            raise InputError(f"No renditions available for video {video_id}")

        caps = [device_height_ceiling(device_class, screen_size)]
        restriction = (token_claims or {}).get("qualityRestriction")
        if restriction and self.catalog.get(restriction):
            caps.append(self.catalog.require(restriction).height)
        caps = [c for c in caps if c is not None]
        candidates = self.catalog.capped(profiles, min(caps) if caps else None) or [profiles[0]]

        initial = select_for_bandwidth(candidates, client_bandwidth)
        now = self.clock()
        session_id = str(uuid.uuid4())
        session = {
            "session_id": session_id,
            "video_id": video_id,
            "user_id": user_id,
            "current_quality": initial.name,
            "available_qualities": [p.name for p in candidates],
            "device_class": device_class,
            "screen_size": screen_size,
            "started_at": now.isoformat(),
            "last_heartbeat": now.isoformat(),
            "watch_time": 0.0,
            "last_bandwidth": client_bandwidth,
            "buffer_level": 0.0,
            "quality_switches": [],
            "manifest_location": manifest_location,
        }
        max_sessions = int((token_claims or {}).get("maxSessions", self.default_max_sessions))
        await self._reserve_slot(session, max_sessions)
        client = await self.redis.ensure_connected()
        await client.sadd(self.index_key, session_id)

        session_id_var.set(session_id)
        logger.info(
            f"Started session {session_id} for video {video_id}: {initial.name} "
            f"at {client_bandwidth}kbps ({device_class or 'unknown device'})"
        )
        return SessionStart(session_id, initial.name, manifest_location, session["available_qualities"])

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        return await self.redis.get_json(self.session_key(session_id))

    async def heartbeat(self, session_id: str, watch_time: float, current_bandwidth: float,
                        buffer_level: float) -> Optional[QualitySwitch]:
        """
        Record playback telemetry and return a switch recommendation, if any.

        A recommended switch becomes the session's current quality.
        """
        session = await self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found or expired")

        profiles = self.catalog.sort_by_bitrate(session["available_qualities"])
        current = self.catalog.require(session["current_quality"])
        switch = recommend_switch(profiles, current, current_bandwidth, buffer_level)

        now = self.clock()
        session["watch_time"] = max(float(session.get("watch_time", 0.0)), float(watch_time))
        session["last_bandwidth"] = current_bandwidth
        session["buffer_level"] = buffer_level
        session["last_heartbeat"] = now.isoformat()
        if switch is not None:
            session["current_quality"] = switch.to_quality
            session["quality_switches"].append({
                "from": switch.from_quality,
                "to": switch.to_quality,
                "reason": switch.reason,
                "timestamp": now.isoformat(),
            })
            logger.info(f"Session {session_id}: {switch.from_quality} -> {switch.to_quality} ({switch.reason})")

        await self._save(session)
        return switch

    async def end_session(self, session_id: str) -> bool:
        session = await self.get_session(session_id)
        client = await self.redis.ensure_connected()
        deleted = await client.delete(self.session_key(session_id))
        await client.srem(self.index_key, session_id)
        if session:
            await client.srem(self.user_sessions_key(session["user_id"], session["video_id"]), session_id)
            logger.info(f"Ended session {session_id} after {session.get('watch_time', 0)}s watched")
        return bool(deleted)

    async def reap_expired(self) -> int:
        """Drop sessions whose heartbeat is older than the inactivity window."""
        client = await self.redis.ensure_connected()
        cutoff = self.clock() - timedelta(seconds=self.inactivity_timeout)
        reaped = 0
        for session_id in await client.smembers(self.index_key):
            session = await self.get_session(session_id)
            if session is not None and datetime.fromisoformat(session["last_heartbeat"]) >= cutoff:
                continue
            if session is not None:
                await client.delete(self.session_key(session_id))
                await client.srem(self.user_sessions_key(session["user_id"], session["video_id"]), session_id)
            await client.srem(self.index_key, session_id)
            reaped += 1
        if reaped:
            logger.info(f"Reaped {reaped} inactive streaming sessions")
        return reaped
