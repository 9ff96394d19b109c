"""
API endpoints for playback tokens and adaptive streaming sessions.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from vidstream.app.dependencies import ServiceContainer, get_services
from vidstream.app.errors import InputError, SessionLimitError, SessionNotFoundError, TokenError
from vidstream.app.schemas import (
    HeartbeatRequest, HeartbeatResponse, PlaybackTokenRequest, PlaybackTokenResponse,
    QualitySwitchResponse, SessionStartRequest, SessionStartResponse
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/streaming", tags=["streaming"])


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Playback token required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return authorization.split(" ", 1)[1].strip()


@router.post("/tokens", status_code=status.HTTP_201_CREATED, response_model=PlaybackTokenResponse)
async def issue_playback_token(
    request: PlaybackTokenRequest,
    services: ServiceContainer = Depends(get_services),
):
    """Issue a signed playback token. Callers are trusted backends."""
    if request.quality_restriction and services.catalog.get(request.quality_restriction) is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown quality restriction")

    expires_in = request.expires_in or services.settings.PLAYBACK_TOKEN_TTL
    token = services.tokens.issue(
        video_id=request.video_id,
        user_id=request.user_id,
        expires_in=expires_in,
        allowed_ips=request.allowed_ips,
        max_sessions=request.max_sessions,
        quality_restriction=request.quality_restriction,
    )
    return PlaybackTokenResponse(token=token, expires_in=expires_in)


@router.post("/sessions", status_code=status.HTTP_201_CREATED, response_model=SessionStartResponse)
async def start_streaming_session(
    body: SessionStartRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
    services: ServiceContainer = Depends(get_services),
):
    """Validate the playback token and choose the initial rendition."""
    client_ip = request.client.host if request.client else None
    try:
        claims = services.tokens.validate(_bearer_token(authorization), client_ip, video_id=body.video_id)
    except TokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid playback token: {e.reason}",
        )

    job = await services.repository.latest_completed_job(body.video_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video is not ready for streaming")

    manifest = job.hls_manifest_key or job.dash_manifest_key
    try:
        started = await services.sessions.start_session(
            video_id=body.video_id,
            user_id=claims["userId"],
            client_bandwidth=body.client_bandwidth,
            device_class=body.device_class,
            screen_size=body.screen_size,
            available_qualities=job.qualities,
            token_claims=claims,
            manifest_location=services.storage.url_for(manifest) if manifest else None,
        )
    except SessionLimitError as e:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(e))
    except InputError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return SessionStartResponse(
        session_id=started.session_id,
        initial_quality=started.initial_quality,
        manifest_location=started.manifest_location,
        available_qualities=started.available_qualities,
    )


@router.post("/sessions/{session_id}/heartbeat", response_model=HeartbeatResponse)
async def session_heartbeat(
    session_id: str,
    body: HeartbeatRequest,
    services: ServiceContainer = Depends(get_services),
):
    try:
        switch = await services.sessions.heartbeat(
            session_id, body.watch_time, body.current_bandwidth, body.buffer_level
        )
    except SessionNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")

    if switch is None:
        return HeartbeatResponse()
    return HeartbeatResponse(switch=QualitySwitchResponse(
        from_quality=switch.from_quality, to_quality=switch.to_quality, reason=switch.reason
    ))


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def end_streaming_session(
    session_id: str,
    services: ServiceContainer = Depends(get_services),
):
    if not await services.sessions.end_session(session_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
