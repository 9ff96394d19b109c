"""
Signed playback tokens (HS256 JWT).
"""
import ipaddress
import logging
import time
from typing import Any, Dict, Iterable, Optional

import jwt

from vidstream.app.errors import TokenError
from vidstream.app.services.base_service import BaseService

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


def ip_allowed(client_ip: str, allowed: Iterable[str]) -> bool:
    """Membership test supporting single addresses and CIDR ranges."""
    try:
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for entry in allowed:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


class PlaybackTokenService(BaseService):
    """Issues and validates playback tokens."""

    def __init__(self, secret_key: str, default_ttl: int = 3600, default_max_sessions: int = 3,
                 audience: Optional[str] = None):
        if not secret_key:
            raise ValueError("secret_key is required")
        self.secret_key = secret_key
        self.default_ttl = default_ttl
        self.default_max_sessions = default_max_sessions
        self.audience = audience or None

    def issue(self, video_id: str, user_id: str, expires_in: Optional[int] = None,
              allowed_ips: Optional[Iterable[str]] = None, max_sessions: Optional[int] = None,
              quality_restriction: Optional[str] = None, not_before: Optional[int] = None,
              audience: Optional[str] = None, now: Optional[int] = None) -> str:
        issued_at = int(now if now is not None else time.time())
        payload: Dict[str, Any] = {
            "videoId": video_id,
            "userId": user_id,
            "iat": issued_at,
            "exp": issued_at + (expires_in if expires_in is not None else self.default_ttl),
            "maxSessions": max_sessions if max_sessions is not None else self.default_max_sessions,
        }
        if allowed_ips:
            payload["allowedIPs"] = list(allowed_ips)
        if quality_restriction:
            payload["qualityRestriction"] = quality_restriction
        if not_before is not None:
            payload["nbf"] = int(not_before)
        aud = audience or self.audience
        if aud:
            payload["aud"] = aud
        return jwt.encode(payload, self.secret_key, algorithm=ALGORITHM)

    def validate(self, token: str, client_ip: Optional[str] = None,
                 video_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Verify signature, time window, audience and IP allow-list.

        Raises TokenError whose ``reason`` names the failed check.
        """
        try:
            claims = jwt.decode(
                token,
                self.secret_key,
                algorithms=[ALGORITHM],
                audience=self.audience,
                options={"require": ["exp", "videoId", "userId"], "verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            raise TokenError("expired", "Token expired")
        except jwt.ImmatureSignatureError:
            raise TokenError("not_yet_valid", "Token not yet valid")
        except jwt.InvalidAudienceError:
            raise TokenError("invalid_audience", "Token audience mismatch")
        except jwt.InvalidSignatureError:
            raise TokenError("invalid_signature", "Invalid signature")
        except jwt.MissingRequiredClaimError as e:
            if e.claim == "aud":
                raise TokenError("invalid_audience", "Token has no audience")
            raise TokenError("malformed", f"Missing claim: {e.claim}")
        except jwt.InvalidTokenError:
            raise TokenError("malformed", "Malformed token")

        if video_id is not None and claims.get("videoId") != video_id:
            raise TokenError("video_mismatch", "Token is not valid for this video")

        allowed = claims.get("allowedIPs")
        if allowed:
            if not client_ip or not ip_allowed(client_ip, allowed):
                logger.info(f"Rejected playback token for video {claims.get('videoId')} from {client_ip}")
                raise TokenError("ip_not_allowed", "IP not allowed")

        return claims
