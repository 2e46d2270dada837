"""Signed OAuth state tokens.

The state round-trips through the browser, so it is a short-lived JWT
signed with the application secret rather than a bare encoded blob.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import logging
import secrets

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from qbsync.config import settings
from qbsync.quickbooks.errors import AuthorizationError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
STATE_AUDIENCE = "quickbooks-oauth"


def encode_state(
    owner_id: str,
    reconnect: bool = False,
    connection_id: Optional[str] = None,
    issued_at: Optional[datetime] = None,
) -> str:
    """Create a signed state token for the authorize redirect."""
    issued_at = issued_at or datetime.now(timezone.utc)
    payload = {
        "sub": owner_id,
        "aud": STATE_AUDIENCE,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(minutes=settings.QUICKBOOKS_STATE_MAX_AGE_MINUTES)).timestamp()),
        "reconnect": reconnect,
        "cid": connection_id,
        "nonce": secrets.token_urlsafe(8),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_state(state: str) -> Dict[str, Any]:
    """Verify a state token and return its claims.

    Raises:
        AuthorizationError: "Authorization request expired" when older than the
            allowed window, "Invalid callback state" for anything else.
    """
    try:
        payload = jwt.decode(
            state,
            settings.SECRET_KEY,
            algorithms=[ALGORITHM],
            audience=STATE_AUDIENCE,
        )
    except ExpiredSignatureError:
        raise AuthorizationError("Authorization request expired")
    except JWTError as e:
        logger.warning(f"Rejected OAuth state: {e}")
        raise AuthorizationError("Invalid callback state")

    if not payload.get("sub"):
        raise AuthorizationError("Invalid callback state")

    return {
        "owner_id": payload["sub"],
        "issued_at": datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
        "reconnect": bool(payload.get("reconnect")),
        "connection_id": payload.get("cid"),
    }
