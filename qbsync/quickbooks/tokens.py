"""Access token lifecycle for QuickBooks connections.

Every provider call goes through ``TokenRefresher.execute``:

- refresh-ahead: tokens expiring within the skew window are refreshed first
- reactive: a 401 triggers one refresh and exactly one retry
- refreshes are serialized per connection; QuickBooks rotates refresh
  tokens, so two concurrent refreshes would invalidate each other
"""
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from qbsync.config import settings
from qbsync.models.base import ensure_utc
from qbsync.quickbooks import client as qb_client
from qbsync.quickbooks.client import QuickBooksClient
from qbsync.quickbooks.errors import AuthorizationError, PersistenceError, TokenExpiredError, error_result
from qbsync.quickbooks.models import QuickBooksConnection

logger = logging.getLogger(__name__)

T = TypeVar("T")

REFRESH_TOKEN_LIFETIME_DAYS = 100
REFRESH_EXPIRED_MESSAGE = "Refresh token expired. Please reconnect."
REFRESH_FAILED_MESSAGE = "Token refresh failed. Please reconnect to QuickBooks."
AUTH_FAILED_MESSAGE = "Authentication failed. Please reconnect to QuickBooks."

# Process-wide: one lock per connection id, shared by every session
_refresh_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)


def get_refresh_lock(connection_id: str) -> asyncio.Lock:
    return _refresh_locks[connection_id]


def apply_token_response(connection: QuickBooksConnection, tokens) -> None:
    """Copy a token endpoint response onto the connection row."""
    now = datetime.now(timezone.utc)
    connection.access_token = tokens.access_token
    # QuickBooks may return a new refresh token
    if tokens.refresh_token:
        connection.refresh_token = tokens.refresh_token
    if tokens.x_refresh_token_expires_in:
        connection.refresh_token_expires_at = now + timedelta(seconds=tokens.x_refresh_token_expires_in)
    elif tokens.refresh_token:
        connection.refresh_token_expires_at = now + timedelta(days=REFRESH_TOKEN_LIFETIME_DAYS)
    connection.token_expires_at = now + timedelta(seconds=tokens.expires_in)


def is_expiring(connection: QuickBooksConnection, skew: Optional[timedelta] = None) -> bool:
    """True when the access token expires inside the refresh-ahead window."""
    if skew is None:
        skew = timedelta(minutes=settings.QUICKBOOKS_TOKEN_REFRESH_SKEW_MINUTES)
    expires_at = ensure_utc(connection.token_expires_at)
    if expires_at is None:
        return True
    return expires_at < datetime.now(timezone.utc) + skew


class TokenRefresher:
    """Keeps a connection's access token valid around provider calls."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load(self, connection_id: str) -> Optional[QuickBooksConnection]:
        result = await self.db.execute(
            select(QuickBooksConnection).where(QuickBooksConnection.id == connection_id)
        )
        return result.scalar_one_or_none()

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to save connection tokens: {e}")

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    async def refresh_tokens(self, connection_id: str) -> Dict[str, Any]:
        """Exchange the refresh token for a new pair and persist it."""
        connection = await self._load(connection_id)
        if not connection:
            return {"error": True, "error_message": "Connection not found"}

        try:
            await self._refresh(connection, force=True)
        except AuthorizationError as e:
            return error_result(e)

        return {
            "success": True,
            "token_expires_at": connection.token_expires_at,
        }

    async def _refresh(
        self,
        connection: QuickBooksConnection,
        force: bool = False,
        stale_access_token: Optional[str] = None,
    ) -> None:
        """Refresh under the per-connection lock.

        Once the lock is held the row is reloaded. If a concurrent caller
        already rotated the tokens, their result is reused.
        """
        async with get_refresh_lock(connection.id):
            await self.db.refresh(connection)

            if stale_access_token is not None and connection.access_token != stale_access_token:
                logger.debug(f"Reusing tokens refreshed concurrently for connection {connection.id}")
                return
            if not force and stale_access_token is None and not is_expiring(connection):
                logger.debug(f"Tokens already fresh for connection {connection.id}")
                return

            if not connection.refresh_token:
                raise AuthorizationError(REFRESH_FAILED_MESSAGE)

            try:
                tokens = await qb_client.refresh_access_token(connection.refresh_token)
            except AuthorizationError as e:
                logger.warning(f"Token refresh failed for connection {connection.id}: {e}")
                connection.status = "token_expired"
                connection.error_message = REFRESH_EXPIRED_MESSAGE
                await self._commit()
                raise AuthorizationError(REFRESH_FAILED_MESSAGE)

            apply_token_response(connection, tokens)
            connection.status = "active"
            connection.error_message = None
            await self._commit()
            logger.info(f"Refreshed QuickBooks tokens for connection {connection.id}")

    async def ensure_fresh(self, connection: QuickBooksConnection) -> QuickBooksConnection:
        """Refresh ahead of expiry. No-op while the token is comfortably valid."""
        if is_expiring(connection):
            logger.info(f"Token expiring soon for connection {connection.id}, refreshing")
            await self._refresh(connection)
        return connection

    # -------------------------------------------------------------------------
    # Client access
    # -------------------------------------------------------------------------

    async def get_connection(self, connection_id: str) -> QuickBooksConnection:
        """Load a usable connection or raise AuthorizationError."""
        connection = await self._load(connection_id)
        if not connection:
            raise AuthorizationError("Connection not found")
        if connection.status == "disconnected" or not connection.access_token:
            raise AuthorizationError("QuickBooks is not connected")
        if connection.status == "token_expired":
            raise AuthorizationError(connection.error_message or REFRESH_EXPIRED_MESSAGE)
        return connection

    async def get_client(self, connection_id: str) -> QuickBooksClient:
        connection = await self.get_connection(connection_id)
        await self.ensure_fresh(connection)
        return QuickBooksClient(connection)

    async def execute(
        self,
        connection: QuickBooksConnection,
        operation: Callable[[QuickBooksClient], Awaitable[T]],
    ) -> T:
        """Run ``operation`` with a fresh client; on 401 refresh once and retry once."""
        await self.ensure_fresh(connection)
        qb = QuickBooksClient(connection)
        try:
            return await operation(qb)
        except TokenExpiredError:
            logger.warning(f"QuickBooks returned 401 for connection {connection.id}, refreshing and retrying")

        try:
            await self._refresh(connection, stale_access_token=qb.access_token)
        except AuthorizationError:
            raise AuthorizationError(AUTH_FAILED_MESSAGE)

        return await operation(QuickBooksClient(connection))
