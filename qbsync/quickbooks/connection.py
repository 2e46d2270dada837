"""QuickBooks connection lifecycle.

Connection status transitions:

    not_connected -> active            (OAuth success)
    active        -> token_expired     (refresh failure)
    active        -> error             (verify / API failure)
    any           -> disconnected      (explicit disconnect)
    token_expired | error | disconnected -> active  (reconnect reuses the row)
"""
from datetime import timedelta
from typing import Any, Dict, Optional
import logging

import httpx

from sqlalchemy import select, delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from qbsync.quickbooks import client as qb_client
from qbsync.quickbooks.client import QuickBooksClient
from qbsync.quickbooks.errors import (
    AuthorizationError,
    PersistenceError,
    QuickBooksSyncError,
    error_result,
)
from qbsync.quickbooks.models import (
    QuickBooksConnection,
    QuickBooksAccountMapping,
    QuickBooksSyncRecord,
    QuickBooksSyncHistory,
)
from qbsync.quickbooks.state import decode_state, encode_state
from qbsync.quickbooks.tokens import TokenRefresher, apply_token_response, is_expiring

logger = logging.getLogger(__name__)

DEFAULT_COMPANY_NAME = "Unknown Company"
VERIFY_FAILED_MESSAGE = "Failed to verify connection with QuickBooks"


class ConnectionManager:
    """OAuth authorize/callback/disconnect/delete and connection status."""

    def __init__(self, db: AsyncSession, refresher: Optional[TokenRefresher] = None):
        self.db = db
        self.refresher = refresher or TokenRefresher(db)

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to save QuickBooks connection: {e}")

    async def get_connection(self, owner_id: str) -> Optional[QuickBooksConnection]:
        result = await self.db.execute(
            select(QuickBooksConnection).where(QuickBooksConnection.user_id == owner_id)
        )
        return result.scalar_one_or_none()

    # =========================================================================
    # OAUTH FLOW
    # =========================================================================

    async def get_authorization_url(
        self,
        owner_id: str,
        redirect_uri: Optional[str] = None,
        reconnect: bool = False,
        connection_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build the authorize redirect for an owner.

        Raises:
            ConfigurationError: if the OAuth app credentials are missing.
        """
        qb_client.ensure_credentials()
        state = encode_state(owner_id, reconnect=reconnect, connection_id=connection_id)
        auth_url = qb_client.get_authorization_url(state, redirect_uri)
        logger.info(f"Generated QuickBooks authorization URL for user: {owner_id} (reconnect={reconnect})")
        return {"success": True, "auth_url": auth_url, "state": state}

    async def handle_oauth_callback(
        self,
        code: str,
        state: str,
        realm_id: str,
        redirect_uri: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Complete the OAuth flow and upsert the owner's connection."""
        try:
            state_data = decode_state(state)
        except AuthorizationError as e:
            logger.warning(f"OAuth callback rejected: {e}")
            return error_result(e)

        owner_id = state_data["owner_id"]

        try:
            tokens = await qb_client.exchange_code_for_tokens(code, redirect_uri)
        except AuthorizationError as e:
            logger.error(f"QuickBooks code exchange failed for user {owner_id}: {e}")
            return error_result(e)

        connection = await self.get_connection(owner_id)
        is_new = connection is None
        if is_new:
            connection = QuickBooksConnection(
                user_id=owner_id,
                auto_sync_expenses=True,
                auto_sync_invoices=True,
            )
            self.db.add(connection)
        elif connection.realm_id and connection.realm_id != realm_id:
            # Different company file: cached payment accounts no longer apply
            connection.default_bank_account_id = None
            connection.default_bank_account_name = None
            connection.default_cc_account_id = None
            connection.default_cc_account_name = None

        connection.realm_id = realm_id
        apply_token_response(connection, tokens)
        connection.status = "active"
        connection.error_message = None

        company_name = await self._fetch_company_name(connection)
        if company_name:
            connection.company_name = company_name
        elif is_new or not connection.company_name:
            connection.company_name = DEFAULT_COMPANY_NAME

        await self._commit()
        logger.info(f"QuickBooks connected for user: {owner_id}, realm: {realm_id}")

        return {
            "success": True,
            "connection_id": connection.id,
            "company_name": connection.company_name,
            "updated": not is_new,
        }

    async def _fetch_company_name(self, connection: QuickBooksConnection) -> Optional[str]:
        """Best-effort display name lookup."""
        try:
            info = await QuickBooksClient(connection).get_company_info()
        except QuickBooksSyncError as e:
            logger.warning(f"Could not fetch QuickBooks company info: {e}")
            return None
        return info.get("company_name")

    # =========================================================================
    # DISCONNECT / DELETE
    # =========================================================================

    async def disconnect_connection(self, owner_id: str) -> Dict[str, Any]:
        """Revoke at the provider (best effort) and clear stored tokens."""
        connection = await self.get_connection(owner_id)
        if not connection:
            return {"error": True, "error_message": "No connection found"}

        if connection.refresh_token:
            try:
                revoked = await qb_client.revoke_token(connection.refresh_token)
                if not revoked:
                    logger.warning(f"QuickBooks token revoke was not accepted for user: {owner_id}")
            except httpx.HTTPError as e:
                logger.warning(f"QuickBooks token revoke failed for user {owner_id}: {e}")

        connection.access_token = None
        connection.refresh_token = None
        connection.token_expires_at = None
        connection.refresh_token_expires_at = None
        connection.status = "disconnected"
        connection.error_message = None
        await self._commit()

        logger.info(f"QuickBooks disconnected for user: {owner_id}")
        return {"success": True}

    async def delete_connection(self, owner_id: str) -> Dict[str, Any]:
        """Disconnect, then remove the connection and everything hanging off it."""
        connection = await self.get_connection(owner_id)
        if not connection:
            return {"error": True, "error_message": "No connection found"}

        await self.disconnect_connection(owner_id)

        connection_id = connection.id
        try:
            await self.db.execute(
                delete(QuickBooksAccountMapping).where(QuickBooksAccountMapping.connection_id == connection_id)
            )
            await self.db.execute(
                delete(QuickBooksSyncRecord).where(QuickBooksSyncRecord.connection_id == connection_id)
            )
            await self.db.execute(
                delete(QuickBooksSyncHistory).where(QuickBooksSyncHistory.connection_id == connection_id)
            )
            await self.db.delete(connection)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to delete QuickBooks connection: {e}")

        logger.info(f"QuickBooks connection {connection_id} deleted for user: {owner_id}")
        return {"success": True}

    # =========================================================================
    # STATUS
    # =========================================================================

    async def update_connection_status(
        self,
        connection_id: str,
        status: str,
        error_message: Optional[str] = None,
    ) -> None:
        result = await self.db.execute(
            select(QuickBooksConnection).where(QuickBooksConnection.id == connection_id)
        )
        connection = result.scalar_one_or_none()
        if not connection:
            return
        connection.status = status
        connection.error_message = error_message
        await self._commit()

    async def _count_synced(self, connection_id: str, entity_type: str) -> int:
        result = await self.db.execute(
            select(func.count(QuickBooksSyncRecord.id)).where(
                QuickBooksSyncRecord.connection_id == connection_id,
                QuickBooksSyncRecord.entity_type == entity_type,
                QuickBooksSyncRecord.status == "synced",
            )
        )
        return result.scalar_one()

    async def get_connection_status(self, owner_id: str) -> Dict[str, Any]:
        """Stored status, refreshing first if the access token has lapsed."""
        connection = await self.get_connection(owner_id)
        if not connection:
            return {"connected": False, "status": "not_connected"}

        if connection.status == "active" and is_expiring(connection, skew=timedelta(0)):
            try:
                await self.refresher.ensure_fresh(connection)
            except AuthorizationError as e:
                logger.info(f"Status check could not refresh tokens for user {owner_id}: {e}")

        return {
            "connected": connection.status == "active",
            "status": connection.status,
            "company_name": connection.company_name,
            "realm_id": connection.realm_id,
            "last_sync_at": connection.last_sync_at,
            "error_message": connection.error_message,
            "connected_at": connection.created_at,
            "sync_stats": {
                "expenses": await self._count_synced(connection.id, "expense"),
                "invoices": await self._count_synced(connection.id, "invoice"),
            },
        }

    async def verify_connection(self, owner_id: str) -> Dict[str, Any]:
        """Live check: refresh if needed, then one read-only company info call."""
        connection = await self.get_connection(owner_id)
        if not connection:
            return {"error": True, "error_message": "No connection found", "valid": False, "status": "not_connected"}

        if connection.status == "disconnected" or not connection.access_token:
            return {"valid": False, "status": connection.status, "error_message": "QuickBooks is not connected"}

        try:
            info = await self.refresher.execute(connection, lambda qb: qb.get_company_info())
        except AuthorizationError as e:
            if connection.status != "token_expired":
                connection.status = "token_expired"
                connection.error_message = e.message
                await self._commit()
            return {"valid": False, "status": "token_expired", "error_message": connection.error_message}
        except QuickBooksSyncError as e:
            logger.error(f"QuickBooks verification failed for user {owner_id}: {e}")
            connection.status = "error"
            connection.error_message = VERIFY_FAILED_MESSAGE
            await self._commit()
            return {"valid": False, "status": "error", "error_message": VERIFY_FAILED_MESSAGE}

        connection.status = "active"
        connection.error_message = None
        if info.get("company_name"):
            connection.company_name = info["company_name"]
        await self._commit()

        return {"valid": True, "status": "active", "company_name": connection.company_name}
