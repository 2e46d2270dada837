"""Tests for the QuickBooks connection lifecycle."""
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import func, select

from qbsync.quickbooks import client as qb_client
from qbsync.quickbooks.connection import DEFAULT_COMPANY_NAME, VERIFY_FAILED_MESSAGE, ConnectionManager
from qbsync.quickbooks.errors import ConfigurationError
from qbsync.quickbooks.models import QuickBooksAccountMapping, QuickBooksConnection, QuickBooksSyncRecord
from qbsync.quickbooks.state import decode_state, encode_state
from qbsync.quickbooks.store import SyncRecordStore

from conftest import REALM_ID, USER_ID


async def count(db, model) -> int:
    return (await db.execute(select(func.count(model.id)))).scalar_one()


# =============================================================================
# OAuth flow
# =============================================================================

class TestAuthorize:

    @pytest.mark.asyncio
    async def test_returns_url_and_signed_state(self, db):
        result = await ConnectionManager(db).get_authorization_url(USER_ID)

        assert result["success"] is True
        assert "state=" in result["auth_url"]
        assert decode_state(result["state"])["owner_id"] == USER_ID

    @pytest.mark.asyncio
    async def test_missing_credentials_raise(self, db, monkeypatch, qb_settings):
        monkeypatch.setattr(qb_settings, "QUICKBOOKS_CLIENT_ID", "")

        with pytest.raises(ConfigurationError):
            await ConnectionManager(db).get_authorization_url(USER_ID)


class TestCallback:
    """Code exchange and connection upsert."""

    @pytest.mark.asyncio
    async def test_creates_connection(self, db, fake_qb):
        result = await ConnectionManager(db).handle_oauth_callback("auth-code", encode_state(USER_ID), REALM_ID)

        assert result["success"] is True
        assert result["updated"] is False
        assert result["company_name"] == "Acme Trucking"

        connection = await db.get(QuickBooksConnection, result["connection_id"])
        assert connection.user_id == USER_ID
        assert connection.realm_id == REALM_ID
        assert connection.status == "active"
        assert connection.access_token == "access-1"
        assert fake_qb.token_requests[0]["grant_type"] == "authorization_code"
        assert fake_qb.token_requests[0]["code"] == "auth-code"

    @pytest.mark.asyncio
    async def test_reconnect_reuses_row(self, db, connection, fake_qb):
        connection.status = "token_expired"
        connection.error_message = "Refresh token expired. Please reconnect."
        await db.commit()

        state = encode_state(USER_ID, reconnect=True, connection_id=connection.id)
        result = await ConnectionManager(db).handle_oauth_callback("code", state, REALM_ID)

        assert result["updated"] is True
        assert result["connection_id"] == connection.id
        assert connection.status == "active"
        assert connection.error_message is None
        assert await count(db, QuickBooksConnection) == 1

    @pytest.mark.asyncio
    async def test_new_realm_clears_cached_accounts(self, db, connection):
        connection.default_bank_account_id = "3"
        connection.default_cc_account_id = "7"
        await db.commit()

        await ConnectionManager(db).handle_oauth_callback("code", encode_state(USER_ID), "other-realm")

        assert connection.realm_id == "other-realm"
        assert connection.default_bank_account_id is None
        assert connection.default_cc_account_id is None

    @pytest.mark.asyncio
    async def test_company_lookup_failure_is_tolerated(self, db, fake_qb):
        fake_qb.fail_company_info = True

        result = await ConnectionManager(db).handle_oauth_callback("code", encode_state(USER_ID), REALM_ID)

        assert result["success"] is True
        assert result["company_name"] == DEFAULT_COMPANY_NAME

    @pytest.mark.asyncio
    async def test_expired_state_rejected(self, db, fake_qb):
        issued = datetime.now(timezone.utc) - timedelta(minutes=15)
        state = encode_state(USER_ID, issued_at=issued)

        result = await ConnectionManager(db).handle_oauth_callback("code", state, REALM_ID)

        assert result["error"] is True
        assert result["error_message"] == "Authorization request expired"
        assert fake_qb.token_requests == []
        assert await count(db, QuickBooksConnection) == 0

    @pytest.mark.asyncio
    async def test_invalid_state_rejected(self, db):
        result = await ConnectionManager(db).handle_oauth_callback("code", "forged", REALM_ID)

        assert result["error_message"] == "Invalid callback state"

    @pytest.mark.asyncio
    async def test_failed_exchange(self, db, monkeypatch):
        monkeypatch.setattr(
            qb_client, "TOKEN_TRANSPORT",
            httpx.MockTransport(lambda request: httpx.Response(400, json={"error": "invalid_grant"})),
        )

        result = await ConnectionManager(db).handle_oauth_callback("code", encode_state(USER_ID), REALM_ID)

        assert result["error"] is True
        assert result["error_type"] == "AuthorizationError"
        assert await count(db, QuickBooksConnection) == 0


# =============================================================================
# Disconnect / delete
# =============================================================================

class TestDisconnect:

    @pytest.mark.asyncio
    async def test_disconnect_revokes_and_clears_tokens(self, db, connection, fake_qb):
        result = await ConnectionManager(db).disconnect_connection(USER_ID)

        assert result == {"success": True}
        assert fake_qb.revoked == ["refresh-0"]
        assert connection.status == "disconnected"
        assert connection.access_token is None
        assert connection.refresh_token is None

    @pytest.mark.asyncio
    async def test_disconnect_without_connection(self, db):
        result = await ConnectionManager(db).disconnect_connection(USER_ID)

        assert result["error"] is True

    @pytest.mark.asyncio
    async def test_delete_then_reconnect_starts_clean(self, db, connection, map_category):
        await map_category(connection, "Fuel", "42", "Fuel and Oil")
        await SyncRecordStore(db).mark_synced(connection.id, USER_ID, "expense", "exp_1", "1001")
        old_id = connection.id
        manager = ConnectionManager(db)

        assert (await manager.delete_connection(USER_ID))["success"] is True
        assert await count(db, QuickBooksConnection) == 0
        assert await count(db, QuickBooksAccountMapping) == 0
        assert await count(db, QuickBooksSyncRecord) == 0

        result = await manager.handle_oauth_callback("code", encode_state(USER_ID), REALM_ID)

        assert result["updated"] is False
        assert result["connection_id"] != old_id
        assert await count(db, QuickBooksAccountMapping) == 0
        assert await count(db, QuickBooksSyncRecord) == 0


# =============================================================================
# Status / verify
# =============================================================================

class TestStatus:

    @pytest.mark.asyncio
    async def test_not_connected(self, db):
        status = await ConnectionManager(db).get_connection_status(USER_ID)

        assert status == {"connected": False, "status": "not_connected"}

    @pytest.mark.asyncio
    async def test_connected_with_stats(self, db, connection):
        store = SyncRecordStore(db)
        await store.mark_synced(connection.id, USER_ID, "expense", "exp_1", "1001")
        await store.mark_synced(connection.id, USER_ID, "invoice", "inv_1", "2001")
        await store.mark_failed(connection.id, USER_ID, "expense", "exp_2", "boom")

        status = await ConnectionManager(db).get_connection_status(USER_ID)

        assert status["connected"] is True
        assert status["company_name"] == "Acme Trucking"
        assert status["sync_stats"] == {"expenses": 1, "invoices": 1}

    @pytest.mark.asyncio
    async def test_lapsed_token_refreshed_on_status(self, db, connection, fake_qb):
        connection.token_expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        await db.commit()

        status = await ConnectionManager(db).get_connection_status(USER_ID)

        assert status["status"] == "active"
        assert connection.access_token == "access-1"

    @pytest.mark.asyncio
    async def test_verify_success(self, db, connection, fake_qb):
        fake_qb.company_name = "Acme Trucking LLC"

        result = await ConnectionManager(db).verify_connection(USER_ID)

        assert result == {"valid": True, "status": "active", "company_name": "Acme Trucking LLC"}

    @pytest.mark.asyncio
    async def test_verify_provider_failure(self, db, connection, fake_qb):
        fake_qb.fail_company_info = True

        result = await ConnectionManager(db).verify_connection(USER_ID)

        assert result["valid"] is False
        assert result["status"] == "error"
        assert connection.error_message == VERIFY_FAILED_MESSAGE

    @pytest.mark.asyncio
    async def test_verify_auth_failure(self, db, connection, fake_qb):
        fake_qb.unauthorized_tokens.add("access-0")
        fake_qb.fail_refresh = True

        result = await ConnectionManager(db).verify_connection(USER_ID)

        assert result["valid"] is False
        assert result["status"] == "token_expired"
        assert connection.status == "token_expired"
