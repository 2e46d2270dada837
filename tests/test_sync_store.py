"""
Tests for the sync ledger.

Covers the record state machine and the insert race on the
(connection, entity type, local id) unique key.
"""
from decimal import Decimal
from unittest.mock import patch

import pytest

from qbsync.quickbooks.store import SyncRecordStore

from conftest import USER_ID


class TestSyncRecordStore:

    @pytest.mark.asyncio
    async def test_first_write_creates_row(self, db, connection):
        record = await SyncRecordStore(db).mark_failed(connection.id, USER_ID, "expense", "exp_new", "boom")

        assert record.status == "failed"
        assert record.error_message == "boom"
        assert record.external_entity_type == "Purchase"
        assert record.last_attempt_at is not None

    @pytest.mark.asyncio
    async def test_synced_cannot_return_to_pending(self, db, connection):
        store = SyncRecordStore(db)
        await store.mark_synced(connection.id, USER_ID, "invoice", "inv_1", "501")

        with pytest.raises(ValueError):
            await store.record(connection.id, USER_ID, "invoice", "inv_1", "pending")

        record = await store.get(connection.id, "invoice", "inv_1")
        assert record.status == "synced"
        assert record.external_entity_id == "501"

    @pytest.mark.asyncio
    async def test_lost_insert_race_updates_existing_row(self, db, connection, make_expense):
        store = SyncRecordStore(db)
        await store.mark_failed(connection.id, USER_ID, "expense", "exp_race", "boom")
        bystander = await make_expense(id="exp_bystander")

        real_get = store.get
        reads = []

        async def stale_first_read(*args):
            # The first read misses the row another writer already committed
            reads.append(args)
            if len(reads) == 1:
                return None
            return await real_get(*args)

        with patch.object(store, "get", side_effect=stale_first_read):
            record = await store.mark_synced(connection.id, USER_ID, "expense", "exp_race", "1001")

        assert len(reads) == 2
        assert record.status == "synced"
        assert record.external_entity_id == "1001"
        assert record.error_message is None
        assert await store.count(connection.id, "synced", "expense") == 1
        assert await store.count(connection.id, "failed", "expense") == 0
        # The conflict rolled back only its SAVEPOINT
        assert bystander.amount == Decimal("120.50")
        assert connection.realm_id == "9130350000000001"
