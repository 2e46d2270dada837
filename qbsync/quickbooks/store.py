"""Sync ledger and audit trail persistence.

SyncRecordStore keeps one row per (connection, entity_type, local_entity_id).
Rows are written only after an attempt completes; there is no in-flight
state, so a crash mid-attempt simply leaves the entity unrecorded.

SyncHistoryStore keeps one append-only row per bulk or retry run.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Literal, Optional, Set
import logging

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from qbsync.quickbooks.errors import PersistenceError
from qbsync.quickbooks.models import QuickBooksConnection, QuickBooksSyncRecord, QuickBooksSyncHistory

logger = logging.getLogger(__name__)

EntityType = Literal["expense", "invoice"]
RecordStatus = Literal["pending", "synced", "failed"]

EXTERNAL_ENTITY_TYPES: Dict[str, str] = {
    "expense": "Purchase",
    "invoice": "Invoice",
}

# Allowed sync record transitions; None is "no record yet"
RECORD_TRANSITIONS: Dict[Optional[str], Set[str]] = {
    None: {"pending", "synced", "failed"},
    "pending": {"pending", "synced", "failed"},
    "synced": {"synced", "failed"},
    "failed": {"synced", "failed"},
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SyncRecordStore:
    """Idempotency ledger for pushed entities."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(
        self,
        connection_id: str,
        entity_type: EntityType,
        local_entity_id: str,
    ) -> Optional[QuickBooksSyncRecord]:
        """Load the ledger row for one entity.

        Raises:
            PersistenceError: the store could not be read.
        """
        try:
            result = await self.db.execute(
                select(QuickBooksSyncRecord).where(
                    QuickBooksSyncRecord.connection_id == connection_id,
                    QuickBooksSyncRecord.entity_type == entity_type,
                    QuickBooksSyncRecord.local_entity_id == local_entity_id,
                )
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to read sync record: {e}")
        return result.scalar_one_or_none()

    async def _claim(
        self,
        connection_id: str,
        user_id: str,
        entity_type: EntityType,
        local_entity_id: str,
    ) -> QuickBooksSyncRecord:
        """Insert a pending row inside a SAVEPOINT.

        Losing an insert race on the unique key rolls back only the
        SAVEPOINT and returns the row the other writer created.
        """
        record = QuickBooksSyncRecord(
            connection_id=connection_id,
            user_id=user_id,
            entity_type=entity_type,
            local_entity_id=local_entity_id,
            status="pending",
        )
        try:
            async with self.db.begin_nested():
                self.db.add(record)
        except IntegrityError:
            logger.info(f"Sync record for {entity_type} {local_entity_id} created concurrently, updating")
            record = await self.get(connection_id, entity_type, local_entity_id)
            if record is None:
                raise PersistenceError(f"Sync record for {entity_type} {local_entity_id} vanished after conflict")
        return record

    async def record(
        self,
        connection_id: str,
        user_id: str,
        entity_type: EntityType,
        local_entity_id: str,
        status: RecordStatus,
        external_entity_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> QuickBooksSyncRecord:
        """Upsert the ledger row for one entity and commit.

        Raises:
            ValueError: the transition is not allowed by the record state machine.
            PersistenceError: the store rejected the write.
        """
        try:
            record = await self.get(connection_id, entity_type, local_entity_id)
            if record is None:
                record = await self._claim(connection_id, user_id, entity_type, local_entity_id)

            if status not in RECORD_TRANSITIONS[record.status]:
                raise ValueError(f"Invalid sync record transition {record.status!r} -> {status!r}")

            record.status = status
            record.last_attempt_at = _now()
            record.external_entity_type = EXTERNAL_ENTITY_TYPES[entity_type]
            if external_entity_id:
                record.external_entity_id = external_entity_id
            record.error_message = error_message if status == "failed" else None

            await self.db.commit()
            return record
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to record sync result: {e}")

    async def mark_synced(
        self,
        connection_id: str,
        user_id: str,
        entity_type: EntityType,
        local_entity_id: str,
        external_entity_id: str,
    ) -> QuickBooksSyncRecord:
        return await self.record(
            connection_id, user_id, entity_type, local_entity_id,
            "synced", external_entity_id=external_entity_id,
        )

    async def mark_failed(
        self,
        connection_id: str,
        user_id: str,
        entity_type: EntityType,
        local_entity_id: str,
        error_message: str,
    ) -> QuickBooksSyncRecord:
        return await self.record(
            connection_id, user_id, entity_type, local_entity_id,
            "failed", error_message=error_message,
        )

    async def synced_ids(self, connection_id: str, entity_type: EntityType) -> Set[str]:
        """Local ids already delivered for this connection."""
        result = await self.db.execute(
            select(QuickBooksSyncRecord.local_entity_id).where(
                QuickBooksSyncRecord.connection_id == connection_id,
                QuickBooksSyncRecord.entity_type == entity_type,
                QuickBooksSyncRecord.status == "synced",
            )
        )
        return set(result.scalars().all())

    async def failed_records(self, connection_id: str) -> List[QuickBooksSyncRecord]:
        result = await self.db.execute(
            select(QuickBooksSyncRecord)
            .where(
                QuickBooksSyncRecord.connection_id == connection_id,
                QuickBooksSyncRecord.status == "failed",
            )
            .order_by(QuickBooksSyncRecord.last_attempt_at, QuickBooksSyncRecord.id)
        )
        return list(result.scalars().all())

    async def count(
        self,
        connection_id: str,
        status: RecordStatus,
        entity_type: Optional[EntityType] = None,
    ) -> int:
        query = select(func.count(QuickBooksSyncRecord.id)).where(
            QuickBooksSyncRecord.connection_id == connection_id,
            QuickBooksSyncRecord.status == status,
        )
        if entity_type:
            query = query.where(QuickBooksSyncRecord.entity_type == entity_type)
        result = await self.db.execute(query)
        return result.scalar_one()


class SyncHistoryStore:
    """Audit trail of bulk and retry runs."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to write sync history: {e}")

    async def start(
        self,
        connection_id: str,
        user_id: str,
        entity_types: List[str],
        sync_type: str = "bulk",
    ) -> QuickBooksSyncHistory:
        history = QuickBooksSyncHistory(
            connection_id=connection_id,
            user_id=user_id,
            sync_type=sync_type,
            entity_types=list(entity_types),
            status="started",
            records_synced=0,
            records_failed=0,
            started_at=_now(),
        )
        self.db.add(history)
        await self._commit()
        return history

    async def complete(
        self,
        history: QuickBooksSyncHistory,
        synced: int,
        failed: int,
        error_message: Optional[str] = None,
    ) -> QuickBooksSyncHistory:
        """Finalize a run: completed (no failures), partial (some) or failed (all)."""
        if failed == 0:
            status = "completed"
        elif synced == 0:
            status = "failed"
        else:
            status = "partial"

        history.status = status
        history.records_synced = synced
        history.records_failed = failed
        history.error_message = error_message
        history.completed_at = _now()
        await self._commit()
        return history

    async def fail(self, history: QuickBooksSyncHistory, error_message: str) -> None:
        """Best-effort finalization after the run itself blew up."""
        try:
            await self.db.rollback()
            history.status = "failed"
            history.error_message = error_message
            history.completed_at = _now()
            await self.db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Could not mark sync history {history.id} as failed: {e}")

    async def has_active_run(self, connection_id: str, stale_after: timedelta) -> bool:
        """True if a run on this connection started recently and never finished."""
        cutoff = _now() - stale_after
        result = await self.db.execute(
            select(func.count(QuickBooksSyncHistory.id)).where(
                QuickBooksSyncHistory.connection_id == connection_id,
                QuickBooksSyncHistory.status == "started",
                QuickBooksSyncHistory.started_at >= cutoff,
            )
        )
        return result.scalar_one() > 0

    async def recent(self, connection_id: str, limit: int = 10) -> List[QuickBooksSyncHistory]:
        result = await self.db.execute(
            select(QuickBooksSyncHistory)
            .where(QuickBooksSyncHistory.connection_id == connection_id)
            .order_by(QuickBooksSyncHistory.started_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def stamp_last_sync(self, connection_id: str) -> None:
        result = await self.db.execute(
            select(QuickBooksConnection).where(QuickBooksConnection.id == connection_id)
        )
        connection = result.scalar_one_or_none()
        if connection:
            connection.last_sync_at = _now()
            await self._commit()
