"""Bulk push runs and sync reporting.

A run selects candidates, drops entities already synced on this
connection, then pushes the rest one at a time in date order with a small
delay between provider calls. Every run writes one SyncHistory row.
"""
from collections import defaultdict
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from qbsync.config import settings
from qbsync.models.records import Expense, Invoice
from qbsync.quickbooks.errors import QuickBooksSyncError, error_result
from qbsync.quickbooks.executor import SyncExecutor
from qbsync.quickbooks.models import QuickBooksConnection, QuickBooksSyncHistory, QuickBooksSyncRecord
from qbsync.quickbooks.store import SyncHistoryStore, SyncRecordStore

logger = logging.getLogger(__name__)

RUN_IN_PROGRESS_MESSAGE = "A QuickBooks sync is already running for this connection"

# Process-wide: one run per connection at a time
_run_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)


def _serialize_history(history: QuickBooksSyncHistory) -> Dict[str, Any]:
    return {
        "id": history.id,
        "sync_type": history.sync_type,
        "entity_types": history.entity_types,
        "status": history.status,
        "records_synced": history.records_synced,
        "records_failed": history.records_failed,
        "error_message": history.error_message,
        "started_at": history.started_at,
        "completed_at": history.completed_at,
    }


def _serialize_record(record: QuickBooksSyncRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "entity_type": record.entity_type,
        "local_entity_id": record.local_entity_id,
        "external_entity_id": record.external_entity_id,
        "external_entity_type": record.external_entity_type,
        "status": record.status,
        "last_attempt_at": record.last_attempt_at,
        "error_message": record.error_message,
    }


def _expense_failure(expense: Expense, result: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "expense_id": expense.id,
        "description": expense.description,
        "error": result.get("error_message"),
        "error_type": result.get("error_type"),
    }


def _invoice_failure(invoice: Invoice, result: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "invoice_id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "error": result.get("error_message"),
        "error_type": result.get("error_type"),
    }


class BulkSyncOrchestrator:
    """Drives SyncExecutor across a batch and keeps the audit trail."""

    def __init__(
        self,
        db: AsyncSession,
        executor: Optional[SyncExecutor] = None,
    ):
        self.db = db
        self.executor = executor or SyncExecutor(db)
        self.records = self.executor.records
        self.history = SyncHistoryStore(db)

    # =========================================================================
    # RUN LOOP
    # =========================================================================

    async def _run(
        self,
        connection_id: str,
        entity_types: List[str],
        sync_type: str,
        items: Sequence[Any],
        sync_one: Callable[[Any], Awaitable[Dict[str, Any]]],
        describe_failure: Callable[[Any, Dict[str, Any]], Dict[str, Any]],
    ) -> Dict[str, Any]:
        lock = _run_locks[connection_id]
        if lock.locked():
            return {"error": True, "error_message": RUN_IN_PROGRESS_MESSAGE}

        async with lock:
            stale_after = timedelta(minutes=settings.QUICKBOOKS_RUN_STALE_MINUTES)
            if await self.history.has_active_run(connection_id, stale_after):
                return {"error": True, "error_message": RUN_IN_PROGRESS_MESSAGE}

            try:
                connection = await self.executor.refresher.get_connection(connection_id)
            except QuickBooksSyncError as e:
                return error_result(e)

            history = await self.history.start(connection_id, connection.user_id, entity_types, sync_type)
            logger.info(
                f"Started {sync_type} sync {history.id} of {len(items)} {'/'.join(entity_types)} "
                f"record(s) on connection {connection_id}"
            )

            synced = 0
            failed = 0
            errors: List[Dict[str, Any]] = []
            next_delay = 0.0

            try:
                for item in items:
                    if next_delay:
                        await asyncio.sleep(next_delay)
                    next_delay = settings.QUICKBOOKS_SYNC_DELAY_SECONDS

                    result = await sync_one(item)
                    if result.get("success"):
                        synced += 1
                        continue

                    failed += 1
                    errors.append(describe_failure(item, result))
                    if result.get("retry_after"):
                        next_delay = min(float(result["retry_after"]), settings.QUICKBOOKS_MAX_BACKOFF_SECONDS)
                        logger.warning(f"Rate limited during sync {history.id}, backing off {next_delay}s")

                await self.history.complete(history, synced, failed)
                await self.history.stamp_last_sync(connection_id)
            except Exception as e:
                await self.history.fail(history, str(e))
                raise

            logger.info(f"Sync {history.id} finished: {synced} synced, {failed} failed ({history.status})")

            return {
                "success": True,
                "history_id": history.id,
                "status": history.status,
                "synced": synced,
                "failed": failed,
                "total": len(items),
                "errors": errors,
            }

    # =========================================================================
    # BULK EXPENSES / INVOICES
    # =========================================================================

    async def bulk_sync_expenses(
        self,
        connection_id: str,
        owner_id: str,
        expense_ids: Optional[List[str]] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        categories: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Push every eligible expense for an owner that is not yet synced."""
        query = select(Expense).where(Expense.user_id == owner_id)
        if expense_ids:
            query = query.where(Expense.id.in_(expense_ids))
        if start_date:
            query = query.where(Expense.date >= start_date)
        if end_date:
            query = query.where(Expense.date <= end_date)
        if categories:
            query = query.where(Expense.category.in_(categories))
        query = query.order_by(Expense.date.asc(), Expense.id.asc())

        candidates = list((await self.db.execute(query)).scalars().all())
        if not candidates:
            return {"success": True, "synced": 0, "failed": 0, "total": 0, "skipped": 0,
                    "errors": [], "message": "No expenses to sync"}

        already = await self.records.synced_ids(connection_id, "expense")
        pending = [e for e in candidates if e.id not in already]
        skipped = len(candidates) - len(pending)
        if not pending:
            return {"success": True, "synced": 0, "failed": 0, "total": 0, "skipped": skipped,
                    "errors": [], "message": "All expenses already synced"}

        result = await self._run(
            connection_id,
            ["expense"],
            "bulk",
            pending,
            lambda expense: self.executor.sync_expense(connection_id, expense),
            _expense_failure,
        )
        if result.get("success"):
            result["skipped"] = skipped
        return result

    async def bulk_sync_invoices(
        self,
        connection_id: str,
        owner_id: str,
        invoice_ids: Optional[List[str]] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        status: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Push every eligible invoice for an owner that is not yet synced."""
        query = select(Invoice).where(Invoice.user_id == owner_id)
        if invoice_ids:
            query = query.where(Invoice.id.in_(invoice_ids))
        if start_date:
            query = query.where(Invoice.invoice_date >= start_date)
        if end_date:
            query = query.where(Invoice.invoice_date <= end_date)
        if status:
            query = query.where(Invoice.status == status)
        query = query.order_by(Invoice.invoice_date.asc(), Invoice.id.asc())

        candidates = list((await self.db.execute(query)).scalars().all())
        if not candidates:
            return {"success": True, "synced": 0, "failed": 0, "total": 0, "skipped": 0,
                    "errors": [], "message": "No invoices to sync"}

        already = await self.records.synced_ids(connection_id, "invoice")
        pending = [i for i in candidates if i.id not in already]
        skipped = len(candidates) - len(pending)
        if not pending:
            return {"success": True, "synced": 0, "failed": 0, "total": 0, "skipped": skipped,
                    "errors": [], "message": "All invoices already synced"}

        result = await self._run(
            connection_id,
            ["invoice"],
            "bulk",
            pending,
            lambda invoice: self.executor.sync_invoice(connection_id, invoice),
            _invoice_failure,
        )
        if result.get("success"):
            result["skipped"] = skipped
        return result

    # =========================================================================
    # RETRY
    # =========================================================================

    async def retry_failed_syncs(self, connection_id: str) -> Dict[str, Any]:
        """Re-run the single-entity path for every failed ledger entry.

        Entities deleted since the failure are skipped.
        """
        failed_records = await self.records.failed_records(connection_id)
        if not failed_records:
            return {"success": True, "retried": 0, "succeeded": 0, "still_failed": 0,
                    "message": "No failed syncs to retry"}

        entities = []
        for record in failed_records:
            model = Expense if record.entity_type == "expense" else Invoice
            entity = await self.db.get(model, record.local_entity_id)
            if entity is None:
                logger.info(f"Skipping retry of deleted {record.entity_type} {record.local_entity_id}")
                continue
            entities.append((record.entity_type, entity))

        if not entities:
            return {"success": True, "retried": 0, "succeeded": 0, "still_failed": 0,
                    "message": "No failed syncs to retry"}

        async def sync_one(pair):
            entity_type, entity = pair
            if entity_type == "expense":
                return await self.executor.sync_expense(connection_id, entity)
            return await self.executor.sync_invoice(connection_id, entity)

        def describe_failure(pair, result):
            entity_type, entity = pair
            if entity_type == "expense":
                return _expense_failure(entity, result)
            return _invoice_failure(entity, result)

        entity_types = sorted({entity_type for entity_type, _ in entities})
        result = await self._run(connection_id, entity_types, "retry", entities, sync_one, describe_failure)
        if not result.get("success"):
            return result

        return {
            "success": True,
            "history_id": result["history_id"],
            "retried": result["total"],
            "succeeded": result["synced"],
            "still_failed": result["failed"],
            "errors": result["errors"],
        }

    # =========================================================================
    # REPORTING
    # =========================================================================

    async def get_sync_status(self, owner_id: str) -> Dict[str, Any]:
        """Ledger counts for the owner's connection."""
        result = await self.db.execute(
            select(QuickBooksConnection).where(QuickBooksConnection.user_id == owner_id)
        )
        connection = result.scalar_one_or_none()
        if not connection:
            return {
                "connected": False,
                "status": "not_connected",
                "last_sync_at": None,
                "stats": {"expenses_synced": 0, "invoices_synced": 0, "pending": 0, "failed": 0},
            }

        return {
            "connected": connection.status == "active",
            "status": connection.status,
            "last_sync_at": connection.last_sync_at,
            "stats": {
                "expenses_synced": await self.records.count(connection.id, "synced", "expense"),
                "invoices_synced": await self.records.count(connection.id, "synced", "invoice"),
                "pending": await self.records.count(connection.id, "pending"),
                "failed": await self.records.count(connection.id, "failed"),
            },
        }

    async def get_sync_history(self, connection_id: str, limit: int = 10) -> Dict[str, Any]:
        runs = await self.history.recent(connection_id, limit)
        return {"success": True, "history": [_serialize_history(run) for run in runs]}

    async def get_sync_record(
        self,
        connection_id: str,
        entity_type: str,
        local_entity_id: str,
    ) -> Optional[Dict[str, Any]]:
        record = await self.records.get(connection_id, entity_type, local_entity_id)
        return _serialize_record(record) if record else None
