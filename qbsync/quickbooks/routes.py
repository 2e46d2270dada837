"""QuickBooks API Routes.

Endpoints:
- GET /quickbooks/status - Check connection status
- GET /quickbooks/connect - Start OAuth flow
- GET /quickbooks/callback - OAuth callback
- POST /quickbooks/disconnect - Disconnect QuickBooks
- DELETE /quickbooks/connection - Delete connection and its sync data
- POST /quickbooks/verify - Live connection check
- GET /quickbooks/accounts - Expense accounts for mapping
- GET /quickbooks/mappings - Category mapping status
- POST /quickbooks/mappings/auto - Auto-map categories
- PUT /quickbooks/mappings - Manually map a category
- DELETE /quickbooks/mappings/{category} - Remove a category mapping
- POST /quickbooks/sync - Push expenses/invoices to QuickBooks
- GET /quickbooks/sync/status - Sync ledger counts
- GET /quickbooks/sync/history - Recent sync runs
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import logging

from qbsync.database import get_db
from qbsync.models.records import Expense, Invoice
from qbsync.quickbooks import schemas
from qbsync.quickbooks.bulk import BulkSyncOrchestrator
from qbsync.quickbooks.connection import ConnectionManager
from qbsync.quickbooks.errors import ConfigurationError
from qbsync.quickbooks.executor import SyncExecutor
from qbsync.quickbooks.mapping import AccountMapper
from qbsync.quickbooks.models import QuickBooksConnection


router = APIRouter()
logger = logging.getLogger(__name__)


async def _require_connection(db: AsyncSession, user_id: str) -> QuickBooksConnection:
    connection = await ConnectionManager(db).get_connection(user_id)
    if not connection:
        raise HTTPException(status_code=404, detail="QuickBooks is not connected")
    return connection


def _raise_on_error(result: dict, status_code: int = 400) -> dict:
    if result.get("error"):
        raise HTTPException(status_code=status_code, detail=result.get("error_message"))
    return result


# ============================================================================
# CONNECTION STATUS
# ============================================================================

@router.get("/status", response_model=schemas.QuickBooksConnectionStatus)
async def get_quickbooks_status(
    user_id: str = Query(...),
    db: AsyncSession = Depends(get_db)
):
    """
    Get the current QuickBooks connection status for a user.
    """
    status = await ConnectionManager(db).get_connection_status(user_id)
    return schemas.QuickBooksConnectionStatus(**status)


@router.post("/verify")
async def verify_quickbooks_connection(
    user_id: str = Query(...),
    db: AsyncSession = Depends(get_db)
):
    return await ConnectionManager(db).verify_connection(user_id)


# ============================================================================
# OAUTH FLOW
# ============================================================================

@router.get("/connect", response_model=schemas.QuickBooksAuthUrl)
async def connect_quickbooks(
    user_id: str = Query(...),
    reconnect: bool = Query(False),
    redirect_uri: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db)
):
    """
    Start the QuickBooks OAuth flow.
    Returns the authorization URL to redirect the user to.
    """
    manager = ConnectionManager(db)
    existing = await manager.get_connection(user_id)
    try:
        result = await manager.get_authorization_url(
            user_id,
            redirect_uri=redirect_uri,
            reconnect=reconnect or existing is not None,
            connection_id=existing.id if existing else None,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=e.message)

    return schemas.QuickBooksAuthUrl(auth_url=result["auth_url"], state=result["state"])


@router.get("/callback")
async def quickbooks_callback(
    code: str = Query(...),
    state: str = Query(...),
    realmId: str = Query(...),  # QuickBooks passes company ID as realmId
    db: AsyncSession = Depends(get_db)
):
    """
    OAuth callback endpoint.
    Exchanges the authorization code for tokens and stores the connection.
    New connections get their categories auto-mapped.
    """
    try:
        result = await ConnectionManager(db).handle_oauth_callback(code, state, realmId)
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=e.message)
    _raise_on_error(result)

    if not result["updated"]:
        mapping = await AccountMapper(db).auto_map_categories(result["connection_id"])
        if mapping.get("error"):
            logger.warning(f"Auto-map after connect failed: {mapping.get('error_message')}")
        else:
            result["auto_mapping"] = mapping

    return result


@router.post("/disconnect")
async def disconnect_quickbooks(
    user_id: str = Query(...),
    db: AsyncSession = Depends(get_db)
):
    return _raise_on_error(await ConnectionManager(db).disconnect_connection(user_id), status_code=404)


@router.delete("/connection")
async def delete_quickbooks_connection(
    user_id: str = Query(...),
    db: AsyncSession = Depends(get_db)
):
    return _raise_on_error(await ConnectionManager(db).delete_connection(user_id), status_code=404)


# ============================================================================
# ACCOUNTS & MAPPINGS
# ============================================================================

@router.get("/accounts")
async def list_quickbooks_expense_accounts(
    user_id: str = Query(...),
    db: AsyncSession = Depends(get_db)
):
    connection = await _require_connection(db, user_id)
    return _raise_on_error(await AccountMapper(db).fetch_external_expense_accounts(connection.id), status_code=502)


@router.get("/mappings")
async def get_category_mappings(
    user_id: str = Query(...),
    db: AsyncSession = Depends(get_db)
):
    connection = await _require_connection(db, user_id)
    return await AccountMapper(db).get_mapping_status(connection.id)


@router.post("/mappings/auto")
async def auto_map_categories(
    user_id: str = Query(...),
    db: AsyncSession = Depends(get_db)
):
    connection = await _require_connection(db, user_id)
    return _raise_on_error(await AccountMapper(db).auto_map_categories(connection.id))


@router.put("/mappings")
async def upsert_category_mapping(
    request: schemas.CategoryMappingRequest,
    user_id: str = Query(...),
    db: AsyncSession = Depends(get_db)
):
    connection = await _require_connection(db, user_id)
    result = await AccountMapper(db).upsert_mapping(
        connection.id,
        user_id,
        request.category,
        request.account_id,
        request.account_name,
        request.account_type,
    )
    return _raise_on_error(result)


@router.delete("/mappings/{category}")
async def delete_category_mapping(
    category: str,
    user_id: str = Query(...),
    db: AsyncSession = Depends(get_db)
):
    connection = await _require_connection(db, user_id)
    return _raise_on_error(await AccountMapper(db).delete_mapping(connection.id, category), status_code=404)


# ============================================================================
# SYNC
# ============================================================================

@router.post("/sync")
async def sync_to_quickbooks(
    request: schemas.QuickBooksSyncRequest,
    user_id: str = Query(...),
    db: AsyncSession = Depends(get_db)
):
    """
    Push data to QuickBooks.

    Actions: expense, invoice (single entity by entity_id), bulk-expenses,
    bulk-invoices (optional filters) and retry-failed.
    """
    connection = await _require_connection(db, user_id)
    orchestrator = BulkSyncOrchestrator(db, SyncExecutor(db))

    if request.action in ("expense", "invoice"):
        if not request.entity_id:
            raise HTTPException(status_code=400, detail="entity_id is required")
        model = Expense if request.action == "expense" else Invoice
        entity = await db.get(model, request.entity_id)
        if not entity or entity.user_id != user_id:
            raise HTTPException(status_code=404, detail=f"{request.action.capitalize()} not found")
        if request.action == "expense":
            return await orchestrator.executor.sync_expense(connection.id, entity)
        return await orchestrator.executor.sync_invoice(connection.id, entity)

    if request.action == "bulk-expenses":
        return await orchestrator.bulk_sync_expenses(
            connection.id,
            user_id,
            expense_ids=request.entity_ids,
            start_date=request.start_date,
            end_date=request.end_date,
            categories=request.categories,
        )

    if request.action == "bulk-invoices":
        return await orchestrator.bulk_sync_invoices(
            connection.id,
            user_id,
            invoice_ids=request.entity_ids,
            start_date=request.start_date,
            end_date=request.end_date,
            status=request.status,
        )

    return await orchestrator.retry_failed_syncs(connection.id)


@router.get("/sync/status")
async def get_sync_status(
    user_id: str = Query(...),
    db: AsyncSession = Depends(get_db)
):
    return await BulkSyncOrchestrator(db).get_sync_status(user_id)


@router.get("/sync/history")
async def get_sync_history(
    user_id: str = Query(...),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db)
):
    connection = await _require_connection(db, user_id)
    return await BulkSyncOrchestrator(db).get_sync_history(connection.id, limit)
