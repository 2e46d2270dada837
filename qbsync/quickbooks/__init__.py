"""QuickBooks integration module.

Provides OAuth2 connection management, category-to-account mapping and
one-way push sync of expenses and invoices to QuickBooks Online.
"""

from qbsync.quickbooks.models import (
    QuickBooksConnection,
    QuickBooksAccountMapping,
    QuickBooksSyncRecord,
    QuickBooksSyncHistory,
)
from qbsync.quickbooks.client import QuickBooksClient
from qbsync.quickbooks.tokens import TokenRefresher
from qbsync.quickbooks.connection import ConnectionManager
from qbsync.quickbooks.mapping import AccountMapper
from qbsync.quickbooks.executor import SyncExecutor
from qbsync.quickbooks.bulk import BulkSyncOrchestrator

__all__ = [
    "QuickBooksConnection",
    "QuickBooksAccountMapping",
    "QuickBooksSyncRecord",
    "QuickBooksSyncHistory",
    "QuickBooksClient",
    "TokenRefresher",
    "ConnectionManager",
    "AccountMapper",
    "SyncExecutor",
    "BulkSyncOrchestrator",
]
