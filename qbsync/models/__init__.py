"""
Host application models read by the sync engine.

Explicit imports only - no wildcards to prevent circular imports.
"""

from qbsync.models.base import generate_id
from qbsync.models.records import Expense, Invoice, InvoiceItem

__all__ = [
    "generate_id",
    "Expense",
    "Invoice",
    "InvoiceItem",
]
