"""Single-entity push to QuickBooks.

``SyncExecutor.sync_expense`` and ``SyncExecutor.sync_invoice`` never raise
for provider or mapping failures: the outcome is written to the sync ledger
and returned as a result dict. Only ConfigurationError and PersistenceError
propagate.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import asyncio
import logging

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from qbsync.models.records import Expense, Invoice
from qbsync.quickbooks.client import QuickBooksClient
from qbsync.quickbooks.errors import (
    ConfigurationError,
    MappingError,
    PersistenceError,
    QuickBooksSyncError,
    error_result,
)
from qbsync.quickbooks.mapping import AccountMapper
from qbsync.quickbooks.models import QuickBooksConnection, QuickBooksAccountMapping
from qbsync.quickbooks.schemas import ProviderAccount, ProviderCustomer, ProviderTransaction
from qbsync.quickbooks.store import SyncRecordStore
from qbsync.quickbooks.tokens import TokenRefresher

logger = logging.getLogger(__name__)


# ============================================================================
# PAYLOAD MAPPING
# ============================================================================

# Host payment method -> QuickBooks PaymentType
PAYMENT_METHOD_MAP: Dict[str, str] = {
    "Credit Card": "CreditCard",
    "Debit Card": "CreditCard",
    "Fuel Card": "CreditCard",
    "Cash": "Cash",
    "Other": "Cash",
    "Check": "Check",
    "Bank Transfer": "Check",
    "EFT": "Check",
}

DEFAULT_CUSTOMER_NAME = "Unknown Customer"
DEFAULT_INVOICE_DESCRIPTION = "Transportation Services"
GENERIC_ITEM_REF = {"value": "1", "name": "Services"}
NO_PAYMENT_ACCOUNT_MESSAGE = "No Bank or Credit Card account found in QuickBooks. Please create one first."


@dataclass
class PaymentAccount:
    id: str
    name: Optional[str]
    payment_type: str  # "CreditCard" | "Check" | "Cash"


def classify_payment_method(payment_method: Optional[str]) -> str:
    return PAYMENT_METHOD_MAP.get(payment_method or "", "Cash")


def sync_marker(local_entity_id: str) -> str:
    """Reference embedded in PrivateNote, used to spot our own records."""
    return f"Sync ID: {local_entity_id}"


def has_sync_marker(private_note: Optional[str], local_entity_id: str) -> bool:
    if not private_note:
        return False
    marker = sync_marker(local_entity_id)
    return any(part.strip() == marker for part in private_note.split("|"))


def build_purchase_payload(
    expense: Expense,
    payment_account: PaymentAccount,
    mapping: QuickBooksAccountMapping,
) -> Dict[str, Any]:
    """Map a host expense onto a QuickBooks Purchase."""
    amount = float(expense.amount)
    note_parts = [
        expense.notes,
        "(Tax Deductible)" if expense.deductible else None,
        sync_marker(expense.id),
    ]

    return {
        "PaymentType": payment_account.payment_type,
        "AccountRef": {"value": payment_account.id, "name": payment_account.name},
        "TxnDate": expense.date.isoformat(),
        "TotalAmt": amount,
        "PrivateNote": " | ".join(part for part in note_parts if part),
        "Line": [
            {
                "Amount": amount,
                "DetailType": "AccountBasedExpenseLineDetail",
                "Description": expense.description,
                "AccountBasedExpenseLineDetail": {
                    "AccountRef": {"value": mapping.account_id, "name": mapping.account_name},
                },
            }
        ],
    }


def build_invoice_lines(invoice: Invoice) -> List[Dict[str, Any]]:
    """Invoice lines against the generic catalog item.

    Invoices without line items get one synthetic line for the total.
    """
    lines = []
    for line_num, item in enumerate(invoice.items or [], 1):
        quantity = float(item.quantity) if item.quantity is not None else 1.0
        if item.unit_price is not None:
            unit_price = float(item.unit_price)
        else:
            unit_price = float(item.amount or 0)
        amount = float(item.amount) if item.amount is not None else quantity * unit_price

        lines.append({
            "LineNum": line_num,
            "Amount": round(amount, 2),
            "DetailType": "SalesItemLineDetail",
            "Description": item.description or invoice.description or DEFAULT_INVOICE_DESCRIPTION,
            "SalesItemLineDetail": {
                "ItemRef": dict(GENERIC_ITEM_REF),
                "Qty": quantity,
                "UnitPrice": unit_price,
            },
        })

    if not lines:
        total = float(invoice.total_amount or 0)
        lines.append({
            "LineNum": 1,
            "Amount": total,
            "DetailType": "SalesItemLineDetail",
            "Description": invoice.description or DEFAULT_INVOICE_DESCRIPTION,
            "SalesItemLineDetail": {
                "ItemRef": dict(GENERIC_ITEM_REF),
                "Qty": 1,
                "UnitPrice": total,
            },
        })

    return lines


def build_invoice_payload(invoice: Invoice, customer_id: str) -> Dict[str, Any]:
    """Map a host invoice onto a QuickBooks Invoice."""
    payload: Dict[str, Any] = {
        "CustomerRef": {"value": customer_id},
        "TxnDate": invoice.invoice_date.isoformat(),
        "PrivateNote": sync_marker(invoice.id),
        "Line": build_invoice_lines(invoice),
    }
    if invoice.due_date:
        payload["DueDate"] = invoice.due_date.isoformat()
    if invoice.invoice_number:
        payload["DocNumber"] = invoice.invoice_number
    if invoice.notes:
        payload["CustomerMemo"] = {"value": invoice.notes}
    return payload


# Process-wide: serializes find-or-create per (connection, customer name).
# Entries are dropped once no task holds or waits on them.
_customer_locks: Dict[Tuple[str, str], asyncio.Lock] = {}
_customer_lock_users: Dict[Tuple[str, str], int] = {}


@asynccontextmanager
async def customer_lock(connection_id: str, name: str):
    key = (connection_id, name.strip().lower())
    lock = _customer_locks.get(key)
    if lock is None:
        lock = _customer_locks[key] = asyncio.Lock()
    _customer_lock_users[key] = _customer_lock_users.get(key, 0) + 1
    try:
        async with lock:
            yield
    finally:
        _customer_lock_users[key] -= 1
        if not _customer_lock_users[key]:
            del _customer_lock_users[key]
            del _customer_locks[key]


# ============================================================================
# EXECUTOR
# ============================================================================

class SyncExecutor:
    """Pushes one expense or invoice and records the outcome."""

    def __init__(
        self,
        db: AsyncSession,
        refresher: Optional[TokenRefresher] = None,
        mapper: Optional[AccountMapper] = None,
        records: Optional[SyncRecordStore] = None,
    ):
        self.db = db
        self.refresher = refresher or TokenRefresher(db)
        self.mapper = mapper or AccountMapper(db, self.refresher)
        self.records = records or SyncRecordStore(db)

    # -------------------------------------------------------------------------
    # Payment source accounts
    # -------------------------------------------------------------------------

    async def _cache_payment_account(
        self,
        connection: QuickBooksConnection,
        kind: str,
        account: ProviderAccount,
    ) -> None:
        """Remember the account on the connection. Failure is non-fatal.

        The write runs in a SAVEPOINT so a failure leaves the rest of the
        session untouched; it is committed with the ledger write that
        follows the push.
        """
        if kind == "bank":
            values = {"default_bank_account_id": account.id, "default_bank_account_name": account.name}
        else:
            values = {"default_cc_account_id": account.id, "default_cc_account_name": account.name}

        try:
            async with self.db.begin_nested():
                await self.db.execute(
                    update(QuickBooksConnection)
                    .where(QuickBooksConnection.id == connection.id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            logger.warning(f"Failed to cache {kind} account on connection {connection.id}: {e}")
            return

        for key, value in values.items():
            set_committed_value(connection, key, value)
        logger.info(f"Cached {kind} account: {account.name} ({account.id}) on connection {connection.id}")

    async def resolve_payment_account(
        self,
        connection: QuickBooksConnection,
        payment_method: Optional[str],
    ) -> PaymentAccount:
        """Payment source for an expense, preferring cached accounts.

        Credit card style methods use a Credit Card account when one exists
        and fall back to the bank account otherwise.
        """
        payment_type = classify_payment_method(payment_method)

        if payment_type == "CreditCard":
            if connection.default_cc_account_id:
                return PaymentAccount(connection.default_cc_account_id, connection.default_cc_account_name, "CreditCard")

            cc_accounts = await self.refresher.execute(connection, lambda qb: qb.get_credit_card_accounts())
            if cc_accounts:
                await self._cache_payment_account(connection, "credit_card", cc_accounts[0])
                return PaymentAccount(cc_accounts[0].id, cc_accounts[0].name, "CreditCard")

            logger.info(f"No Credit Card accounts found on connection {connection.id}, falling back to Bank account")
            payment_type = "Cash"

        if connection.default_bank_account_id:
            return PaymentAccount(connection.default_bank_account_id, connection.default_bank_account_name, payment_type)

        bank_accounts = await self.refresher.execute(connection, lambda qb: qb.get_bank_accounts())
        if bank_accounts:
            await self._cache_payment_account(connection, "bank", bank_accounts[0])
            return PaymentAccount(bank_accounts[0].id, bank_accounts[0].name, payment_type)

        raise MappingError(NO_PAYMENT_ACCOUNT_MESSAGE)

    # -------------------------------------------------------------------------
    # Provider operations (wrapped by TokenRefresher.execute)
    # -------------------------------------------------------------------------

    @staticmethod
    async def _create_purchase(qb: QuickBooksClient, local_id: str, payload: Dict[str, Any]) -> ProviderTransaction:
        # A crash between create and ledger write leaves our marker behind
        for existing in await qb.find_purchases_by_date(payload["TxnDate"]):
            if has_sync_marker(existing.private_note, local_id):
                logger.info(f"Found existing QuickBooks Purchase {existing.id} for expense {local_id}, not recreating")
                return existing
        return await qb.create_purchase(payload)

    @staticmethod
    async def _create_invoice(qb: QuickBooksClient, local_id: str, payload: Dict[str, Any]) -> ProviderTransaction:
        for existing in await qb.find_invoices_by_date(payload["TxnDate"]):
            if has_sync_marker(existing.private_note, local_id):
                logger.info(f"Found existing QuickBooks Invoice {existing.id} for invoice {local_id}, not recreating")
                return existing
        return await qb.create_invoice(payload)

    @staticmethod
    async def _find_or_create_customer(qb: QuickBooksClient, connection_id: str, name: str) -> ProviderCustomer:
        async with customer_lock(connection_id, name):
            customer = await qb.find_customer_by_name(name)
            if customer:
                return customer
            logger.info(f"Creating QuickBooks customer '{name}' for connection {connection_id}")
            return await qb.create_customer(name)

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def _already_synced(self, connection_id: str, entity_type: str, local_id: str) -> Optional[Dict[str, Any]]:
        record = await self.records.get(connection_id, entity_type, local_id)
        if record and record.status == "synced":
            return {
                "success": True,
                "already_synced": True,
                "external_entity_id": record.external_entity_id,
                "external_entity_type": record.external_entity_type,
            }
        return None

    async def sync_expense(self, connection_id: str, expense: Expense) -> Dict[str, Any]:
        """Push one expense as a QuickBooks Purchase."""
        try:
            connection = await self.refresher.get_connection(connection_id)
        except QuickBooksSyncError as e:
            return error_result(e, expense_id=expense.id)

        user_id = connection.user_id
        done = await self._already_synced(connection_id, "expense", expense.id)
        if done:
            return done

        try:
            mapping = await self.mapper.require_mapping(connection_id, expense.category)
            payment_account = await self.resolve_payment_account(connection, expense.payment_method)
            logger.debug(
                f"Using payment account {payment_account.name} ({payment_account.id}) for {expense.payment_method}"
            )
            payload = build_purchase_payload(expense, payment_account, mapping)
            purchase = await self.refresher.execute(
                connection, lambda qb: self._create_purchase(qb, expense.id, payload)
            )
        except (ConfigurationError, PersistenceError):
            raise
        except QuickBooksSyncError as e:
            logger.warning(f"Expense {expense.id} failed to sync: {e.message}")
            await self.records.mark_failed(connection_id, user_id, "expense", expense.id, e.message)
            return error_result(e, expense_id=expense.id)

        await self.records.mark_synced(connection_id, user_id, "expense", expense.id, purchase.id)
        logger.info(f"Synced expense {expense.id} -> QB Purchase {purchase.id}")

        return {
            "success": True,
            "external_entity_id": purchase.id,
            "external_entity_type": "Purchase",
            "payload": payload,
        }

    async def sync_invoice(self, connection_id: str, invoice: Invoice) -> Dict[str, Any]:
        """Push one invoice, creating the QuickBooks customer if needed."""
        try:
            connection = await self.refresher.get_connection(connection_id)
        except QuickBooksSyncError as e:
            return error_result(e, invoice_id=invoice.id)

        user_id = connection.user_id
        done = await self._already_synced(connection_id, "invoice", invoice.id)
        if done:
            return done

        customer_name = (invoice.customer_name or "").strip() or DEFAULT_CUSTOMER_NAME

        try:
            customer = await self.refresher.execute(
                connection, lambda qb: self._find_or_create_customer(qb, connection_id, customer_name)
            )
            payload = build_invoice_payload(invoice, customer.id)
            created = await self.refresher.execute(
                connection, lambda qb: self._create_invoice(qb, invoice.id, payload)
            )
        except (ConfigurationError, PersistenceError):
            raise
        except QuickBooksSyncError as e:
            logger.warning(f"Invoice {invoice.id} failed to sync: {e.message}")
            await self.records.mark_failed(connection_id, user_id, "invoice", invoice.id, e.message)
            return error_result(e, invoice_id=invoice.id)

        await self.records.mark_synced(connection_id, user_id, "invoice", invoice.id, created.id)
        logger.info(f"Synced invoice {invoice.id} -> QB Invoice {created.id}")

        return {
            "success": True,
            "external_entity_id": created.id,
            "external_entity_type": "Invoice",
            "customer_id": customer.id,
            "payload": payload,
        }
