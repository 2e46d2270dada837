"""
Expense category to QuickBooks account mapping.

Each internal expense category is matched against the QuickBooks chart of
accounts using curated rules, in three tiers:

1. exact (case-insensitive) match on the category's default account name
2. exact match on its fallback account name
3. substring match on its keywords, in keyword order

The first hit wins, so for a fixed chart of accounts the result is stable.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from qbsync.quickbooks.errors import MappingError, PersistenceError, QuickBooksSyncError, error_result
from qbsync.quickbooks.models import QuickBooksAccountMapping
from qbsync.quickbooks.schemas import ProviderAccount
from qbsync.quickbooks.tokens import TokenRefresher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CategoryRule:
    default_name: str
    fallback_name: str
    keywords: Tuple[str, ...]


EXPENSE_CATEGORIES: List[str] = [
    "Fuel",
    "Maintenance",
    "Insurance",
    "Tolls",
    "Office",
    "Permits",
    "Meals",
    "Other",
]

CATEGORY_RULES: Dict[str, CategoryRule] = {
    "Fuel": CategoryRule("Fuel and Oil", "Automobile Expense", ("fuel", "gas", "diesel", "petroleum")),
    "Maintenance": CategoryRule("Repairs and Maintenance", "Equipment Repairs", ("maintenance", "repair", "service")),
    "Insurance": CategoryRule("Insurance Expense", "Insurance", ("insurance",)),
    "Tolls": CategoryRule("Travel Expense", "Automobile Expense", ("toll", "travel", "highway")),
    "Office": CategoryRule("Office Supplies", "Office Expense", ("office", "supplies", "administrative")),
    "Permits": CategoryRule("Licenses and Permits", "Legal and Professional Fees", ("permit", "license", "registration", "fees")),
    "Meals": CategoryRule("Meals and Entertainment", "Travel Expense", ("meal", "food", "entertainment", "per diem")),
    "Other": CategoryRule("Other Expense", "Miscellaneous", ("other", "miscellaneous", "misc")),
}


def find_best_match(accounts: Sequence[ProviderAccount], category: str) -> Optional[ProviderAccount]:
    """
    Pick the QuickBooks account for an expense category.

    Args:
        accounts: Expense accounts from the chart of accounts
        category: Internal expense category

    Returns:
        The matching account, or None if no rule applies
    """
    rule = CATEGORY_RULES.get(category)
    if not rule:
        return None

    default_name = rule.default_name.lower()
    for account in accounts:
        if account.name.lower() == default_name:
            return account

    fallback_name = rule.fallback_name.lower()
    for account in accounts:
        if account.name.lower() == fallback_name:
            return account

    for keyword in rule.keywords:
        for account in accounts:
            if keyword in account.name.lower():
                return account

    return None


def _serialize_mapping(mapping: QuickBooksAccountMapping) -> Dict[str, Any]:
    return {
        "id": mapping.id,
        "category": mapping.category,
        "account_id": mapping.account_id,
        "account_name": mapping.account_name,
        "account_type": mapping.account_type,
    }


class AccountMapper:
    """Category mappings for one QuickBooks connection."""

    def __init__(self, db: AsyncSession, refresher: Optional[TokenRefresher] = None):
        self.db = db
        self.refresher = refresher or TokenRefresher(db)

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(f"Failed to save category mapping: {e}")

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_mappings(self, connection_id: str) -> List[QuickBooksAccountMapping]:
        result = await self.db.execute(
            select(QuickBooksAccountMapping)
            .where(QuickBooksAccountMapping.connection_id == connection_id)
            .order_by(QuickBooksAccountMapping.category)
        )
        return list(result.scalars().all())

    async def get_mapping_for_category(
        self,
        connection_id: str,
        category: str,
    ) -> Optional[QuickBooksAccountMapping]:
        result = await self.db.execute(
            select(QuickBooksAccountMapping).where(
                QuickBooksAccountMapping.connection_id == connection_id,
                QuickBooksAccountMapping.category == category,
            )
        )
        return result.scalar_one_or_none()

    async def require_mapping(self, connection_id: str, category: str) -> QuickBooksAccountMapping:
        """Mapping for ``category`` or MappingError."""
        mapping = await self.get_mapping_for_category(connection_id, category)
        if not mapping:
            raise MappingError(f"No QuickBooks account mapped for category: {category}")
        return mapping

    async def get_unmapped_categories(self, connection_id: str) -> List[str]:
        mapped = {m.category for m in await self.get_mappings(connection_id)}
        return [c for c in EXPENSE_CATEGORIES if c not in mapped]

    async def get_mapping_status(self, connection_id: str) -> Dict[str, Any]:
        """Summary used to anticipate mapping failures before a bulk run."""
        mappings = await self.get_mappings(connection_id)
        mapped = {m.category for m in mappings}
        unmapped = [c for c in EXPENSE_CATEGORIES if c not in mapped]

        return {
            "total_categories": len(EXPENSE_CATEGORIES),
            "mapped_count": len(mappings),
            "unmapped_count": len(unmapped),
            "is_complete": len(unmapped) == 0,
            "mappings": [_serialize_mapping(m) for m in mappings],
            "unmapped_categories": unmapped,
        }

    # -------------------------------------------------------------------------
    # Manual overrides
    # -------------------------------------------------------------------------

    async def upsert_mapping(
        self,
        connection_id: str,
        user_id: str,
        category: str,
        account_id: str,
        account_name: str,
        account_type: str = "Expense",
    ) -> Dict[str, Any]:
        """Create or replace the mapping for (connection, category)."""
        if category not in CATEGORY_RULES:
            return error_result(MappingError(f"Unknown expense category: {category}"))

        mapping = await self.get_mapping_for_category(connection_id, category)
        if mapping is None:
            mapping = QuickBooksAccountMapping(
                connection_id=connection_id,
                user_id=user_id,
                category=category,
            )
            self.db.add(mapping)

        mapping.account_id = account_id
        mapping.account_name = account_name
        mapping.account_type = account_type or "Expense"
        await self._commit()

        logger.info(f"Mapped {category} -> {account_name} ({account_id}) for connection {connection_id}")
        return {"success": True, "mapping": _serialize_mapping(mapping)}

    async def delete_mapping(self, connection_id: str, category: str) -> Dict[str, Any]:
        result = await self.db.execute(
            delete(QuickBooksAccountMapping).where(
                QuickBooksAccountMapping.connection_id == connection_id,
                QuickBooksAccountMapping.category == category,
            )
        )
        await self._commit()

        if result.rowcount == 0:
            return {"error": True, "error_message": f"No mapping found for category: {category}"}
        return {"success": True}

    # -------------------------------------------------------------------------
    # Provider-backed operations
    # -------------------------------------------------------------------------

    async def _fetch_expense_accounts(self, connection_id: str) -> List[ProviderAccount]:
        connection = await self.refresher.get_connection(connection_id)
        return await self.refresher.execute(connection, lambda qb: qb.get_expense_accounts())

    async def fetch_external_expense_accounts(self, connection_id: str) -> Dict[str, Any]:
        """Expense accounts for a mapping picker, sorted by name."""
        try:
            accounts = await self._fetch_expense_accounts(connection_id)
        except QuickBooksSyncError as e:
            logger.error(f"Failed to fetch QuickBooks accounts for connection {connection_id}: {e}")
            return error_result(e)

        formatted = [
            {
                "id": acc.id,
                "name": acc.name,
                "type": acc.account_type,
                "sub_type": acc.account_sub_type,
                "fully_qualified_name": acc.fully_qualified_name,
            }
            for acc in accounts
        ]
        formatted.sort(key=lambda a: a["name"].lower())
        return {"success": True, "accounts": formatted}

    async def auto_map_categories(self, connection_id: str) -> Dict[str, Any]:
        """Match every category against the chart of accounts and upsert hits.

        Re-running overwrites earlier automatic matches. Categories with no
        hit are reported back for manual mapping.
        """
        try:
            connection = await self.refresher.get_connection(connection_id)
            accounts = await self.refresher.execute(connection, lambda qb: qb.get_expense_accounts())
        except QuickBooksSyncError as e:
            logger.error(f"Auto-map failed for connection {connection_id}: {e}")
            return error_result(e)

        if not accounts:
            return {"error": True, "error_message": "No expense accounts found in QuickBooks"}

        logger.info(f"Found {len(accounts)} expense accounts in QuickBooks for connection {connection_id}")

        mapped = []
        unmapped = []
        for category in EXPENSE_CATEGORIES:
            match = find_best_match(accounts, category)
            if not match:
                unmapped.append(category)
                continue

            await self.upsert_mapping(
                connection_id,
                connection.user_id,
                category,
                match.id,
                match.name,
                match.account_type or "Expense",
            )
            mapped.append({
                "category": category,
                "account_id": match.id,
                "account_name": match.name,
            })

        logger.info(f"Auto-mapped {len(mapped)} categories, {len(unmapped)} unmapped")

        return {
            "success": True,
            "mapped": mapped,
            "unmapped": unmapped,
            "total_accounts": len(accounts),
        }
