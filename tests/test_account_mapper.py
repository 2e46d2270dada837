"""
Tests for category to account mapping.

Covers the three matching tiers, auto-mapping against the chart of
accounts and manual overrides.
"""
import pytest

from qbsync.quickbooks.errors import MappingError
from qbsync.quickbooks.mapping import EXPENSE_CATEGORIES, AccountMapper, find_best_match
from qbsync.quickbooks.schemas import ProviderAccount


def accounts(*names):
    return [ProviderAccount(id=str(i), name=name) for i, name in enumerate(names, 1)]


# =============================================================================
# Unit Tests - find_best_match
# =============================================================================

class TestFindBestMatch:
    """Tier order: default name, fallback name, then keywords in order."""

    def test_default_name_beats_fallback(self):
        chart = accounts("Automobile Expense", "Fuel and Oil")

        assert find_best_match(chart, "Fuel").name == "Fuel and Oil"

    def test_fallback_beats_keyword(self):
        chart = accounts("Gas Station Purchases", "Automobile Expense")

        assert find_best_match(chart, "Fuel").name == "Automobile Expense"

    def test_keywords_checked_in_order(self):
        # "fuel" is listed before "gas" for Fuel
        chart = accounts("Gas Purchases", "Fuel Card Charges")

        assert find_best_match(chart, "Fuel").name == "Fuel Card Charges"

    def test_match_is_case_insensitive(self):
        chart = accounts("FUEL AND OIL")

        assert find_best_match(chart, "Fuel").id == "1"

    def test_first_account_wins_within_a_tier(self):
        chart = accounts("Diesel - Fleet A", "Diesel - Fleet B")

        assert find_best_match(chart, "Fuel").name == "Diesel - Fleet A"

    def test_no_match(self):
        chart = accounts("Rent", "Utilities")

        assert find_best_match(chart, "Fuel") is None
        assert find_best_match(chart, "Not A Category") is None

    def test_deterministic(self):
        chart = accounts("Travel Expense", "Highway Tolls", "Automobile Expense")

        results = {find_best_match(chart, "Tolls").id for _ in range(5)}

        assert results == {"1"}


# =============================================================================
# Integration Tests - AccountMapper
# =============================================================================

class TestAutoMap:
    """Auto-mapping against the fake chart of accounts."""

    @pytest.mark.asyncio
    async def test_maps_matching_categories(self, db, connection):
        result = await AccountMapper(db).auto_map_categories(connection.id)

        assert result["success"] is True
        assert result["total_accounts"] == 4
        assert {m["category"]: m["account_id"] for m in result["mapped"]} == {
            "Fuel": "42",
            "Maintenance": "43",
            "Insurance": "44",
            "Office": "45",
        }
        assert result["unmapped"] == ["Tolls", "Permits", "Meals", "Other"]

    @pytest.mark.asyncio
    async def test_rerun_overwrites(self, db, connection, fake_qb, map_category):
        await map_category(connection, "Fuel", "99", "Old Fuel Account")
        mapper = AccountMapper(db)

        await mapper.auto_map_categories(connection.id)
        await mapper.auto_map_categories(connection.id)

        mappings = await mapper.get_mappings(connection.id)
        assert len(mappings) == 4
        assert (await mapper.require_mapping(connection.id, "Fuel")).account_id == "42"

    @pytest.mark.asyncio
    async def test_empty_chart(self, db, connection, fake_qb):
        fake_qb.accounts["Expense"] = []

        result = await AccountMapper(db).auto_map_categories(connection.id)

        assert result["error"] is True
        assert result["error_message"] == "No expense accounts found in QuickBooks"

    @pytest.mark.asyncio
    async def test_disconnected_connection(self, db, connection):
        connection.status = "disconnected"
        await db.commit()

        result = await AccountMapper(db).auto_map_categories(connection.id)

        assert result["error"] is True
        assert result["error_type"] == "AuthorizationError"


class TestMappingStatus:

    @pytest.mark.asyncio
    async def test_status_lists_unmapped(self, db, connection, map_category):
        await map_category(connection, "Fuel", "42", "Fuel and Oil")

        status = await AccountMapper(db).get_mapping_status(connection.id)

        assert status["total_categories"] == len(EXPENSE_CATEGORIES)
        assert status["mapped_count"] == 1
        assert status["is_complete"] is False
        assert "Fuel" not in status["unmapped_categories"]
        assert status["mappings"][0]["account_name"] == "Fuel and Oil"

    @pytest.mark.asyncio
    async def test_fetch_accounts_sorted(self, db, connection):
        result = await AccountMapper(db).fetch_external_expense_accounts(connection.id)

        names = [a["name"] for a in result["accounts"]]
        assert names == sorted(names, key=str.lower)


class TestManualMapping:

    @pytest.mark.asyncio
    async def test_upsert_replaces(self, db, connection, map_category):
        await map_category(connection, "Meals", "60", "Meals")
        result = await map_category(connection, "Meals", "61", "Meals and Entertainment")

        assert result["mapping"]["account_id"] == "61"
        assert len(await AccountMapper(db).get_mappings(connection.id)) == 1

    @pytest.mark.asyncio
    async def test_unknown_category(self, db, connection, map_category):
        result = await map_category(connection, "Snacks", "60", "Meals")

        assert result["error"] is True
        assert result["error_type"] == "MappingError"

    @pytest.mark.asyncio
    async def test_delete(self, db, connection, map_category):
        await map_category(connection, "Fuel", "42", "Fuel and Oil")
        mapper = AccountMapper(db)

        assert (await mapper.delete_mapping(connection.id, "Fuel"))["success"] is True
        assert (await mapper.delete_mapping(connection.id, "Fuel"))["error"] is True

        with pytest.raises(MappingError):
            await mapper.require_mapping(connection.id, "Fuel")
