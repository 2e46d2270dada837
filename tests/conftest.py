"""Shared test fixtures and configuration for qbsync tests."""
from collections import defaultdict
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
import asyncio
import json
import re
import urllib.parse

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from qbsync.config import settings
from qbsync.database import Base
from qbsync.models import Expense, Invoice, InvoiceItem
from qbsync.models.base import utc_now
from qbsync.quickbooks import bulk, executor, tokens
from qbsync.quickbooks import client as qb_client
from qbsync.quickbooks.mapping import AccountMapper
from qbsync.quickbooks.models import QuickBooksConnection

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)

USER_ID = "user-123"
REALM_ID = "9130350000000001"


# =============================================================================
# Fake QuickBooks Online
# =============================================================================

class FakeQuickBooks:
    """In-memory QuickBooks Online served through httpx.MockTransport."""

    def __init__(self):
        self.company_name = "Acme Trucking"
        self.accounts: Dict[str, List[Dict[str, Any]]] = {
            "Expense": [
                {"Id": "42", "Name": "Fuel and Oil", "AccountType": "Expense"},
                {"Id": "43", "Name": "Repairs and Maintenance", "AccountType": "Expense"},
                {"Id": "44", "Name": "Insurance Expense", "AccountType": "Expense"},
                {"Id": "45", "Name": "Office Supplies", "AccountType": "Expense"},
            ],
            "Bank": [{"Id": "3", "Name": "Business Checking", "AccountType": "Bank"}],
            "Credit Card": [{"Id": "7", "Name": "Visa Business", "AccountType": "Credit Card"}],
        }
        self.customers: List[Dict[str, Any]] = []
        self.purchases: List[Dict[str, Any]] = []
        self.invoices: List[Dict[str, Any]] = []
        self.created: Dict[str, List[Dict[str, Any]]] = {"Purchase": [], "Invoice": [], "Customer": []}

        self.token_requests: List[Dict[str, str]] = []
        self.revoked: List[str] = []
        self.queries: List[str] = []
        self.api_tokens: List[str] = []
        self.issued = 0

        # Failure switches
        self.unauthorized_tokens = set()
        self.fail_refresh = False
        self.fail_company_info = False
        self.rate_limit_retry_after: Optional[str] = None
        self._next_id = 1000

    # -------------------------------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth.platform.intuit.com":
            return self._token(request)
        if request.url.host == "developer.api.intuit.com":
            self.revoked.append(json.loads(request.content)["token"])
            return httpx.Response(200)
        return self._api(request)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = dict(urllib.parse.parse_qsl(request.content.decode()))
        self.token_requests.append(form)
        if form.get("grant_type") == "refresh_token" and self.fail_refresh:
            return httpx.Response(400, json={"error": "invalid_grant"})

        self.issued += 1
        return httpx.Response(200, json={
            "access_token": f"access-{self.issued}",
            "refresh_token": f"refresh-{self.issued}",
            "expires_in": 3600,
            "x_refresh_token_expires_in": 8726400,
            "token_type": "bearer",
        })

    def _api(self, request: httpx.Request) -> httpx.Response:
        token = request.headers.get("Authorization", "").replace("Bearer ", "", 1)
        self.api_tokens.append(token)
        if token in self.unauthorized_tokens:
            return httpx.Response(401, json={"fault": {"error": [{"message": "AuthenticationFailed"}]}})

        endpoint = request.url.path.split("/v3/company/", 1)[1].split("/", 1)[1]

        if request.method == "GET" and endpoint == "query":
            return self._query(request.url.params["query"])

        if request.method == "GET" and endpoint.startswith("companyinfo/"):
            if self.fail_company_info:
                return httpx.Response(500, json={
                    "Fault": {"Error": [{"Message": "Internal error", "Detail": "Try later"}]}
                })
            return httpx.Response(200, json={
                "CompanyInfo": {"Id": REALM_ID, "CompanyName": self.company_name, "Country": "US"}
            })

        if request.method == "POST":
            body = json.loads(request.content)
            if endpoint == "purchase":
                if self.rate_limit_retry_after is not None:
                    return httpx.Response(429, headers={"Retry-After": self.rate_limit_retry_after})
                return self._create("Purchase", self.purchases, body)
            if endpoint == "invoice":
                return self._create("Invoice", self.invoices, body)
            if endpoint == "customer":
                return self._create("Customer", self.customers, body)

        return httpx.Response(404, json={"Fault": {"Error": [{"Message": "Unknown endpoint"}]}})

    def _create(self, entity: str, store: List[Dict[str, Any]], body: Dict[str, Any]) -> httpx.Response:
        self._next_id += 1
        row = {"Id": str(self._next_id), **body}
        store.append(row)
        self.created[entity].append(row)
        return httpx.Response(200, json={entity: row})

    def _query(self, query: str) -> httpx.Response:
        self.queries.append(query)
        entity = re.search(r"FROM (\w+)", query).group(1)

        if entity == "Account":
            account_type = re.search(r"AccountType = '([^']*)'", query).group(1)
            rows = list(self.accounts.get(account_type, []))
        elif entity == "Customer":
            name = re.search(r"DisplayName = '((?:[^'\\]|\\.)*)'", query).group(1)
            name = name.replace("\\'", "'").replace("\\\\", "\\")
            rows = [c for c in self.customers if c["DisplayName"].lower() == name.lower()]
        else:
            txn_date = re.search(r"TxnDate = '([^']*)'", query).group(1)
            source = self.purchases if entity == "Purchase" else self.invoices
            rows = [r for r in source if r.get("TxnDate") == txn_date]

        return httpx.Response(200, json={"QueryResponse": {entity: rows} if rows else {}})

    def queries_for(self, account_type: str) -> int:
        return sum(1 for q in self.queries if f"AccountType = '{account_type}'" in q)


# =============================================================================
# Settings / transports
# =============================================================================

@pytest.fixture(autouse=True)
def qb_settings(monkeypatch):
    """Test credentials, no pacing delay and fresh process-wide lock registries."""
    monkeypatch.setattr(settings, "QUICKBOOKS_CLIENT_ID", "test-client-id")
    monkeypatch.setattr(settings, "QUICKBOOKS_CLIENT_SECRET", "test-client-secret")
    monkeypatch.setattr(settings, "QUICKBOOKS_ENVIRONMENT", "sandbox")
    monkeypatch.setattr(settings, "QUICKBOOKS_SYNC_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "SECRET_KEY", "test-secret-key")
    monkeypatch.setattr(tokens, "_refresh_locks", defaultdict(asyncio.Lock))
    monkeypatch.setattr(executor, "_customer_locks", {})
    monkeypatch.setattr(executor, "_customer_lock_users", {})
    monkeypatch.setattr(bulk, "_run_locks", defaultdict(asyncio.Lock))
    return settings


@pytest.fixture(autouse=True)
def fake_qb(monkeypatch):
    """Route every provider call to an in-memory QuickBooks."""
    fake = FakeQuickBooks()
    transport = httpx.MockTransport(fake.handle)
    monkeypatch.setattr(qb_client, "TOKEN_TRANSPORT", transport)
    monkeypatch.setattr(qb_client, "API_TRANSPORT", transport)
    return fake


# =============================================================================
# Database
# =============================================================================

@pytest_asyncio.fixture
async def db():
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        yield session

    await engine.dispose()


# =============================================================================
# Factories
# =============================================================================

@pytest_asyncio.fixture
async def connection(db):
    """An active connection whose access token is valid for another hour."""
    conn = QuickBooksConnection(
        user_id=USER_ID,
        realm_id=REALM_ID,
        company_name="Acme Trucking",
        access_token="access-0",
        refresh_token="refresh-0",
        token_expires_at=utc_now() + timedelta(hours=1),
        refresh_token_expires_at=utc_now() + timedelta(days=100),
        status="active",
    )
    db.add(conn)
    await db.commit()
    return conn


@pytest.fixture
def make_expense(db):
    async def _make(**overrides) -> Expense:
        values = {
            "user_id": USER_ID,
            "description": "Diesel fill-up",
            "amount": Decimal("120.50"),
            "category": "Fuel",
            "date": date(2026, 10, 1),
            "payment_method": "Credit Card",
        }
        values.update(overrides)
        expense = Expense(**values)
        db.add(expense)
        await db.commit()
        return expense

    return _make


@pytest.fixture
def make_invoice(db):
    async def _make(items=None, **overrides) -> Invoice:
        values = {
            "user_id": USER_ID,
            "invoice_number": "INV-1001",
            "customer_name": "Acme Freight",
            "description": "Linehaul Chicago to Denver",
            "invoice_date": date(2026, 10, 3),
            "due_date": date(2026, 11, 2),
            "total_amount": Decimal("2500.00"),
            "status": "sent",
        }
        values.update(overrides)
        invoice = Invoice(**values)
        invoice.items = [InvoiceItem(**item) for item in (items or [])]
        db.add(invoice)
        await db.commit()
        return invoice

    return _make


@pytest.fixture
def map_category(db):
    async def _map(conn: QuickBooksConnection, category: str, account_id: str, account_name: str):
        return await AccountMapper(db).upsert_mapping(conn.id, conn.user_id, category, account_id, account_name)

    return _map
