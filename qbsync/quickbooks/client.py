"""QuickBooks API client wrapper.

This module provides the OAuth2 endpoints and a uniform async client over
the QuickBooks Online REST API. Every provider operation is one method;
failures surface as typed errors from ``qbsync.quickbooks.errors`` so the
token refresher can wrap calls with a single retry policy.
"""
from typing import Optional, Dict, Any, List
import base64
import logging
import urllib.parse

import httpx
from pydantic import ValidationError

from qbsync.config import settings
from qbsync.quickbooks.errors import (
    AuthorizationError,
    ConfigurationError,
    ProviderApiError,
    ProviderRateLimitError,
    TokenExpiredError,
)
from qbsync.quickbooks.models import QuickBooksConnection
from qbsync.quickbooks.schemas import (
    ProviderAccount,
    ProviderCustomer,
    ProviderTransaction,
    TokenResponse,
)

logger = logging.getLogger(__name__)


# ============================================================================
# OAUTH2 CONFIGURATION
# ============================================================================

# QuickBooks OAuth endpoints
QUICKBOOKS_AUTH_URL = "https://appcenter.intuit.com/connect/oauth2"
QUICKBOOKS_TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
QUICKBOOKS_REVOKE_URL = "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"

# API base URLs
QUICKBOOKS_API_BASE_SANDBOX = "https://sandbox-quickbooks.api.intuit.com"
QUICKBOOKS_API_BASE_PRODUCTION = "https://quickbooks.api.intuit.com"

# Account classes used for payment sources and category mapping
ACCOUNT_TYPE_EXPENSE = "Expense"
ACCOUNT_TYPE_BANK = "Bank"
ACCOUNT_TYPE_CREDIT_CARD = "Credit Card"

# Test hooks: replaced with httpx.MockTransport in tests
TOKEN_TRANSPORT: Optional[httpx.AsyncBaseTransport] = None
API_TRANSPORT: Optional[httpx.AsyncBaseTransport] = None


def get_api_base_url() -> str:
    """Get the appropriate API base URL based on environment."""
    if settings.QUICKBOOKS_ENVIRONMENT == "production":
        return QUICKBOOKS_API_BASE_PRODUCTION
    return QUICKBOOKS_API_BASE_SANDBOX


def ensure_credentials() -> None:
    """Raise ConfigurationError when the OAuth app credentials are missing."""
    if not settings.QUICKBOOKS_CLIENT_ID or not settings.QUICKBOOKS_CLIENT_SECRET:
        raise ConfigurationError(
            "QuickBooks credentials not configured. Please set QUICKBOOKS_CLIENT_ID and QUICKBOOKS_CLIENT_SECRET."
        )


def get_authorization_url(state: str, redirect_uri: Optional[str] = None) -> str:
    """Generate the QuickBooks OAuth2 authorization URL."""
    ensure_credentials()
    params = {
        "response_type": "code",
        "client_id": settings.QUICKBOOKS_CLIENT_ID,
        "redirect_uri": redirect_uri or settings.QUICKBOOKS_REDIRECT_URI,
        "scope": settings.QUICKBOOKS_SCOPES,
        "state": state,
    }
    return f"{QUICKBOOKS_AUTH_URL}?{urllib.parse.urlencode(params)}"


def get_basic_auth_header() -> str:
    """Generate Basic Auth header for token requests."""
    credentials = f"{settings.QUICKBOOKS_CLIENT_ID}:{settings.QUICKBOOKS_CLIENT_SECRET}"
    encoded = base64.b64encode(credentials.encode()).decode()
    return f"Basic {encoded}"


def get_timeout() -> httpx.Timeout:
    """Bounded timeout applied to every provider call."""
    return httpx.Timeout(
        settings.QUICKBOOKS_HTTP_TIMEOUT_SECONDS,
        connect=settings.QUICKBOOKS_HTTP_CONNECT_TIMEOUT_SECONDS,
    )


def _token_headers() -> Dict[str, str]:
    return {
        "Authorization": get_basic_auth_header(),
        "Content-Type": "application/x-www-form-urlencoded",
        "Accept": "application/json",
    }


# ============================================================================
# TOKEN MANAGEMENT
# ============================================================================

async def _post_token_endpoint(data: Dict[str, str]) -> TokenResponse:
    ensure_credentials()
    try:
        async with httpx.AsyncClient(timeout=get_timeout(), transport=TOKEN_TRANSPORT) as client:
            response = await client.post(QUICKBOOKS_TOKEN_URL, data=data, headers=_token_headers())
    except httpx.HTTPError as e:
        raise AuthorizationError(f"Token request failed: {e}")

    if response.status_code != 200:
        raise AuthorizationError(f"Token request rejected ({response.status_code}): {response.text}")

    try:
        return TokenResponse.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        raise AuthorizationError(f"Malformed token response: {e}")


async def exchange_code_for_tokens(code: str, redirect_uri: Optional[str] = None) -> TokenResponse:
    """Exchange authorization code for access and refresh tokens."""
    return await _post_token_endpoint({
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri or settings.QUICKBOOKS_REDIRECT_URI,
    })


async def refresh_access_token(refresh_token: str) -> TokenResponse:
    """Refresh the access token using the refresh token."""
    return await _post_token_endpoint({
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
    })


async def revoke_token(token: str) -> bool:
    """Revoke a token (access or refresh)."""
    async with httpx.AsyncClient(timeout=get_timeout(), transport=TOKEN_TRANSPORT) as client:
        response = await client.post(
            QUICKBOOKS_REVOKE_URL,
            json={"token": token},
            headers={
                "Authorization": get_basic_auth_header(),
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )

        return response.status_code == 200


# ============================================================================
# QUICKBOOKS API CLIENT CLASS
# ============================================================================

def quote_query_value(value: str) -> str:
    """Escape a literal for the QuickBooks query language."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _fault_message(response: httpx.Response) -> str:
    """Extract the human readable message from a QuickBooks Fault body."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"

    fault = body.get("Fault") or body.get("fault") or {}
    errors = fault.get("Error") or fault.get("error") or []
    if errors:
        first = errors[0]
        message = first.get("Message") or first.get("message") or ""
        detail = first.get("Detail") or first.get("detail")
        return f"{message}: {detail}" if detail else message
    return response.text or f"HTTP {response.status_code}"


class QuickBooksClient:
    """Uniform async QuickBooks API client bound to one connection's tokens."""

    def __init__(self, connection: QuickBooksConnection):
        self.connection = connection
        self.access_token = connection.access_token
        self.realm_id = connection.realm_id
        self.base_url = get_api_base_url()

    def _get_headers(self) -> Dict[str, str]:
        """Get headers for API requests."""
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _get_url(self, endpoint: str) -> str:
        """Build full API URL."""
        return f"{self.base_url}/v3/company/{self.realm_id}/{endpoint}"

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send a request and translate failures into typed errors."""
        try:
            async with httpx.AsyncClient(timeout=get_timeout(), transport=API_TRANSPORT) as client:
                response = await client.request(
                    method,
                    self._get_url(endpoint),
                    headers=self._get_headers(),
                    params=params,
                    json=json,
                )
        except httpx.TimeoutException:
            raise ProviderApiError(f"QuickBooks request timed out: {method} {endpoint}")
        except httpx.HTTPError as e:
            raise ProviderApiError(f"QuickBooks request failed: {e}")

        if response.status_code == 401:
            raise TokenExpiredError("QuickBooks rejected the access token")

        if response.status_code == 429:
            retry_after = settings.QUICKBOOKS_RATE_LIMIT_RETRY_AFTER_SECONDS
            header = response.headers.get("Retry-After")
            if header and header.isdigit():
                retry_after = int(header)
            raise ProviderRateLimitError("Rate limit exceeded. Please try again later.", retry_after=retry_after)

        if response.status_code not in (200, 201):
            raise ProviderApiError(
                f"QuickBooks API error: {_fault_message(response)}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError:
            raise ProviderApiError("QuickBooks returned a non-JSON response", status_code=response.status_code)

    async def _get(self, endpoint: str, params: Optional[Dict] = None) -> Dict[str, Any]:
        """Make a GET request to the QuickBooks API."""
        return await self._request("GET", endpoint, params=params)

    async def _post(self, endpoint: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Make a POST request to the QuickBooks API."""
        return await self._request("POST", endpoint, json=data)

    async def _query(self, query: str, entity: str) -> List[Dict[str, Any]]:
        """Execute a QuickBooks query and return the rows for ``entity``."""
        result = await self._get("query", params={"query": query})
        return result.get("QueryResponse", {}).get(entity, [])

    # -------------------------------------------------------------------------
    # Company Info
    # -------------------------------------------------------------------------

    async def get_company_info(self) -> Dict[str, Any]:
        """Get company information."""
        result = await self._get(f"companyinfo/{self.realm_id}")
        company = result.get("CompanyInfo", {})

        return {
            "company_id": company.get("Id"),
            "company_name": company.get("CompanyName"),
            "legal_name": company.get("LegalName"),
            "country": company.get("Country"),
        }

    # -------------------------------------------------------------------------
    # Accounts (Chart of Accounts)
    # -------------------------------------------------------------------------

    async def get_accounts(self, account_type: str) -> List[ProviderAccount]:
        """Get active accounts of one class ("Expense", "Bank", "Credit Card")."""
        query = (
            "SELECT * FROM Account WHERE Active = true "
            f"AND AccountType = '{quote_query_value(account_type)}' MAXRESULTS 1000"
        )
        rows = await self._query(query, "Account")
        return [ProviderAccount.model_validate(row) for row in rows]

    async def get_expense_accounts(self) -> List[ProviderAccount]:
        return await self.get_accounts(ACCOUNT_TYPE_EXPENSE)

    async def get_bank_accounts(self) -> List[ProviderAccount]:
        return await self.get_accounts(ACCOUNT_TYPE_BANK)

    async def get_credit_card_accounts(self) -> List[ProviderAccount]:
        return await self.get_accounts(ACCOUNT_TYPE_CREDIT_CARD)

    # -------------------------------------------------------------------------
    # Customers
    # -------------------------------------------------------------------------

    async def find_customer_by_name(self, display_name: str) -> Optional[ProviderCustomer]:
        """Find a customer by exact display name."""
        query = f"SELECT * FROM Customer WHERE DisplayName = '{quote_query_value(display_name)}'"
        rows = await self._query(query, "Customer")
        if not rows:
            return None
        return ProviderCustomer.model_validate(rows[0])

    async def create_customer(self, display_name: str) -> ProviderCustomer:
        """Create a new customer."""
        result = await self._post("customer", {"DisplayName": display_name})
        customer = result.get("Customer")
        if not customer or not customer.get("Id"):
            raise ProviderApiError("Failed to find or create customer in QuickBooks")
        return ProviderCustomer.model_validate(customer)

    # -------------------------------------------------------------------------
    # Purchases (Expenses)
    # -------------------------------------------------------------------------

    async def find_purchases_by_date(self, txn_date: str) -> List[ProviderTransaction]:
        query = f"SELECT * FROM Purchase WHERE TxnDate = '{quote_query_value(txn_date)}' MAXRESULTS 1000"
        rows = await self._query(query, "Purchase")
        return [ProviderTransaction.model_validate(row) for row in rows]

    async def create_purchase(self, payload: Dict[str, Any]) -> ProviderTransaction:
        """Create a Purchase (expense)."""
        result = await self._post("purchase", payload)
        purchase = result.get("Purchase")
        if not purchase or not purchase.get("Id"):
            raise ProviderApiError("Failed to create purchase in QuickBooks")
        return ProviderTransaction.model_validate(purchase)

    # -------------------------------------------------------------------------
    # Invoices (Accounts Receivable)
    # -------------------------------------------------------------------------

    async def find_invoices_by_date(self, txn_date: str) -> List[ProviderTransaction]:
        query = f"SELECT * FROM Invoice WHERE TxnDate = '{quote_query_value(txn_date)}' MAXRESULTS 1000"
        rows = await self._query(query, "Invoice")
        return [ProviderTransaction.model_validate(row) for row in rows]

    async def create_invoice(self, payload: Dict[str, Any]) -> ProviderTransaction:
        """Create an invoice."""
        result = await self._post("invoice", payload)
        invoice = result.get("Invoice")
        if not invoice or not invoice.get("Id"):
            raise ProviderApiError("Failed to create invoice in QuickBooks")
        return ProviderTransaction.model_validate(invoice)
