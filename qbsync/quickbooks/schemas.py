"""Pydantic schemas for QuickBooks push sync."""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Literal
from datetime import date, datetime


# ============================================================================
# PROVIDER PAYLOADS (validated at the client boundary)
# ============================================================================

class TokenResponse(BaseModel):
    """Body of the OAuth2 token endpoint."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 3600
    x_refresh_token_expires_in: Optional[int] = None
    token_type: Optional[str] = None


class ProviderAccount(BaseModel):
    """Chart of accounts entry as returned by the Account query."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(alias="Id")
    name: str = Field(alias="Name")
    account_type: Optional[str] = Field(default=None, alias="AccountType")
    account_sub_type: Optional[str] = Field(default=None, alias="AccountSubType")
    fully_qualified_name: Optional[str] = Field(default=None, alias="FullyQualifiedName")


class ProviderCustomer(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(alias="Id")
    display_name: Optional[str] = Field(default=None, alias="DisplayName")


class ProviderTransaction(BaseModel):
    """Purchase or Invoice as returned by create/query calls."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(alias="Id")
    txn_date: Optional[str] = Field(default=None, alias="TxnDate")
    private_note: Optional[str] = Field(default=None, alias="PrivateNote")
    doc_number: Optional[str] = Field(default=None, alias="DocNumber")
    total_amount: Optional[float] = Field(default=None, alias="TotalAmt")


# ============================================================================
# CONNECTION SCHEMAS
# ============================================================================

class QuickBooksAuthUrl(BaseModel):
    """Authorization URL for OAuth flow."""
    auth_url: str
    state: str


class QuickBooksSyncStats(BaseModel):
    expenses: int = 0
    invoices: int = 0


class QuickBooksConnectionStatus(BaseModel):
    """Status of QuickBooks connection."""
    connected: bool
    status: str
    company_name: Optional[str] = None
    realm_id: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    error_message: Optional[str] = None
    connected_at: Optional[datetime] = None
    sync_stats: Optional[QuickBooksSyncStats] = None


# ============================================================================
# MAPPING SCHEMAS
# ============================================================================

class CategoryMappingRequest(BaseModel):
    """Manual category -> account override."""
    category: str
    account_id: str
    account_name: str
    account_type: str = "Expense"


# ============================================================================
# SYNC SCHEMAS
# ============================================================================

SyncAction = Literal["expense", "invoice", "bulk-expenses", "bulk-invoices", "retry-failed"]


class QuickBooksSyncRequest(BaseModel):
    """Request to push data to QuickBooks."""
    action: SyncAction
    entity_id: Optional[str] = None  # for single expense/invoice actions
    entity_ids: Optional[List[str]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    categories: Optional[List[str]] = None  # bulk-expenses only
    status: Optional[str] = None  # bulk-invoices only
