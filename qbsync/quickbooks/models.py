"""Database models for QuickBooks push sync."""
from sqlalchemy import Column, String, DateTime, Text, ForeignKey, Boolean, Integer, UniqueConstraint, Index
from sqlalchemy.sql import func

from qbsync.database import Base
from qbsync.models.base import generate_id, utc_now, JSONType


class QuickBooksConnection(Base):
    """QuickBooks connection model - stores OAuth tokens and company info.

    One row per owner. Reconnecting reuses the row; deleting it removes the
    owner's mappings, sync records and sync history.
    """

    __tablename__ = "quickbooks_connections"

    id = Column(String, primary_key=True, default=lambda: generate_id("qb"))
    user_id = Column(String, nullable=False, unique=True, index=True)

    # QuickBooks company info (realm_id is QuickBooks' tenant identifier)
    realm_id = Column(String, nullable=True)
    company_name = Column(String, nullable=True)

    # OAuth tokens (encrypted in production)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    refresh_token_expires_at = Column(DateTime(timezone=True), nullable=True)  # QB refresh tokens expire in 100 days

    # Connection status
    status = Column(String, nullable=False, default="active")  # "active" | "token_expired" | "error" | "disconnected"
    error_message = Column(Text, nullable=True)

    # Cached payment source accounts (resolved on first use)
    default_bank_account_id = Column(String, nullable=True)
    default_bank_account_name = Column(String, nullable=True)
    default_cc_account_id = Column(String, nullable=True)
    default_cc_account_name = Column(String, nullable=True)

    # Sync preferences
    auto_sync_expenses = Column(Boolean, nullable=False, default=True)
    auto_sync_invoices = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    # Metadata
    created_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=utc_now)


class QuickBooksAccountMapping(Base):
    """Maps an internal expense category to a QuickBooks account."""

    __tablename__ = "quickbooks_account_mappings"

    id = Column(String, primary_key=True, default=lambda: generate_id("qbmap"))
    connection_id = Column(
        String, ForeignKey("quickbooks_connections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(String, nullable=False, index=True)

    category = Column(String, nullable=False)  # "Fuel" | "Maintenance" | ...
    account_id = Column(String, nullable=False)
    account_name = Column(String, nullable=False)
    account_type = Column(String, nullable=False, default="Expense")

    created_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("connection_id", "category", name="uq_qb_mapping_connection_category"),
    )


class QuickBooksSyncRecord(Base):
    """Idempotency ledger entry - one row per pushed entity."""

    __tablename__ = "quickbooks_sync_records"

    id = Column(String, primary_key=True, default=lambda: generate_id("qbrec"))
    connection_id = Column(
        String, ForeignKey("quickbooks_connections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(String, nullable=False, index=True)

    entity_type = Column(String, nullable=False)  # "expense" | "invoice"
    local_entity_id = Column(String, nullable=False)
    external_entity_id = Column(String, nullable=True)
    external_entity_type = Column(String, nullable=True)  # "Purchase" | "Invoice"

    status = Column(String, nullable=False, default="pending")  # "pending" | "synced" | "failed"
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint(
            "connection_id", "entity_type", "local_entity_id",
            name="uq_qb_sync_record_entity",
        ),
        Index("ix_qb_sync_records_status", "connection_id", "status"),
    )


class QuickBooksSyncHistory(Base):
    """Append-only audit row for a bulk or retry run."""

    __tablename__ = "quickbooks_sync_history"

    id = Column(String, primary_key=True, default=lambda: generate_id("qbrun"))
    connection_id = Column(
        String, ForeignKey("quickbooks_connections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(String, nullable=False, index=True)

    sync_type = Column(String, nullable=False)  # "bulk" | "retry"
    entity_types = Column(JSONType, nullable=False, default=list)  # ["expense"] | ["invoice"] | both
    status = Column(String, nullable=False, default="started")  # "started" | "completed" | "partial" | "failed"

    records_synced = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
