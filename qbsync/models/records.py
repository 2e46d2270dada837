"""Host application records pushed to the accounting provider.

These tables belong to the host application. The sync engine only reads
them; it never writes expense or invoice rows.
"""
from sqlalchemy import Column, String, DateTime, Date, Numeric, Boolean, Integer, Text, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from qbsync.database import Base
from qbsync.models.base import generate_id, utc_now


class Expense(Base):
    """A single expense entered in the host application."""

    __tablename__ = "expenses"

    id = Column(String, primary_key=True, default=lambda: generate_id("exp"))
    user_id = Column(String, nullable=False, index=True)

    description = Column(String, nullable=False)
    amount = Column(Numeric(precision=15, scale=2), nullable=False)
    category = Column(String, nullable=False)  # "Fuel" | "Maintenance" | ... | "Other"
    date = Column(Date, nullable=False, index=True)
    payment_method = Column(String, nullable=True)  # "Credit Card" | "Cash" | "Check" | ...
    notes = Column(Text, nullable=True)
    deductible = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=utc_now)


class Invoice(Base):
    """A customer invoice issued from the host application."""

    __tablename__ = "invoices"

    id = Column(String, primary_key=True, default=lambda: generate_id("inv"))
    user_id = Column(String, nullable=False, index=True)

    invoice_number = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    invoice_date = Column(Date, nullable=False, index=True)
    due_date = Column(Date, nullable=True)
    total_amount = Column(Numeric(precision=15, scale=2), nullable=False, default=0)
    status = Column(String, nullable=False, default="draft")  # "draft" | "sent" | "paid" | "overdue"
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=utc_now)

    items = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="InvoiceItem.position",
    )


class InvoiceItem(Base):
    """Line item on a host invoice."""

    __tablename__ = "invoice_items"

    id = Column(String, primary_key=True, default=lambda: generate_id("item"))
    invoice_id = Column(String, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)

    position = Column(Integer, nullable=False, default=0)
    description = Column(String, nullable=True)
    quantity = Column(Numeric(precision=12, scale=2), nullable=True)
    unit_price = Column(Numeric(precision=15, scale=2), nullable=True)
    amount = Column(Numeric(precision=15, scale=2), nullable=True)

    invoice = relationship("Invoice", back_populates="items")
