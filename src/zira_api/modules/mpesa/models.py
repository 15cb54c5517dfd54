"""M-Pesa database models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID as UUIDType, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ...core.db_base import Base

# Valid provider variants
PROVIDER_TYPE_VALUES = ("paybill", "till_direct", "till_gateway")

# Valid environments
ENVIRONMENT_VALUES = ("sandbox", "production")

# Valid status values for transactions
TRANSACTION_STATUS_VALUES = ("pending", "completed", "failed", "cancelled")

# Valid invoice statuses (invoices are owned elsewhere; only pending -> paid is written here)
INVOICE_STATUS_VALUES = ("pending", "unpaid", "paid", "overdue", "cancelled")


class MerchantPaymentConfig(Base):
    """One merchant configuration per (account, provider variant).

    Secrets are stored only as Fernet ciphertext handles. They are read back
    solely by the gateway when talking to the payment network, never by the
    summary queries served to clients.
    """

    __tablename__ = "merchant_payment_config"
    __table_args__ = (
        UniqueConstraint("account_id", "provider_type", name="uq_account_provider_type"),
        CheckConstraint(
            f"provider_type IN {PROVIDER_TYPE_VALUES}",
            name="provider_type_valid",
        ),
        CheckConstraint(
            f"environment IN {ENVIRONMENT_VALUES}",
            name="environment_valid",
        ),
        # At most one active configuration per account
        Index(
            "uq_merchant_config_one_active",
            "account_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("idx_merchant_config_account", "account_id"),
    )

    id: Mapped[UUIDType] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[UUIDType] = mapped_column(Uuid, nullable=False)
    provider_type: Mapped[str] = mapped_column(String(20), nullable=False)
    shortcode: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="Paybill or till number",
    )
    client_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="OAuth client id for gateway-relayed tills (not a secret)",
    )
    environment: Mapped[str] = mapped_column(String(20), nullable=False, default="sandbox")
    display_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    callback_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    secrets: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Encrypted secret handles keyed by secret name",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class MpesaTransaction(Base):
    """One row per initiated STK push.

    Created ``pending`` at initiation and moved to a terminal status exactly
    once, by a gateway callback or a status query.
    """

    __tablename__ = "mpesa_transaction"
    __table_args__ = (
        CheckConstraint(
            f"status IN {TRANSACTION_STATUS_VALUES}",
            name="status_valid",
        ),
        Index("idx_mpesa_txn_account", "account_id"),
        Index("idx_mpesa_txn_invoice", "invoice_id"),
        Index("idx_mpesa_txn_status", "status"),
    )

    id: Mapped[UUIDType] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[UUIDType | None] = mapped_column(Uuid, nullable=True)
    config_id: Mapped[UUIDType | None] = mapped_column(
        Uuid,
        ForeignKey("merchant_payment_config.id", ondelete="SET NULL"),
        nullable=True,
        comment="NULL when the platform default credentials were used",
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False, default="mpesa")
    checkout_request_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    merchant_request_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    account_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    invoice_id: Mapped[UUIDType | None] = mapped_column(Uuid, nullable=True)
    payment_type: Mapped[str] = mapped_column(String(30), nullable=False, default="rent")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    result_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    result_desc: Mapped[str | None] = mapped_column(Text, nullable=True)
    mpesa_receipt_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class Property(Base):
    __tablename__ = "property"

    id: Mapped[UUIDType] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_id: Mapped[UUIDType] = mapped_column(Uuid, nullable=False, index=True)
    manager_id: Mapped[UUIDType | None] = mapped_column(Uuid, nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    units: Mapped[list["Unit"]] = relationship(back_populates="property")


class Unit(Base):
    __tablename__ = "unit"

    id: Mapped[UUIDType] = mapped_column(Uuid, primary_key=True, default=uuid4)
    property_id: Mapped[UUIDType] = mapped_column(
        Uuid, ForeignKey("property.id", ondelete="CASCADE"), nullable=False, index=True
    )
    unit_number: Mapped[str] = mapped_column(String(50), nullable=False)

    property: Mapped[Property] = relationship(back_populates="units")
    leases: Mapped[list["Lease"]] = relationship(back_populates="unit")


class Lease(Base):
    __tablename__ = "lease"

    id: Mapped[UUIDType] = mapped_column(Uuid, primary_key=True, default=uuid4)
    unit_id: Mapped[UUIDType] = mapped_column(
        Uuid, ForeignKey("unit.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_id: Mapped[UUIDType | None] = mapped_column(Uuid, nullable=True)

    unit: Mapped[Unit] = relationship(back_populates="leases")
    invoices: Mapped[list["Invoice"]] = relationship(back_populates="lease")


class Invoice(Base):
    """Tenant invoice. Numbering and due dates are computed elsewhere."""

    __tablename__ = "invoice"
    __table_args__ = (
        CheckConstraint(
            f"status IN {INVOICE_STATUS_VALUES}",
            name="invoice_status_valid",
        ),
        Index("idx_invoice_status_due", "status", "due_date"),
    )

    id: Mapped[UUIDType] = mapped_column(Uuid, primary_key=True, default=uuid4)
    lease_id: Mapped[UUIDType] = mapped_column(
        Uuid, ForeignKey("lease.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_id: Mapped[UUIDType | None] = mapped_column(Uuid, nullable=True)
    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    lease: Mapped[Lease] = relationship(back_populates="invoices")


class PaymentRecord(Base):
    """Confirmed payment cross-referencing the invoice it settles."""

    __tablename__ = "payment"
    __table_args__ = (
        Index("idx_payment_invoice", "invoice_id"),
        Index("idx_payment_reference", "payment_reference"),
    )

    id: Mapped[UUIDType] = mapped_column(Uuid, primary_key=True, default=uuid4)
    invoice_id: Mapped[UUIDType] = mapped_column(
        Uuid, ForeignKey("invoice.id", ondelete="CASCADE"), nullable=False
    )
    lease_id: Mapped[UUIDType | None] = mapped_column(Uuid, nullable=True)
    tenant_id: Mapped[UUIDType | None] = mapped_column(Uuid, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False)
    payment_reference: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="completed")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class InboundPayment(Base):
    """Money received by the merchant that is not yet matched to an invoice.

    Filled from bank/paybill confirmation callbacks.
    """

    __tablename__ = "inbound_payment"
    __table_args__ = (
        Index("idx_inbound_payment_account", "account_id"),
        Index("idx_inbound_payment_unprocessed", "account_id", "processed"),
    )

    id: Mapped[UUIDType] = mapped_column(Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[UUIDType] = mapped_column(Uuid, nullable=False)
    source: Mapped[str] = mapped_column(String(30), nullable=False, default="mpesa")
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_mobile: Mapped[str | None] = mapped_column(String(20), nullable=True)
    bill_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    transaction_reference: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="SUCCESS")
    invoice_id: Mapped[UUIDType | None] = mapped_column(Uuid, nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
