"""create mpesa tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01

Creates merchant M-Pesa configuration, STK push transaction, inbound payment
and the property/unit/lease/invoice/payment tables the allocation matcher
reads and settles.
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSON, UUID

# revision identifiers, used by Alembic.
revision = "202610010001"
down_revision = None
branch_labels = None
depends_on = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    # === MerchantPaymentConfig ===
    op.create_table(
        "merchant_payment_config",
        _uuid_pk(),
        sa.Column("account_id", UUID(as_uuid=True), nullable=False),
        sa.Column("provider_type", sa.String(20), nullable=False),
        sa.Column("shortcode", sa.String(20), nullable=False, comment="Paybill or till number"),
        sa.Column(
            "client_id",
            sa.String(255),
            nullable=True,
            comment="OAuth client id for gateway-relayed tills (not a secret)",
        ),
        sa.Column(
            "environment",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'sandbox'"),
        ),
        sa.Column("display_name", sa.String(100), nullable=True),
        sa.Column("callback_url", sa.String(500), nullable=True),
        sa.Column(
            "secrets",
            JSON,
            nullable=False,
            server_default=sa.text("'{}'::json"),
            comment="Encrypted secret handles keyed by secret name",
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("last_verified_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "provider_type", name="uq_account_provider_type"),
        sa.CheckConstraint(
            "provider_type IN ('paybill', 'till_direct', 'till_gateway')",
            name="provider_type_valid",
        ),
        sa.CheckConstraint(
            "environment IN ('sandbox', 'production')",
            name="environment_valid",
        ),
    )
    op.create_index("idx_merchant_config_account", "merchant_payment_config", ["account_id"])
    op.create_index(
        "uq_merchant_config_one_active",
        "merchant_payment_config",
        ["account_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    # === MpesaTransaction ===
    op.create_table(
        "mpesa_transaction",
        _uuid_pk(),
        sa.Column("account_id", UUID(as_uuid=True), nullable=True),
        sa.Column(
            "config_id",
            UUID(as_uuid=True),
            nullable=True,
            comment="NULL when the platform default credentials were used",
        ),
        sa.Column("provider", sa.String(20), nullable=False, server_default=sa.text("'mpesa'")),
        sa.Column("checkout_request_id", sa.String(100), nullable=False),
        sa.Column("merchant_request_id", sa.String(100), nullable=True),
        sa.Column("phone_number", sa.String(20), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("account_reference", sa.String(64), nullable=True),
        sa.Column("description", sa.String(255), nullable=True),
        sa.Column("invoice_id", UUID(as_uuid=True), nullable=True),
        sa.Column("payment_type", sa.String(30), nullable=False, server_default=sa.text("'rent'")),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("result_code", sa.Integer(), nullable=True),
        sa.Column("result_desc", sa.Text(), nullable=True),
        sa.Column("mpesa_receipt_number", sa.String(50), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("checkout_request_id"),
        sa.ForeignKeyConstraint(
            ["config_id"],
            ["merchant_payment_config.id"],
            ondelete="SET NULL",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'cancelled')",
            name="status_valid",
        ),
    )
    op.create_index("idx_mpesa_txn_account", "mpesa_transaction", ["account_id"])
    op.create_index("idx_mpesa_txn_invoice", "mpesa_transaction", ["invoice_id"])
    op.create_index("idx_mpesa_txn_status", "mpesa_transaction", ["status"])

    # === Property / Unit / Lease ===
    op.create_table(
        "property",
        _uuid_pk(),
        sa.Column("owner_id", UUID(as_uuid=True), nullable=False),
        sa.Column("manager_id", UUID(as_uuid=True), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_property_owner_id", "property", ["owner_id"])

    op.create_table(
        "unit",
        _uuid_pk(),
        sa.Column("property_id", UUID(as_uuid=True), nullable=False),
        sa.Column("unit_number", sa.String(50), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["property_id"], ["property.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_unit_property_id", "unit", ["property_id"])

    op.create_table(
        "lease",
        _uuid_pk(),
        sa.Column("unit_id", UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["unit_id"], ["unit.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_lease_unit_id", "lease", ["unit_id"])

    # === Invoice / Payment ===
    op.create_table(
        "invoice",
        _uuid_pk(),
        sa.Column("lease_id", UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=True),
        sa.Column("invoice_number", sa.String(50), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["lease_id"], ["lease.id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "status IN ('pending', 'unpaid', 'paid', 'overdue', 'cancelled')",
            name="invoice_status_valid",
        ),
    )
    op.create_index("ix_invoice_lease_id", "invoice", ["lease_id"])
    op.create_index("idx_invoice_status_due", "invoice", ["status", "due_date"])

    op.create_table(
        "payment",
        _uuid_pk(),
        sa.Column("invoice_id", UUID(as_uuid=True), nullable=False),
        sa.Column("lease_id", UUID(as_uuid=True), nullable=True),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("payment_date", sa.Date(), nullable=False),
        sa.Column("payment_method", sa.String(50), nullable=False),
        sa.Column("payment_reference", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'completed'")),
        sa.Column("notes", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoice.id"], ondelete="CASCADE"),
    )
    op.create_index("idx_payment_invoice", "payment", ["invoice_id"])
    op.create_index("idx_payment_reference", "payment", ["payment_reference"])

    # === InboundPayment ===
    op.create_table(
        "inbound_payment",
        _uuid_pk(),
        sa.Column("account_id", UUID(as_uuid=True), nullable=False),
        sa.Column("source", sa.String(30), nullable=False, server_default=sa.text("'mpesa'")),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("customer_name", sa.String(255), nullable=True),
        sa.Column("customer_mobile", sa.String(20), nullable=True),
        sa.Column("bill_number", sa.String(100), nullable=True),
        sa.Column("transaction_reference", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'SUCCESS'")),
        sa.Column("invoice_id", UUID(as_uuid=True), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_inbound_payment_account", "inbound_payment", ["account_id"])
    op.create_index(
        "idx_inbound_payment_unprocessed",
        "inbound_payment",
        ["account_id", "processed"],
    )


def downgrade() -> None:
    op.drop_index("idx_inbound_payment_unprocessed", table_name="inbound_payment")
    op.drop_index("idx_inbound_payment_account", table_name="inbound_payment")
    op.drop_table("inbound_payment")

    op.drop_index("idx_payment_reference", table_name="payment")
    op.drop_index("idx_payment_invoice", table_name="payment")
    op.drop_table("payment")

    op.drop_index("idx_invoice_status_due", table_name="invoice")
    op.drop_index("ix_invoice_lease_id", table_name="invoice")
    op.drop_table("invoice")

    op.drop_index("ix_lease_unit_id", table_name="lease")
    op.drop_table("lease")
    op.drop_index("ix_unit_property_id", table_name="unit")
    op.drop_table("unit")
    op.drop_index("ix_property_owner_id", table_name="property")
    op.drop_table("property")

    op.drop_index("idx_mpesa_txn_status", table_name="mpesa_transaction")
    op.drop_index("idx_mpesa_txn_invoice", table_name="mpesa_transaction")
    op.drop_index("idx_mpesa_txn_account", table_name="mpesa_transaction")
    op.drop_table("mpesa_transaction")

    op.drop_index("uq_merchant_config_one_active", table_name="merchant_payment_config")
    op.drop_index("idx_merchant_config_account", table_name="merchant_payment_config")
    op.drop_table("merchant_payment_config")
