"""Payment Allocation Matcher.

Matches unallocated inbound payments to the owner's outstanding invoices and
commits the match as one unit: invoice paid, payment recorded, inbound
payment marked processed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from .errors import AllocationError, ConflictError, NotFoundError
from .models import InboundPayment, Invoice, Lease, Property, Unit
from .schemas import (
    AllocationCandidates,
    AllocationResponse,
    OutstandingInvoice,
    UnallocatedPayment,
)
from .settlement import record_payment, set_invoice_paid

logger = logging.getLogger(__name__)

OUTSTANDING_STATUS = "pending"

STEP_INVOICE_PAID = "invoice_paid"
STEP_PAYMENT_RECORDED = "payment_recorded"
STEP_CALLBACK_PROCESSED = "callback_processed"


def invoice_chain(*columns):
    """Select invoices joined through lease and unit to their property."""
    return (
        select(Invoice, *columns)
        .join(Lease, Invoice.lease_id == Lease.id)
        .join(Unit, Lease.unit_id == Unit.id)
        .join(Property, Unit.property_id == Property.id)
    )


def find_invoice_owner(db: Session, invoice_id: UUID) -> tuple[Invoice, UUID]:
    """Return an invoice with the id of the landlord owning its property.

    Raises:
        NotFoundError: Unknown invoice, or one not linked to a property.
    """
    row = db.execute(invoice_chain(Property.owner_id).where(Invoice.id == invoice_id)).first()
    if row is None:
        raise NotFoundError(f"Invoice {invoice_id} not found", user_message="Invoice not found.")
    return row[0], row[1]


def preselect(amount: Decimal, candidates: Sequence[OutstandingInvoice]) -> UUID | None:
    """First candidate, by due date, whose amount equals ``amount`` exactly."""
    for invoice in sorted(candidates, key=lambda c: c.due_date):
        if Decimal(invoice.amount) == Decimal(amount):
            return invoice.id
    return None


class PaymentAllocationMatcher:
    def __init__(self, db: Session):
        self.db = db

    def _owned_invoices(self, owner_id: UUID):
        return invoice_chain(Unit.unit_number, Property.name).where(Property.owner_id == owner_id)

    def list_unallocated_candidates(self, owner_id: UUID) -> list[OutstandingInvoice]:
        """Outstanding invoices owned by ``owner_id`` through property, unit and lease.

        Ordered by due date, oldest first.
        """
        stmt = (
            self._owned_invoices(owner_id)
            .where(Invoice.status == OUTSTANDING_STATUS)
            .order_by(Invoice.due_date.asc(), Invoice.invoice_number.asc())
        )
        return [
            OutstandingInvoice(
                id=invoice.id,
                invoice_number=invoice.invoice_number,
                amount=invoice.amount,
                due_date=invoice.due_date,
                tenant_id=invoice.tenant_id,
                lease_id=invoice.lease_id,
                unit_number=unit_number,
                property_name=property_name,
            )
            for invoice, unit_number, property_name in self.db.execute(stmt).all()
        ]

    def list_unallocated_payments(self, owner_id: UUID) -> list[UnallocatedPayment]:
        stmt = (
            select(InboundPayment)
            .where(
                and_(
                    InboundPayment.account_id == owner_id,
                    InboundPayment.processed.is_(False),
                    InboundPayment.invoice_id.is_(None),
                )
            )
            .order_by(InboundPayment.created_at.desc())
        )
        return [
            UnallocatedPayment(
                id=p.id,
                source=p.source,
                amount=p.amount,
                customer_name=p.customer_name,
                customer_mobile=p.customer_mobile,
                reference=p.bill_number,
                transaction_reference=p.transaction_reference,
                created_at=p.created_at,
            )
            for p in self.db.execute(stmt).scalars().all()
        ]

    def get_payment(self, owner_id: UUID, payment_id: UUID) -> InboundPayment:
        stmt = select(InboundPayment).where(
            and_(InboundPayment.id == payment_id, InboundPayment.account_id == owner_id)
        )
        payment = self.db.execute(stmt).scalar_one_or_none()
        if payment is None:
            raise NotFoundError(f"Inbound payment {payment_id} not found")
        return payment

    def candidates_for(self, owner_id: UUID, payment_id: UUID) -> AllocationCandidates:
        payment = self.get_payment(owner_id, payment_id)
        candidates = self.list_unallocated_candidates(owner_id)
        return AllocationCandidates(
            payment_id=payment.id,
            amount=payment.amount,
            candidates=candidates,
            preselected_invoice_id=preselect(payment.amount, candidates),
        )

    def allocate(self, owner_id: UUID, payment_id: UUID, invoice_id: UUID) -> AllocationResponse:
        """Commit ``payment_id`` against ``invoice_id``.

        Raises:
            NotFoundError: Payment or invoice unknown to this owner.
            ConflictError: Payment already allocated or invoice not outstanding.
            AllocationError: A step failed; the earlier steps were rolled back
                and are listed in ``completed_steps``.
        """
        payment = self.get_payment(owner_id, payment_id)
        if payment.processed or payment.invoice_id is not None:
            raise ConflictError(
                f"Inbound payment {payment_id} already allocated",
                user_message="This payment has already been allocated.",
            )

        row = self.db.execute(
            self._owned_invoices(owner_id).where(Invoice.id == invoice_id)
        ).first()
        if row is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        invoice = row[0]
        if invoice.status != OUTSTANDING_STATUS:
            raise ConflictError(
                f"Invoice {invoice_id} is {invoice.status}",
                user_message="This invoice is no longer outstanding.",
            )

        completed: list[str] = []
        try:
            set_invoice_paid(self.db, invoice)
            completed.append(STEP_INVOICE_PAID)

            record = record_payment(
                self.db,
                invoice,
                payment.amount,
                payment_reference=payment.transaction_reference,
                payment_method=payment.source,
                notes=(
                    f"Manual allocation. Bill: {payment.bill_number or 'N/A'}. "
                    f"Customer: {payment.customer_name or 'Unknown'}"
                ),
            )
            completed.append(STEP_PAYMENT_RECORDED)

            self._mark_processed(payment, invoice.id)
            completed.append(STEP_CALLBACK_PROCESSED)

            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(
                "Allocation of payment %s to invoice %s failed after steps %s: %r",
                payment_id,
                invoice_id,
                completed,
                e,
            )
            raise AllocationError(
                f"Allocation failed after steps {completed}: {e!r}",
                completed_steps=completed,
            ) from e

        logger.info("Allocated payment %s to invoice %s", payment_id, invoice_id)
        return AllocationResponse(
            payment_id=payment_id,
            invoice_id=invoice_id,
            payment_record_id=record.id,
        )

    def _mark_processed(self, payment: InboundPayment, invoice_id: UUID) -> None:
        payment.invoice_id = invoice_id
        payment.processed = True
        payment.processed_at = datetime.now(timezone.utc)
        self.db.flush()
