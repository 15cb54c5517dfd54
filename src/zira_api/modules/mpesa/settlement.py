"""Terminal transaction transitions and the invoice-paid side effect."""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from .errors import ConflictError, NotFoundError
from .models import Invoice, MpesaTransaction, PaymentRecord
from .schemas import TransactionStatus

logger = logging.getLogger(__name__)

MPESA_PAYMENT_METHOD = "mpesa"


def apply_outcome(
    db: Session,
    txn: MpesaTransaction,
    status: TransactionStatus,
    result_code: int | None = None,
    result_desc: str | None = None,
    receipt_number: str | None = None,
) -> bool:
    """Move a pending transaction to a terminal status.

    Terminal rows are immutable: returns False and changes nothing when the
    row already left ``pending``. The receipt number is kept only on success.
    The caller commits.
    """
    if TransactionStatus(txn.status).is_terminal:
        logger.info(
            "Ignoring %s outcome for %s, already %s",
            status.value,
            txn.checkout_request_id,
            txn.status,
        )
        return False
    if not status.is_terminal:
        return False

    txn.status = status.value
    txn.result_code = result_code
    txn.result_desc = result_desc
    if status is TransactionStatus.COMPLETED:
        txn.mpesa_receipt_number = receipt_number
    db.flush()
    logger.info("Transaction %s -> %s (code=%s)", txn.checkout_request_id, status.value, result_code)
    return True


def attach_receipt(db: Session, txn: MpesaTransaction, receipt_number: str) -> bool:
    """Record the receipt of a transaction that completed without one.

    Status queries complete a row without a receipt; the callback that
    follows carries it. A payment record already written under the checkout
    request id is re-referenced to the receipt. The caller commits.
    """
    if txn.status != TransactionStatus.COMPLETED.value or txn.mpesa_receipt_number:
        return False

    txn.mpesa_receipt_number = receipt_number
    if txn.invoice_id is not None:
        record = db.execute(
            select(PaymentRecord).where(
                and_(
                    PaymentRecord.invoice_id == txn.invoice_id,
                    PaymentRecord.payment_reference == txn.checkout_request_id,
                )
            )
        ).scalar_one_or_none()
        if record is not None:
            record.payment_reference = receipt_number
    db.flush()
    logger.info("Receipt %s attached to %s", receipt_number, txn.checkout_request_id)
    return True


def set_invoice_paid(db: Session, invoice: Invoice) -> None:
    """Transition an invoice ``pending -> paid``.

    Raises:
        ConflictError: The invoice is already paid.
    """
    if invoice.status == "paid":
        raise ConflictError(
            f"Invoice {invoice.id} is already paid",
            user_message="This invoice has already been paid.",
        )
    invoice.status = "paid"
    db.flush()


def record_payment(
    db: Session,
    invoice: Invoice,
    amount: Decimal,
    payment_reference: str,
    payment_method: str = MPESA_PAYMENT_METHOD,
    notes: str | None = None,
    paid_on: date | None = None,
) -> PaymentRecord:
    record = PaymentRecord(
        invoice_id=invoice.id,
        lease_id=invoice.lease_id,
        tenant_id=invoice.tenant_id,
        amount=amount,
        payment_date=paid_on or datetime.now(timezone.utc).date(),
        payment_method=payment_method,
        payment_reference=payment_reference,
        status="completed",
        notes=notes,
    )
    db.add(record)
    db.flush()
    return record


def mark_invoice_paid(
    db: Session,
    invoice_id: UUID,
    amount: Decimal,
    payment_reference: str,
    notes: str | None = None,
    paid_on: date | None = None,
) -> PaymentRecord | None:
    """Mark an invoice paid and record the payment that settled it.

    Idempotent per payment reference: a second call with the same reference
    returns None without writing.

    Raises:
        NotFoundError: Unknown invoice.
        ConflictError: The invoice was already settled by another payment.
    """
    invoice = db.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")

    existing = db.execute(
        select(PaymentRecord).where(
            and_(
                PaymentRecord.invoice_id == invoice_id,
                PaymentRecord.payment_reference == payment_reference,
            )
        )
    ).scalar_one_or_none()
    if existing is not None:
        logger.info("Invoice %s already settled by %s", invoice_id, payment_reference)
        return None

    set_invoice_paid(db, invoice)
    record = record_payment(db, invoice, amount, payment_reference, notes=notes, paid_on=paid_on)
    logger.info("Invoice %s marked paid (reference=%s)", invoice_id, payment_reference)
    return record


def settle_transaction(db: Session, checkout_request_id: str) -> PaymentRecord | None:
    """Settle the invoice linked to a completed transaction, once.

    Returns:
        The new payment record, or None when there is nothing to do.
    """
    txn = db.execute(
        select(MpesaTransaction).where(MpesaTransaction.checkout_request_id == checkout_request_id)
    ).scalar_one_or_none()
    if txn is None:
        raise NotFoundError(f"Transaction {checkout_request_id} not found")
    if txn.status != TransactionStatus.COMPLETED.value or txn.invoice_id is None:
        return None

    try:
        record = mark_invoice_paid(
            db,
            txn.invoice_id,
            txn.amount,
            payment_reference=txn.mpesa_receipt_number or txn.checkout_request_id,
            notes=f"M-Pesa STK push {txn.checkout_request_id}",
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return record
