"""Gateway callback ingestion.

Providers post the outcome of an STK push here. A callback only ever moves a
pending transaction to a terminal status; repeated or late callbacks are
acknowledged and ignored, except that a success callback may still supply the
receipt of a row a status query already completed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import ConflictError, NotFoundError, ValidationError
from .models import MpesaTransaction
from .providers.daraja import CANCELLED_RESULT_CODE
from .providers.kopokopo import parse_incoming_payment
from .schemas import TransactionStatus
from .settlement import apply_outcome, attach_receipt, settle_transaction

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")


@dataclass
class CallbackResult:
    checkout_request_id: str
    processed: bool
    status: TransactionStatus | None = None
    message: str | None = None


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class CallbackProcessor:
    """Applies a parsed provider outcome to the matching transaction."""

    def __init__(self, db: Session):
        self.db = db

    def _find(self, checkout_request_id: str) -> MpesaTransaction | None:
        stmt = select(MpesaTransaction).where(MpesaTransaction.checkout_request_id == checkout_request_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def apply(
        self,
        checkout_request_id: str,
        status: TransactionStatus,
        result_code: int | None,
        result_desc: str | None,
        receipt_number: str | None = None,
        reported_amount: Decimal | None = None,
    ) -> CallbackResult:
        txn = self._find(checkout_request_id)
        if txn is None:
            logger.warning("Callback for unknown transaction %s", checkout_request_id)
            return CallbackResult(checkout_request_id, processed=False, message="Unknown transaction")

        amount_ok = reported_amount is None or abs(reported_amount - Decimal(txn.amount)) <= AMOUNT_TOLERANCE

        if txn.status != TransactionStatus.PENDING.value:
            # a status query may have completed the row before the callback arrived
            if status is TransactionStatus.COMPLETED and receipt_number and amount_ok:
                try:
                    attached = attach_receipt(self.db, txn, receipt_number)
                    self.db.commit()
                except Exception:
                    self.db.rollback()
                    raise
                if attached:
                    return self._settle(checkout_request_id, status, "Receipt recorded")

            logger.info("Duplicate callback for %s ignored (status=%s)", checkout_request_id, txn.status)
            return CallbackResult(
                checkout_request_id,
                processed=False,
                status=TransactionStatus(txn.status),
                message="Already processed",
            )

        if status is TransactionStatus.COMPLETED and not amount_ok:
            logger.warning(
                "Amount mismatch for %s: expected %s, received %s",
                checkout_request_id,
                txn.amount,
                reported_amount,
            )
            status = TransactionStatus.FAILED
            result_code = None
            result_desc = f"Amount mismatch: expected {txn.amount}, received {reported_amount}"
            receipt_number = None

        try:
            apply_outcome(
                self.db,
                txn,
                status,
                result_code=result_code,
                result_desc=result_desc,
                receipt_number=receipt_number,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if status is TransactionStatus.COMPLETED:
            return self._settle(checkout_request_id, status, result_desc)
        return CallbackResult(checkout_request_id, processed=True, status=status, message=result_desc)

    def _settle(self, checkout_request_id: str, status: TransactionStatus, message: str | None) -> CallbackResult:
        try:
            settle_transaction(self.db, checkout_request_id)
        except (ConflictError, NotFoundError) as e:
            logger.warning("Transaction %s completed but invoice not settled: %s", checkout_request_id, e.detail)
            return CallbackResult(checkout_request_id, processed=True, status=status, message=e.detail)
        return CallbackResult(checkout_request_id, processed=True, status=status, message=message)


class DarajaCallbackHandler(CallbackProcessor):
    """Handles ``Body.stkCallback`` payloads from Safaricom Daraja."""

    def handle(self, payload: dict[str, Any]) -> CallbackResult:
        callback = ((payload or {}).get("Body") or {}).get("stkCallback") or {}
        checkout_request_id = callback.get("CheckoutRequestID")
        if not checkout_request_id:
            raise ValidationError("Daraja callback without CheckoutRequestID")

        try:
            result_code = int(callback.get("ResultCode"))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Daraja callback with invalid ResultCode: {callback.get('ResultCode')!r}") from e
        result_desc = callback.get("ResultDesc")

        items = {
            item.get("Name"): item.get("Value")
            for item in (callback.get("CallbackMetadata") or {}).get("Item", [])
            if isinstance(item, dict)
        }

        if result_code == 0:
            status = TransactionStatus.COMPLETED
        elif result_code == CANCELLED_RESULT_CODE:
            status = TransactionStatus.CANCELLED
        else:
            status = TransactionStatus.FAILED

        logger.info("Daraja callback %s: code=%s", checkout_request_id, result_code)
        return self.apply(
            checkout_request_id,
            status,
            result_code,
            result_desc,
            receipt_number=items.get("MpesaReceiptNumber"),
            reported_amount=_to_decimal(items.get("Amount")),
        )


class KopoKopoCallbackHandler(CallbackProcessor):
    """Handles incoming-payment result callbacks from Kopo Kopo."""

    def handle(self, payload: dict[str, Any]) -> CallbackResult:
        data = (payload or {}).get("data") or {}
        checkout_request_id = data.get("id")
        if not checkout_request_id:
            raise ValidationError("Kopo Kopo callback without payment id")

        outcome = parse_incoming_payment(payload)
        if outcome.status is None:
            logger.info("Kopo Kopo callback %s still pending", checkout_request_id)
            return CallbackResult(checkout_request_id, processed=False, message="Pending")

        resource = ((data.get("attributes") or {}).get("event") or {}).get("resource") or {}
        logger.info("Kopo Kopo callback %s: status=%s", checkout_request_id, outcome.status.value)
        return self.apply(
            checkout_request_id,
            outcome.status,
            outcome.result_code,
            outcome.result_desc,
            receipt_number=outcome.mpesa_receipt_number,
            reported_amount=_to_decimal(resource.get("amount")),
        )
