"""Tests for the transaction status poller."""

import asyncio
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from zira_api.modules.mpesa.errors import ConflictError, GatewayError
from zira_api.modules.mpesa.models import PaymentRecord
from zira_api.modules.mpesa.poller import PollRegistry, TransactionPoller, is_success, is_terminal
from zira_api.modules.mpesa.schemas import TransactionStatus, TransactionStatusView
from zira_api.modules.mpesa.settlement import mark_invoice_paid

PENDING = TransactionStatusView(status=TransactionStatus.PENDING)
COMPLETED = TransactionStatusView(
    status=TransactionStatus.COMPLETED,
    result_code=0,
    result_desc="The service request is processed successfully.",
    mpesa_receipt_number="NLJ7RT61SV",
)
CANCELLED = TransactionStatusView(
    status=TransactionStatus.CANCELLED,
    result_code=1032,
    result_desc="Request cancelled by user",
)


def reader_returning(*views):
    return AsyncMock(side_effect=list(views))


class TestStatusHelpers:
    def test_result_code_decides_success(self):
        assert is_success(COMPLETED)
        assert not is_success(CANCELLED)
        assert is_success(TransactionStatusView(status=TransactionStatus.COMPLETED))

    def test_terminal(self):
        assert is_terminal(COMPLETED)
        assert is_terminal(CANCELLED)
        assert not is_terminal(PENDING)


class TestTransactionPoller:
    """Polling stops on the first terminal status."""

    @pytest.mark.asyncio
    async def test_success_on_third_attempt(self, db_session, seed_invoice):
        invoice = seed_invoice("10", date(2024, 1, 15))
        read_status = reader_returning(PENDING, PENDING, COMPLETED, COMPLETED)
        sleep = AsyncMock()

        def settle(view):
            mark_invoice_paid(db_session, invoice.id, Decimal("10"), view.mpesa_receipt_number)
            db_session.commit()

        on_success = AsyncMock(side_effect=settle)
        poller = TransactionPoller(
            "ws_1", read_status, interval=5.0, max_attempts=10, on_success=on_success, sleep=sleep
        )

        poller.start()
        outcome = await poller.wait()

        assert outcome.success is True
        assert outcome.attempts == 3
        assert outcome.view.mpesa_receipt_number == "NLJ7RT61SV"
        assert read_status.await_count == 3
        assert sleep.await_count == 2
        sleep.assert_awaited_with(5.0)
        on_success.assert_awaited_once_with(COMPLETED)

        db_session.refresh(invoice)
        assert invoice.status == "paid"
        records = db_session.execute(select(PaymentRecord)).scalars().all()
        assert len(records) == 1
        assert records[0].payment_reference == "NLJ7RT61SV"

    @pytest.mark.asyncio
    async def test_failure_outcome_does_not_fire_hook(self):
        on_success = AsyncMock()
        poller = TransactionPoller(
            "ws_1", reader_returning(PENDING, CANCELLED), on_success=on_success, sleep=AsyncMock()
        )

        poller.start()
        outcome = await poller.wait()

        assert outcome.success is False
        assert outcome.status is TransactionStatus.CANCELLED
        assert outcome.message == "Request cancelled by user"
        on_success.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_timeout_after_max_attempts(self):
        read_status = AsyncMock(return_value=PENDING)
        sleep = AsyncMock()
        poller = TransactionPoller("ws_1", read_status, interval=5.0, max_attempts=3, sleep=sleep)

        poller.start()
        outcome = await poller.wait()

        assert outcome.timed_out is True
        assert outcome.success is False
        assert outcome.status is TransactionStatus.PENDING
        assert "timed out" in outcome.message
        assert read_status.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_read_errors_are_retried(self):
        read_status = AsyncMock(side_effect=[GatewayError("network down"), COMPLETED])
        poller = TransactionPoller("ws_1", read_status, sleep=AsyncMock())

        poller.start()
        outcome = await poller.wait()

        assert outcome.success is True
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_starting_twice_is_rejected(self):
        poller = TransactionPoller("ws_1", AsyncMock(return_value=COMPLETED), sleep=AsyncMock())
        poller.start()

        with pytest.raises(ConflictError):
            poller.start()
        await poller.wait()

    @pytest.mark.asyncio
    async def test_close_stops_the_loop(self):
        read_status = AsyncMock(return_value=PENDING)
        poller = TransactionPoller("ws_1", read_status, interval=60.0, max_attempts=100)

        poller.start()
        await asyncio.sleep(0)
        await poller.close()

        assert poller.running is False
        assert read_status.await_count <= 1

    @pytest.mark.asyncio
    async def test_stop_interrupts_default_wait(self):
        read_status = AsyncMock(return_value=PENDING)
        poller = TransactionPoller("ws_1", read_status, interval=60.0, max_attempts=100)

        task = poller.start()
        await asyncio.sleep(0)
        poller.stop()
        outcome = await asyncio.wait_for(task, timeout=1.0)

        assert outcome.stopped is True
        assert outcome.attempts <= 1


class TestPollRegistry:
    """A correlation id is polled by at most one poller at a time."""

    @pytest.mark.asyncio
    async def test_duplicate_poll_is_rejected(self):
        registry = PollRegistry()
        first = TransactionPoller("ws_1", AsyncMock(return_value=PENDING), interval=60.0)
        second = TransactionPoller("ws_1", AsyncMock(return_value=PENDING), interval=60.0)

        registry.start(first)
        with pytest.raises(ConflictError):
            registry.start(second)

        assert registry.is_polling("ws_1")
        await registry.stop_all()
        assert not registry.is_polling("ws_1")

    @pytest.mark.asyncio
    async def test_finished_poller_is_forgotten(self):
        registry = PollRegistry()
        task = registry.start(TransactionPoller("ws_1", AsyncMock(return_value=COMPLETED), sleep=AsyncMock()))
        await task
        await asyncio.sleep(0)

        assert not registry.is_polling("ws_1")
        registry.start(TransactionPoller("ws_1", AsyncMock(return_value=COMPLETED), sleep=AsyncMock()))
        await registry.stop_all()
