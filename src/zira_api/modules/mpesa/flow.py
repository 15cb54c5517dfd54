"""Payment flow: one payer-facing STK push from submission to outcome.

The flow owns at most one poller. Closing the flow stops it, so nothing keeps
polling once the owner is gone.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable

from .errors import ConflictError, MpesaError
from .poller import PollOutcome, PollRegistry, Sleep, StatusReader, SuccessHook, TransactionPoller
from .schemas import FlowState, InitiationResponse, PaymentInitiationRequest, TransactionStatusView

logger = logging.getLogger(__name__)

Initiate = Callable[[PaymentInitiationRequest], Awaitable[InitiationResponse]]

TERMINAL_STATES = (FlowState.SUCCESS, FlowState.FAILED)


class PaymentFlow:
    """State machine ``idle -> sending -> waiting_on_customer -> verifying -> success|failed``.

    Gateway and validation failures during submission land in ``failed`` with
    a user-facing message; they are not raised to the caller.
    """

    def __init__(
        self,
        initiate: Initiate,
        read_status: StatusReader,
        *,
        interval: float = 5.0,
        max_attempts: int = 60,
        on_success: SuccessHook | None = None,
        registry: PollRegistry | None = None,
        sleep: Sleep | None = None,
    ):
        self._initiate = initiate
        self._read_status = read_status
        self.interval = interval
        self.max_attempts = max_attempts
        self._on_success = on_success
        self._registry = registry
        self._sleep = sleep

        self.state = FlowState.IDLE
        self.history: list[FlowState] = [FlowState.IDLE]
        self.error: str | None = None
        self.response: InitiationResponse | None = None
        self.result: TransactionStatusView | None = None
        self.poller: TransactionPoller | None = None
        self.closed = False

    @property
    def receipt_number(self) -> str | None:
        return self.result.mpesa_receipt_number if self.result else None

    def _set(self, state: FlowState) -> None:
        if self.state is state:
            return
        logger.debug("Payment flow %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _fail(self, message: str) -> None:
        self.error = message
        self._set(FlowState.FAILED)

    async def submit(self, request: PaymentInitiationRequest) -> FlowState:
        """Send the STK push and start polling for its outcome."""
        if self.closed:
            raise ConflictError("Payment flow is closed")
        if self.state not in (FlowState.IDLE, FlowState.FAILED):
            raise ConflictError(
                f"Payment flow busy in state {self.state.value}",
                user_message="A payment request is already in progress.",
            )

        self.error = None
        self.result = None
        self._set(FlowState.SENDING)
        try:
            self.response = await self._initiate(request)
        except MpesaError as e:
            logger.warning("Payment submission failed: %s", e.detail)
            self._fail(e.public_message)
            return self.state

        if self.response.dry_run or not self.response.correlation_id:
            self._set(FlowState.IDLE)
            return self.state

        self._set(FlowState.WAITING_ON_CUSTOMER)
        self.poller = TransactionPoller(
            self.response.correlation_id,
            self._read_status,
            interval=self.interval,
            max_attempts=self.max_attempts,
            on_success=self._verify,
            sleep=self._sleep,
        )
        if self._registry is not None:
            task = self._registry.start(self.poller)
        else:
            task = self.poller.start()
        task.add_done_callback(self._apply)
        return self.state

    async def _verify(self, view: TransactionStatusView) -> None:
        self._set(FlowState.VERIFYING)
        self.result = view
        if self._on_success is not None:
            outcome = self._on_success(view)
            if inspect.isawaitable(outcome):
                await outcome

    def _apply(self, task: asyncio.Task[PollOutcome]) -> None:
        if self.state in TERMINAL_STATES or task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Payment verification failed: %r", error)
            message = error.public_message if isinstance(error, MpesaError) else "Payment verification failed."
            self._fail(message)
            return

        outcome = task.result()
        if outcome.stopped:
            return
        if outcome.success:
            self.result = outcome.view
            self._set(FlowState.SUCCESS)
        else:
            self.result = outcome.view
            self._fail(outcome.message or "Payment failed.")

    async def wait(self) -> FlowState:
        """Wait for polling to finish and return the final state."""
        if self.poller is None or self.poller.task is None:
            return self.state
        try:
            await self.poller.task
        except asyncio.CancelledError:
            if not self.poller.task.cancelled():
                raise
            return self.state
        except MpesaError:
            pass  # recorded by _apply
        self._apply(self.poller.task)
        return self.state

    async def close(self) -> None:
        """Tear the flow down, stopping any running poller."""
        self.closed = True
        if self.poller is not None and self.poller.running:
            if self._registry is not None:
                await self._registry.stop(self.poller.checkout_request_id)
            else:
                await self.poller.close()
