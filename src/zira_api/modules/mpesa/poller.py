"""Transaction Status Poller.

An explicit asyncio task reads a transaction's status by correlation id at a
fixed interval until a terminal state or until the attempt budget runs out.
Stopping the poller (or cancelling its task) ends the loop; no timer
survives its owner.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from .errors import ConflictError, MpesaError, PollTimeoutError
from .schemas import TransactionStatus, TransactionStatusView

logger = logging.getLogger(__name__)

StatusReader = Callable[[str], Awaitable[TransactionStatusView]]
SuccessHook = Callable[[TransactionStatusView], "Awaitable[None] | None"]
Sleep = Callable[[float], Awaitable[None]]

TIMEOUT_MESSAGE = PollTimeoutError("").user_message


@dataclass
class PollOutcome:
    success: bool
    attempts: int
    status: TransactionStatus | None = None
    view: TransactionStatusView | None = None
    message: str | None = None
    timed_out: bool = False
    stopped: bool = False


def is_success(view: TransactionStatusView) -> bool:
    if view.result_code is not None:
        return view.result_code == 0
    return view.status is TransactionStatus.COMPLETED


def is_terminal(view: TransactionStatusView) -> bool:
    return view.result_code is not None or TransactionStatus(view.status).is_terminal


class TransactionPoller:
    """Poll one transaction until it settles.

    Args:
        checkout_request_id: Correlation id returned by the gateway
        read_status: Async reader returning the current status view
        interval: Seconds between attempts
        max_attempts: Attempt budget before giving up with a timeout
        on_success: Called exactly once when the transaction succeeds
        sleep: Awaitable used between attempts; defaults to a wait that the
            stop signal interrupts
    """

    def __init__(
        self,
        checkout_request_id: str,
        read_status: StatusReader,
        *,
        interval: float = 5.0,
        max_attempts: int = 60,
        on_success: SuccessHook | None = None,
        sleep: Sleep | None = None,
    ):
        self.checkout_request_id = checkout_request_id
        self.read_status = read_status
        self.interval = interval
        self.max_attempts = max_attempts
        self.on_success = on_success
        self._sleep = sleep or self._wait_or_stop
        self._stop = asyncio.Event()
        self._task: asyncio.Task[PollOutcome] | None = None
        self._success_fired = False
        self.attempts = 0

    @property
    def task(self) -> asyncio.Task[PollOutcome] | None:
        return self._task

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[PollOutcome]:
        if self._task is not None:
            raise ConflictError(f"Poller for {self.checkout_request_id} already started")
        self._task = asyncio.create_task(self.run(), name=f"mpesa-poll-{self.checkout_request_id}")
        return self._task

    def stop(self) -> None:
        """Signal the loop to end before its next attempt."""
        self._stop.set()

    async def close(self) -> None:
        """Stop and wait for the task to finish."""
        self.stop()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def wait(self) -> PollOutcome:
        if self._task is None:
            raise ConflictError(f"Poller for {self.checkout_request_id} was never started")
        return await self._task

    async def _wait_or_stop(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _fire_success(self, view: TransactionStatusView) -> None:
        if self._success_fired or self.on_success is None:
            return
        self._success_fired = True
        result = self.on_success(view)
        if inspect.isawaitable(result):
            await result

    async def run(self) -> PollOutcome:
        while self.attempts < self.max_attempts:
            if self._stop.is_set():
                logger.debug("Polling %s stopped after %d attempts", self.checkout_request_id, self.attempts)
                return PollOutcome(success=False, attempts=self.attempts, stopped=True)

            self.attempts += 1
            try:
                view = await self.read_status(self.checkout_request_id)
            except MpesaError as e:
                logger.warning(
                    "Status read %d/%d for %s failed: %s",
                    self.attempts,
                    self.max_attempts,
                    self.checkout_request_id,
                    e.detail,
                )
            else:
                if is_terminal(view):
                    self._stop.set()
                    success = is_success(view)
                    logger.info(
                        "Transaction %s settled after %d polls: success=%s code=%s",
                        self.checkout_request_id,
                        self.attempts,
                        success,
                        view.result_code,
                    )
                    if success:
                        await self._fire_success(view)
                    return PollOutcome(
                        success=success,
                        attempts=self.attempts,
                        status=TransactionStatus(view.status),
                        view=view,
                        message=None if success else (view.result_desc or "Payment failed"),
                    )

            if self.attempts < self.max_attempts:
                await self._sleep(self.interval)

        logger.warning(
            "Polling %s timed out after %d attempts",
            self.checkout_request_id,
            self.attempts,
        )
        return PollOutcome(
            success=False,
            attempts=self.attempts,
            status=TransactionStatus.PENDING,
            message=TIMEOUT_MESSAGE,
            timed_out=True,
        )


class PollRegistry:
    """Tracks running pollers so a correlation id is never polled twice at once."""

    def __init__(self) -> None:
        self._pollers: dict[str, TransactionPoller] = {}

    def is_polling(self, checkout_request_id: str) -> bool:
        poller = self._pollers.get(checkout_request_id)
        return poller is not None and poller.running

    def start(self, poller: TransactionPoller) -> asyncio.Task[PollOutcome]:
        """Start ``poller``.

        Raises:
            ConflictError: A poller for the same correlation id is running.
        """
        key = poller.checkout_request_id
        if self.is_polling(key):
            raise ConflictError(
                f"Transaction {key} is already being polled",
                user_message="This payment is already being checked.",
            )
        self._pollers[key] = poller
        task = poller.start()
        task.add_done_callback(lambda _t, p=poller: self._forget(p))
        return task

    def _forget(self, poller: TransactionPoller) -> None:
        if self._pollers.get(poller.checkout_request_id) is poller:
            del self._pollers[poller.checkout_request_id]

    async def stop(self, checkout_request_id: str) -> None:
        poller = self._pollers.get(checkout_request_id)
        if poller is not None:
            await poller.close()

    async def stop_all(self) -> None:
        for poller in list(self._pollers.values()):
            await poller.close()
        self._pollers.clear()
