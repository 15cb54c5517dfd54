"""Server-side status polling for submitted STK pushes.

Each push gets one poller that queries the provider while the transaction is
pending. A completed transaction settles its invoice whether the outcome
arrives by callback or by status query; settlement is idempotent, so the two
paths never pay an invoice twice.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractContextManager
from typing import Callable

from sqlalchemy.orm import Session

from ...core.config import Settings, get_settings
from .errors import ConflictError, NotFoundError
from .gateway import MpesaGateway
from .poller import PollOutcome, PollRegistry, Sleep, TransactionPoller
from .schemas import TransactionStatusView
from .settlement import settle_transaction

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session | None]]


class StatusWatcher:
    """Starts and tracks one status poller per submitted STK push.

    Args:
        session_factory: Context manager factory yielding a database session
        settings: Application settings
        registry: Running pollers, one per correlation id
        sleep: Wait between attempts, for tests
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        settings: Settings | None = None,
        registry: PollRegistry | None = None,
        sleep: Sleep | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.registry = registry or PollRegistry()
        self._sleep = sleep

    async def read_status(self, checkout_request_id: str) -> TransactionStatusView:
        with self.session_factory() as db:
            if db is None:
                raise NotFoundError("Database not configured")
            gateway = MpesaGateway(db, self.settings)
            return await gateway.read_status(checkout_request_id, query_gateway=True)

    def settle(self, checkout_request_id: str) -> None:
        with self.session_factory() as db:
            if db is None:
                return
            try:
                settle_transaction(db, checkout_request_id)
            except (ConflictError, NotFoundError) as e:
                logger.warning("Transaction %s completed but invoice not settled: %s", checkout_request_id, e.detail)

    def watch(self, checkout_request_id: str) -> asyncio.Task[PollOutcome]:
        """Start polling ``checkout_request_id``.

        Raises:
            ConflictError: The transaction is already being polled.
        """

        def on_success(view: TransactionStatusView) -> None:
            self.settle(checkout_request_id)

        poller = TransactionPoller(
            checkout_request_id,
            self.read_status,
            interval=self.settings.MPESA_POLL_INTERVAL_SECONDS,
            max_attempts=self.settings.MPESA_POLL_MAX_ATTEMPTS,
            on_success=on_success,
            sleep=self._sleep,
        )
        task = self.registry.start(poller)
        task.add_done_callback(self._log_outcome)
        logger.info("Watching transaction %s", checkout_request_id)
        return task

    def _log_outcome(self, task: asyncio.Task[PollOutcome]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Status polling for %s crashed: %r", task.get_name(), error)
            return
        outcome = task.result()
        if outcome.timed_out:
            logger.warning("Gave up polling after %d attempts", outcome.attempts)

    async def close(self) -> None:
        await self.registry.stop_all()
