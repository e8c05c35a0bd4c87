"""Expiry sweeper: time-driven reservation transitions."""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional
from uuid import UUID

from sqlalchemy import or_, select

from parkhub.shared.database import Database, store_retry
from parkhub.shared.errors import InvalidTransition, PaymentGatewayError, TransientStoreError

from .gateway import StripeGateway
from .models import Reservation
from .state_machine import ACTIVE, CONFIRMED, PENDING, ReservationStateMachine, TransitionResult

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    expired: int = 0
    activated: int = 0
    completed: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.expired + self.activated + self.completed


class ExpirySweeper:
    """
    Periodically expires unpaid reservations and moves paid ones through
    their time window.

    Several sweepers may run at once (one per process). Each reservation is
    transitioned in its own transaction and the state machine's
    compare-and-set guard makes a lost race a skipped item, never a second
    release.
    """

    def __init__(
        self,
        database: Database,
        grace_period: timedelta = timedelta(minutes=30),
        interval: int = 60,
        batch_size: int = 100,
        gateway: Optional[StripeGateway] = None,
    ):
        """
        Initialize the sweeper.

        Args:
            database: Database to scan
            grace_period: How long a pending reservation may wait for payment
            interval: Seconds between sweeps
            batch_size: Maximum reservations per category per sweep
            gateway: Used to cancel provider intents of expired reservations
        """
        self.database = database
        self.grace_period = grace_period
        self.interval = interval
        self.batch_size = batch_size
        self.gateway = gateway
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the periodic sweep."""
        if self._running:
            logger.warning("Expiry sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Expiry sweeper started (interval={self.interval}s)")

    async def stop(self):
        """Stop the periodic sweep."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("Expiry sweeper stopped")

    async def _loop(self):
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in expiry sweeper: {str(e)}", exc_info=True)

            await asyncio.sleep(self.interval)

    async def run_once(self, now: Optional[datetime] = None) -> SweepResult:
        """Run a single bounded sweep and return what it did."""
        now = now or datetime.utcnow()
        result = SweepResult()

        stale_pending = await self._find(
            Reservation.status == PENDING,
            or_(
                Reservation.created_at <= now - self.grace_period,
                Reservation.end_time <= now,
            ),
        )
        for reservation_id, intent_id in stale_pending:
            outcome = await self._apply(reservation_id, lambda m: m.expire(reservation_id))
            if outcome and outcome.changed:
                result.expired += 1
                await self._cancel_intent(intent_id)
            else:
                result.skipped += 1

        to_complete = await self._find(
            Reservation.status.in_([CONFIRMED, ACTIVE]),
            Reservation.end_time <= now,
        )
        for reservation_id, _ in to_complete:
            outcome = await self._apply(reservation_id, lambda m: m.complete(reservation_id))
            if outcome and outcome.changed:
                result.completed += 1
            else:
                result.skipped += 1

        to_activate = await self._find(
            Reservation.status == CONFIRMED,
            Reservation.start_time <= now,
            Reservation.end_time > now,
        )
        for reservation_id, _ in to_activate:
            outcome = await self._apply(reservation_id, lambda m: m.activate(reservation_id))
            if outcome and outcome.changed:
                result.activated += 1
            else:
                result.skipped += 1

        if result.total or result.skipped:
            logger.info(
                f"Sweep finished: expired={result.expired} activated={result.activated} "
                f"completed={result.completed} skipped={result.skipped}"
            )
        return result

    @store_retry()
    async def _find(self, *criteria) -> List[tuple]:
        async with self.database.transaction() as session:
            rows = await session.execute(
                select(Reservation.id, Reservation.payment_intent_id)
                .where(*criteria)
                .order_by(Reservation.created_at)
                .limit(self.batch_size)
            )
            return [tuple(row) for row in rows]

    async def _apply(
        self,
        reservation_id: UUID,
        step: Callable[[ReservationStateMachine], Awaitable[TransitionResult]],
    ) -> Optional[TransitionResult]:
        try:
            return await self._apply_in_transaction(step)
        except InvalidTransition as e:
            logger.info(f"Skipping reservation {reservation_id}: {e.message}")
        except TransientStoreError:
            logger.warning(f"Store unavailable while sweeping reservation {reservation_id}")
        return None

    @store_retry()
    async def _apply_in_transaction(self, step) -> TransitionResult:
        async with self.database.transaction() as session:
            return await step(ReservationStateMachine(session))

    async def _cancel_intent(self, provider_intent_id: Optional[str]):
        if not provider_intent_id or not self.gateway:
            return
        try:
            await self.gateway.cancel_intent(provider_intent_id)
        except PaymentGatewayError as e:
            logger.warning(f"Could not cancel intent {provider_intent_id}: {e}")
