"""Inventory ledger: the only writer of ParkingLocation.available_spots."""
import logging
from datetime import datetime
from typing import NamedTuple, Optional
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from parkhub.shared.errors import NoCapacity, NotFound

from .models import InventoryHold, ParkingLocation

logger = logging.getLogger(__name__)


class Availability(NamedTuple):
    available: int
    total: int


class InventoryLedger:
    """
    Atomic reserve/release of parking spots.

    Every counter change is a single conditional UPDATE evaluated by the
    database, so concurrent callers for the same location are serialized by
    the row lock instead of by a read-then-write in application code. The
    ledger never commits; callers own the transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def reserve(self, parking_id: int, reservation_id: UUID) -> InventoryHold:
        """
        Take one spot at a location for a reservation.

        Raises:
            NotFound: location missing or not bookable
            NoCapacity: no spot left
        """
        now = datetime.utcnow()
        result = await self.session.execute(
            update(ParkingLocation)
            .where(
                ParkingLocation.id == parking_id,
                ParkingLocation.is_active.is_(True),
                ParkingLocation.is_open.is_(True),
                ParkingLocation.available_spots > 0,
            )
            .values(
                available_spots=ParkingLocation.available_spots - 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            location = await self._get_location(parking_id)
            if not location or not location.is_active or not location.is_open:
                raise NotFound(f"Parking {parking_id} not found", {"parking_id": parking_id})
            raise NoCapacity(f"No available spots at parking {parking_id}", {"parking_id": parking_id})

        hold = InventoryHold(
            id=uuid4(),
            parking_id=parking_id,
            reservation_id=reservation_id,
            created_at=now,
        )
        self.session.add(hold)
        await self.session.flush()

        logger.info(f"Reserved spot at parking {parking_id} (hold={hold.id}, reservation={reservation_id})")
        return hold

    async def release(self, hold_id: UUID) -> bool:
        """
        Return a held spot to its location.

        Releasing an already released hold is a no-op. Returns True only when
        this call actually released the spot.
        """
        now = datetime.utcnow()
        parking_id = (
            await self.session.execute(
                select(InventoryHold.parking_id).where(InventoryHold.id == hold_id)
            )
        ).scalar_one_or_none()
        if parking_id is None:
            raise NotFound(f"Hold {hold_id} not found")

        # The released_at guard decides which of several concurrent releasers wins
        result = await self.session.execute(
            update(InventoryHold)
            .where(InventoryHold.id == hold_id, InventoryHold.released_at.is_(None))
            .values(released_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(f"Hold {hold_id} already released")
            return False

        counter = await self.session.execute(
            update(ParkingLocation)
            .where(
                ParkingLocation.id == parking_id,
                ParkingLocation.available_spots < ParkingLocation.total_spots,
            )
            .values(
                available_spots=ParkingLocation.available_spots + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if counter.rowcount != 1:
            logger.warning(f"Parking {parking_id} already at capacity while releasing hold {hold_id}")

        logger.info(f"Released hold {hold_id} at parking {parking_id}")
        return True

    async def release_for_reservation(self, reservation_id: UUID) -> bool:
        """Release the hold owned by a reservation, if it is still held."""
        result = await self.session.execute(
            select(InventoryHold.id).where(InventoryHold.reservation_id == reservation_id)
        )
        hold_id = result.scalar_one_or_none()
        if hold_id is None:
            logger.warning(f"No inventory hold found for reservation {reservation_id}")
            return False
        return await self.release(hold_id)

    async def get_hold(self, reservation_id: UUID) -> Optional[InventoryHold]:
        result = await self.session.execute(
            select(InventoryHold).where(InventoryHold.reservation_id == reservation_id)
        )
        return result.scalar_one_or_none()

    async def peek(self, parking_id: int) -> Availability:
        """Advisory read of a location's counters; reserve() is the authority."""
        result = await self.session.execute(
            select(ParkingLocation.available_spots, ParkingLocation.total_spots)
            .where(ParkingLocation.id == parking_id)
        )
        row = result.first()
        if row is None:
            raise NotFound(f"Parking {parking_id} not found", {"parking_id": parking_id})
        return Availability(available=row.available_spots, total=row.total_spots)

    async def _get_location(self, parking_id: int) -> Optional[ParkingLocation]:
        result = await self.session.execute(
            select(ParkingLocation).where(ParkingLocation.id == parking_id)
        )
        return result.scalar_one_or_none()
