"""Parking reviews and the rating aggregate they feed."""
import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from parkhub.shared.database import Database, store_retry
from parkhub.shared.errors import AlreadyExists, ValidationFailed

from .models import ParkingLocation, ParkingReview
from .search import LocationSearch

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5


@dataclass
class ReviewPage:
    items: List[ParkingReview]
    total: int
    page: int
    limit: int


class ReviewService:
    """
    Stores reviews and keeps ParkingLocation.rating / total_ratings in step.

    The review insert and the aggregate update share one transaction. The
    aggregate is updated incrementally in SQL, so concurrent reviews of the
    same location never overwrite each other's contribution.
    """

    def __init__(self, database: Database):
        self.database = database

    @store_retry()
    async def add_review(
        self,
        parking_id: int,
        user_id: str,
        rating: int,
        comment: Optional[str] = None,
    ) -> ParkingReview:
        """
        Raises:
            ValidationFailed: rating outside 1-5
            NotFound: unknown or inactive location
            AlreadyExists: user_id already reviewed this location
        """
        if not MIN_RATING <= rating <= MAX_RATING:
            raise ValidationFailed(f"rating must be between {MIN_RATING} and {MAX_RATING}")

        async with self.database.transaction() as session:
            await LocationSearch(session).get_location(parking_id)

            existing = (
                await session.execute(
                    select(ParkingReview.id).where(
                        ParkingReview.user_id == user_id,
                        ParkingReview.parking_id == parking_id,
                    )
                )
            ).scalar_one_or_none()
            if existing:
                raise AlreadyExists(
                    f"User {user_id} already reviewed parking {parking_id}", {"parking_id": parking_id}
                )

            review = ParkingReview(user_id=user_id, parking_id=parking_id, rating=rating, comment=comment)
            session.add(review)
            try:
                await session.flush()
            except IntegrityError as e:
                raise AlreadyExists(
                    f"User {user_id} already reviewed parking {parking_id}", {"parking_id": parking_id}
                ) from e

            # SET expressions read the pre-update row
            await session.execute(
                update(ParkingLocation)
                .where(ParkingLocation.id == parking_id)
                .values(
                    rating=(ParkingLocation.rating * ParkingLocation.total_ratings + rating)
                    / (ParkingLocation.total_ratings + 1),
                    total_ratings=ParkingLocation.total_ratings + 1,
                )
                .execution_options(synchronize_session=False)
            )

            logger.info(f"User {user_id} rated parking {parking_id}: {rating}")
            return review

    @store_retry()
    async def list_reviews(self, parking_id: int, page: int = 1, limit: int = 10) -> ReviewPage:
        """Reviews of an active location, newest first."""
        async with self.database.transaction() as session:
            await LocationSearch(session).get_location(parking_id)

            total = (
                await session.execute(
                    select(func.count()).select_from(ParkingReview).where(ParkingReview.parking_id == parking_id)
                )
            ).scalar_one()
            result = await session.execute(
                select(ParkingReview)
                .where(ParkingReview.parking_id == parking_id)
                .order_by(ParkingReview.created_at.desc(), ParkingReview.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return ReviewPage(items=list(result.scalars().all()), total=total, page=page, limit=limit)
