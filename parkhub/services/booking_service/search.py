"""Advisory availability search over parking locations."""
import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from geopy.distance import geodesic
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from parkhub.shared.errors import NotFound

from .models import ParkingLocation

KM_PER_DEGREE_LAT = 111.0


@dataclass
class LocationResult:
    location: ParkingLocation
    distance_km: Optional[float] = None


@dataclass
class SearchFilters:
    q: Optional[str] = None
    parking_type: Optional[str] = None
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None
    amenities: List[str] = field(default_factory=list)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius_km: float = 5.0
    page: int = 1
    limit: int = 20

    @property
    def has_point(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass
class SearchPage:
    items: List[LocationResult]
    total: int
    page: int
    limit: int


def bounding_box(latitude: float, longitude: float, radius_km: float):
    """
    Lat/lon rectangle that contains the search circle; used as a cheap SQL prefilter.

    Returns (min_lat, max_lat, lon_ranges). A box that crosses the
    antimeridian is split into two longitude ranges.
    """
    lat_delta = radius_km / KM_PER_DEGREE_LAT
    cos_lat = math.cos(math.radians(latitude))
    lon_delta = 180.0 if cos_lat < 1e-6 else min(180.0, radius_km / (KM_PER_DEGREE_LAT * cos_lat))
    min_lat, max_lat = latitude - lat_delta, latitude + lat_delta

    if lon_delta >= 180.0:
        return min_lat, max_lat, [(-180.0, 180.0)]

    min_lon, max_lon = longitude - lon_delta, longitude + lon_delta
    if min_lon < -180.0:
        return min_lat, max_lat, [(min_lon + 360.0, 180.0), (-180.0, max_lon)]
    if max_lon > 180.0:
        return min_lat, max_lat, [(min_lon, 180.0), (-180.0, max_lon - 360.0)]
    return min_lat, max_lat, [(min_lon, max_lon)]


class LocationSearch:
    """
    Distance / price / rating search. Results report available_spots as read,
    which may already be stale; only the inventory ledger reserves.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def nearby(
        self,
        latitude: float,
        longitude: float,
        radius_km: float = 5.0,
        limit: int = 20,
    ) -> List[LocationResult]:
        """Active locations within radius_km, closest first."""
        filters = SearchFilters(latitude=latitude, longitude=longitude, radius_km=radius_km, limit=limit)
        page = await self.search(filters)
        return page.items

    async def search(self, filters: SearchFilters) -> SearchPage:
        query = select(ParkingLocation).where(ParkingLocation.is_active.is_(True))

        if filters.q:
            pattern = f"%{filters.q}%"
            query = query.where(
                or_(ParkingLocation.name.ilike(pattern), ParkingLocation.description.ilike(pattern))
            )
        if filters.parking_type:
            query = query.where(ParkingLocation.parking_type == filters.parking_type)
        if filters.min_price is not None:
            query = query.where(ParkingLocation.hourly_rate >= filters.min_price)
        if filters.max_price is not None:
            query = query.where(ParkingLocation.hourly_rate <= filters.max_price)
        if filters.has_point:
            min_lat, max_lat, lon_ranges = bounding_box(
                filters.latitude, filters.longitude, filters.radius_km
            )
            query = query.where(
                ParkingLocation.latitude.between(min_lat, max_lat),
                or_(*[ParkingLocation.longitude.between(lo, hi) for lo, hi in lon_ranges]),
            )

        locations = (await self.session.execute(query)).scalars().all()

        if filters.amenities:
            wanted = set(filters.amenities)
            locations = [loc for loc in locations if wanted.issubset(set(loc.amenities or []))]

        if filters.has_point:
            origin = (filters.latitude, filters.longitude)
            results = []
            for loc in locations:
                distance = geodesic(origin, (loc.latitude, loc.longitude)).km
                if distance <= filters.radius_km:
                    results.append(LocationResult(loc, round(distance, 3)))
            results.sort(key=lambda r: (r.distance_km, r.location.hourly_rate))
        else:
            results = [LocationResult(loc) for loc in locations]
            results.sort(key=lambda r: (-r.location.rating, -r.location.total_ratings, r.location.hourly_rate))

        offset = (filters.page - 1) * filters.limit
        return SearchPage(
            items=results[offset:offset + filters.limit],
            total=len(results),
            page=filters.page,
            limit=filters.limit,
        )

    async def get_location(self, parking_id: int) -> ParkingLocation:
        result = await self.session.execute(
            select(ParkingLocation).where(
                ParkingLocation.id == parking_id,
                ParkingLocation.is_active.is_(True),
            )
        )
        location = result.scalar_one_or_none()
        if not location:
            raise NotFound(f"Parking {parking_id} not found", {"parking_id": parking_id})
        return location
