import unittest
from decimal import Decimal

from parkhub.services.booking_service.search import LocationSearch, SearchFilters, bounding_box
from parkhub.shared.errors import NotFound

from tests.helpers import DatabaseTestCase

HOTEL_DE_VILLE = (48.8566, 2.3522)


class TestLocationSearch(DatabaseTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        # ~0.45 km from the origin
        self.near = await self.add_parking(
            total_spots=10, name="Notre-Dame", latitude=48.8530, longitude=2.3499,
            hourly_rate=Decimal("4.00"), rating=4.1, total_ratings=20, amenities=["covered"],
        )
        # ~1.2 km
        self.mid = await self.add_parking(
            total_spots=5, name="Louvre Garage", latitude=48.8606, longitude=2.3376,
            hourly_rate=Decimal("3.00"), rating=4.8, total_ratings=150,
            amenities=["covered", "ev_charging"], parking_type="private",
        )
        # ~17 km
        self.far = await self.add_parking(
            total_spots=50, name="Versailles Chateau", latitude=48.8049, longitude=2.1204,
            hourly_rate=Decimal("1.50"), rating=3.9, total_ratings=80,
        )
        self.hidden = await self.add_parking(
            total_spots=5, name="Closed Lot", latitude=48.8567, longitude=2.3523, is_active=False,
        )

    async def search(self, **filters):
        async with self.database.transaction() as session:
            return await LocationSearch(session).search(SearchFilters(**filters))

    async def test_nearby_orders_by_distance(self):
        async with self.database.transaction() as session:
            results = await LocationSearch(session).nearby(*HOTEL_DE_VILLE, radius_km=5)

        self.assertEqual([r.location.id for r in results], [self.near, self.mid])
        self.assertLess(results[0].distance_km, results[1].distance_km)
        self.assertLess(results[1].distance_km, 2)

    async def test_larger_radius_reaches_further(self):
        page = await self.search(latitude=HOTEL_DE_VILLE[0], longitude=HOTEL_DE_VILLE[1], radius_km=25)
        self.assertEqual([r.location.id for r in page.items], [self.near, self.mid, self.far])

    async def test_without_point_orders_by_rating(self):
        page = await self.search()
        self.assertEqual([r.location.id for r in page.items], [self.mid, self.near, self.far])
        self.assertTrue(all(r.distance_km is None for r in page.items))

    async def test_filters(self):
        by_amenity = await self.search(amenities=["ev_charging"])
        by_price = await self.search(max_price=Decimal("3.00"))
        by_type = await self.search(parking_type="private")
        by_text = await self.search(q="notre")

        self.assertEqual([r.location.id for r in by_amenity.items], [self.mid])
        self.assertEqual({r.location.id for r in by_price.items}, {self.mid, self.far})
        self.assertEqual([r.location.id for r in by_type.items], [self.mid])
        self.assertEqual([r.location.id for r in by_text.items], [self.near])

    async def test_pagination(self):
        page = await self.search(page=2, limit=2)
        self.assertEqual(page.total, 3)
        self.assertEqual([r.location.id for r in page.items], [self.far])

    async def test_nearby_across_antimeridian(self):
        # Fiji: Taveuni sits just east of 180, Rabi just west of it
        east = await self.add_parking(total_spots=3, name="Taveuni Wharf", latitude=-16.80, longitude=-179.98)
        west = await self.add_parking(total_spots=3, name="Rabi Landing", latitude=-16.80, longitude=179.97)

        async with self.database.transaction() as session:
            from_west = await LocationSearch(session).nearby(-16.80, 179.99, radius_km=10)
            from_east = await LocationSearch(session).nearby(-16.80, -179.99, radius_km=10)

        self.assertEqual([r.location.id for r in from_west], [west, east])
        self.assertEqual([r.location.id for r in from_east], [east, west])
        self.assertTrue(all(r.distance_km < 5 for r in from_west))

    async def test_get_location_skips_inactive(self):
        async with self.database.transaction() as session:
            search = LocationSearch(session)
            self.assertEqual((await search.get_location(self.near)).name, "Notre-Dame")
            with self.assertRaises(NotFound):
                await search.get_location(self.hidden)


class TestBoundingBox(unittest.TestCase):

    def test_box_contains_origin(self):
        min_lat, max_lat, lon_ranges = bounding_box(48.8566, 2.3522, 5)
        self.assertEqual(len(lon_ranges), 1)
        min_lon, max_lon = lon_ranges[0]
        self.assertLess(min_lat, 48.8566)
        self.assertGreater(max_lat, 48.8566)
        self.assertLess(min_lon, 2.3522)
        self.assertGreater(max_lon, 2.3522)
        # Longitude degrees are shorter away from the equator
        self.assertGreater(max_lon - min_lon, max_lat - min_lat)

    def test_box_splits_at_antimeridian(self):
        _, _, east = bounding_box(-17.0, 179.95, 20)
        _, _, west = bounding_box(-17.0, -179.95, 20)

        self.assertEqual(len(east), 2)
        self.assertEqual(east[0][1], 180.0)
        self.assertEqual(east[1][0], -180.0)
        self.assertLess(east[1][1], -179.7)

        self.assertEqual(len(west), 2)
        self.assertGreater(west[0][0], 179.7)
        self.assertEqual(west[1], (-180.0, west[1][1]))

    def test_box_near_pole_covers_all_longitudes(self):
        _, _, lon_ranges = bounding_box(89.99, 10.0, 5)
        self.assertEqual(lon_ranges, [(-180.0, 180.0)])


if __name__ == "__main__":
    unittest.main()
