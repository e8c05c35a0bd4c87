import asyncio
import unittest
from uuid import uuid4

from parkhub.services.booking_service.ledger import InventoryLedger
from parkhub.shared.errors import NoCapacity, NotFound

from tests.helpers import DatabaseTestCase


class TestInventoryLedger(DatabaseTestCase):

    async def test_reserve_and_release_move_the_counter(self):
        parking_id = await self.add_parking(total_spots=2)

        async with self.database.transaction() as session:
            hold = await InventoryLedger(session).reserve(parking_id, uuid4())
        self.assertEqual(await self.available(parking_id), 1)

        async with self.database.transaction() as session:
            released = await InventoryLedger(session).release(hold.id)
        self.assertTrue(released)
        self.assertEqual(await self.available(parking_id), 2)

    async def test_double_release_is_a_noop(self):
        parking_id = await self.add_parking(total_spots=1)
        async with self.database.transaction() as session:
            hold = await InventoryLedger(session).reserve(parking_id, uuid4())

        async with self.database.transaction() as session:
            self.assertTrue(await InventoryLedger(session).release(hold.id))
        async with self.database.transaction() as session:
            self.assertFalse(await InventoryLedger(session).release(hold.id))

        self.assertEqual(await self.available(parking_id), 1)

    async def test_reserve_without_capacity(self):
        parking_id = await self.add_parking(total_spots=1, available_spots=0)

        with self.assertRaises(NoCapacity):
            async with self.database.transaction() as session:
                await InventoryLedger(session).reserve(parking_id, uuid4())

        self.assertEqual(await self.available(parking_id), 0)

    async def test_reserve_unknown_or_closed_location(self):
        closed_id = await self.add_parking(total_spots=3, is_open=False)

        with self.assertRaises(NotFound):
            async with self.database.transaction() as session:
                await InventoryLedger(session).reserve(9999, uuid4())
        with self.assertRaises(NotFound):
            async with self.database.transaction() as session:
                await InventoryLedger(session).reserve(closed_id, uuid4())

        self.assertEqual(await self.available(closed_id), 3)

    async def test_release_unknown_hold(self):
        with self.assertRaises(NotFound):
            async with self.database.transaction() as session:
                await InventoryLedger(session).release(uuid4())

    async def test_peek_unknown_location(self):
        with self.assertRaises(NotFound):
            async with self.database.transaction() as session:
                await InventoryLedger(session).peek(12345)

    async def test_two_callers_for_the_last_spot(self):
        parking_id = await self.add_parking(total_spots=1)

        async def attempt():
            async with self.database.transaction() as session:
                return await InventoryLedger(session).reserve(parking_id, uuid4())

        results = await asyncio.gather(attempt(), attempt(), return_exceptions=True)

        holds = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, NoCapacity)]
        self.assertEqual(len(holds), 1)
        self.assertEqual(len(refused), 1)
        self.assertEqual(await self.available(parking_id), 0)

    async def test_concurrent_reserve_and_release_stay_in_bounds(self):
        parking_id = await self.add_parking(total_spots=3)
        holds = []
        for _ in range(3):
            async with self.database.transaction() as session:
                holds.append(await InventoryLedger(session).reserve(parking_id, uuid4()))

        async def reserve():
            async with self.database.transaction() as session:
                return await InventoryLedger(session).reserve(parking_id, uuid4())

        async def release(hold_id):
            async with self.database.transaction() as session:
                return await InventoryLedger(session).release(hold_id)

        results = await asyncio.gather(
            *[release(h.id) for h in holds],
            *[release(h.id) for h in holds],
            *[reserve() for _ in range(5)],
            return_exceptions=True,
        )

        releases = results[:6]
        reserves = results[6:]
        self.assertEqual(sum(1 for r in releases if r is True), 3)
        granted = [r for r in reserves if not isinstance(r, Exception)]
        self.assertTrue(all(isinstance(r, NoCapacity) for r in reserves if isinstance(r, Exception)))
        self.assertLessEqual(len(granted), 3)

        available = await self.available(parking_id)
        self.assertEqual(available, 3 - len(granted))
        self.assertGreaterEqual(available, 0)


if __name__ == "__main__":
    unittest.main()
