import unittest
from datetime import datetime, timedelta
from uuid import uuid4

from httpx import ASGITransport, AsyncClient

from parkhub.services.booking_service.app import create_app
from parkhub.shared.config import Settings

from tests.helpers import WEBHOOK_SECRET, DatabaseTestCase, FakeGateway, intent_object, provider_event, sign


class TestBookingApi(DatabaseTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.parking_id = await self.add_parking(total_spots=1, name="Louvre Garage", amenities=["ev_charging"])
        self.gateway = FakeGateway()
        settings = Settings(
            service_name="booking-service",
            database_url_override=self.database_url,
            stripe_webhook_secret=WEBHOOK_SECRET,
        )
        app = create_app(settings, database=self.database, gateway=self.gateway, run_background_tasks=False)
        self.client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")

    async def asyncTearDown(self):
        await self.client.aclose()
        await super().asyncTearDown()

    def booking_body(self, **overrides):
        start = datetime.utcnow() + timedelta(hours=1)
        body = {
            "parking_id": self.parking_id,
            "start_time": start.isoformat(),
            "end_time": (start + timedelta(hours=2)).isoformat(),
            "total_amount": "5.00",
        }
        body.update(overrides)
        return body

    async def create(self, user_id="user-1", **overrides):
        return await self.client.post(
            "/reservations", json=self.booking_body(**overrides), headers={"X-User-Id": user_id}
        )

    async def test_health(self):
        response = await self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")

    async def test_create_reservation(self):
        response = await self.create()

        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertEqual(data["reservation"]["status"], "pending")
        self.assertEqual(data["reservation"]["payment_intent_id"], "pi_1")
        self.assertEqual(data["client_secret"], "pi_1_secret_abc")
        self.assertEqual(await self.available(self.parking_id), 0)

    async def test_create_normalizes_timezones(self):
        response = await self.create(
            start_time="2031-01-01T10:00:00+02:00",
            end_time="2031-01-01T12:00:00+02:00",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["reservation"]["start_time"], "2031-01-01T08:00:00")

    async def test_create_requires_user(self):
        response = await self.client.post("/reservations", json=self.booking_body())
        self.assertEqual(response.status_code, 422)

    async def test_create_rejects_bad_window(self):
        start = datetime.utcnow() + timedelta(hours=1)
        response = await self.create(end_time=start.isoformat(), start_time=(start + timedelta(hours=1)).isoformat())
        self.assertEqual(response.status_code, 422)
        self.assertEqual(await self.available(self.parking_id), 1)

    async def test_no_capacity_is_conflict(self):
        await self.create()
        response = await self.create(user_id="user-2")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"], "no_capacity")

    async def test_unknown_parking_is_not_found(self):
        response = await self.create(parking_id=424242)
        self.assertEqual(response.status_code, 404)

    async def test_gateway_failure_is_bad_gateway(self):
        self.gateway.fail_create = True
        response = await self.create()

        self.assertEqual(response.status_code, 502)
        self.assertEqual(await self.available(self.parking_id), 1)

    async def test_get_and_list_are_scoped_to_owner(self):
        reservation_id = (await self.create()).json()["reservation"]["id"]

        own = await self.client.get(f"/reservations/{reservation_id}", headers={"X-User-Id": "user-1"})
        other = await self.client.get(f"/reservations/{reservation_id}", headers={"X-User-Id": "user-2"})
        listed = await self.client.get("/reservations", headers={"X-User-Id": "user-1"})

        self.assertEqual(own.status_code, 200)
        self.assertEqual(other.status_code, 404)
        self.assertEqual([r["id"] for r in listed.json()], [reservation_id])

    async def test_cancel_twice(self):
        reservation_id = (await self.create()).json()["reservation"]["id"]
        headers = {"X-User-Id": "user-1"}

        first = await self.client.post(f"/reservations/{reservation_id}/cancel", headers=headers)
        second = await self.client.post(f"/reservations/{reservation_id}/cancel", headers=headers)

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.json()["status"], "cancelled")
        self.assertEqual(await self.available(self.parking_id), 1)

    async def test_extend_pending_is_conflict(self):
        created = (await self.create()).json()["reservation"]
        new_end = datetime.fromisoformat(created["end_time"]) + timedelta(hours=1)

        response = await self.client.post(
            f"/reservations/{created['id']}/extend",
            json={"new_end_time": new_end.isoformat()},
            headers={"X-User-Id": "user-1"},
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["current_status"], "pending")

    async def test_webhook_confirms_then_extend(self):
        created = (await self.create()).json()["reservation"]
        payload = provider_event("payment_intent.succeeded", intent_object("pi_1", created["id"], amount=500))

        response = await self.client.post(
            "/webhooks/stripe", content=payload, headers={"Stripe-Signature": sign(payload)}
        )
        replay = await self.client.post(
            "/webhooks/stripe", content=payload, headers={"Stripe-Signature": sign(payload)}
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "processed")
        self.assertTrue(response.json()["received"])
        self.assertEqual(replay.json()["status"], "duplicate")

        new_end = datetime.fromisoformat(created["end_time"]) + timedelta(hours=1)
        extended = await self.client.post(
            f"/reservations/{created['id']}/extend",
            json={"new_end_time": new_end.isoformat()},
            headers={"X-User-Id": "user-1"},
        )
        self.assertEqual(extended.status_code, 200)
        self.assertEqual(extended.json()["status"], "confirmed")
        self.assertEqual(extended.json()["duration_hours"], 3)

    async def test_webhook_bad_signature(self):
        payload = provider_event("payment_intent.succeeded", intent_object("pi_1", uuid4()))

        response = await self.client.post(
            "/webhooks/stripe", content=payload, headers={"Stripe-Signature": sign(payload, secret="nope")}
        )
        missing = await self.client.post("/webhooks/stripe", content=payload)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "invalid_signature")
        self.assertEqual(missing.status_code, 400)

    async def test_parking_search_endpoints(self):
        nearby = await self.client.get("/parkings/nearby", params={"latitude": 48.857, "longitude": 2.352})
        search = await self.client.get("/parkings/search", params={"q": "louvre", "amenities": ["ev_charging"]})
        detail = await self.client.get(f"/parkings/{self.parking_id}")
        missing = await self.client.get("/parkings/999")

        self.assertEqual(nearby.status_code, 200)
        self.assertEqual(nearby.json()["count"], 1)
        self.assertIsNotNone(nearby.json()["data"][0]["distance_m"])
        self.assertEqual(search.json()["total"], 1)
        self.assertEqual(detail.json()["name"], "Louvre Garage")
        self.assertEqual(missing.status_code, 404)


    async def test_payments_endpoints(self):
        created = (await self.create(contact_phone="+33611111111")).json()["reservation"]
        self.assertEqual(created["contact_phone"], "+33611111111")
        headers = {"X-User-Id": "user-1"}

        pending = await self.client.get("/payments/pi_1", headers=headers)
        self.assertEqual(pending.status_code, 200)
        self.assertEqual(pending.json()["status"], "pending")
        self.assertEqual((await self.client.get("/payments", headers=headers)).json(), [])

        payload = provider_event("payment_intent.succeeded", intent_object("pi_1", created["id"], amount=500))
        await self.client.post("/webhooks/stripe", content=payload, headers={"Stripe-Signature": sign(payload)})

        listed = await self.client.get("/payments", headers=headers)
        paid = await self.client.get("/payments/pi_1", headers=headers)
        foreign = await self.client.get("/payments/pi_1", headers={"X-User-Id": "user-2"})

        self.assertEqual(len(listed.json()), 1)
        self.assertEqual(listed.json()[0]["provider_intent_id"], "pi_1")
        self.assertEqual(listed.json()[0]["amount"], 5.0)
        self.assertEqual(paid.json()["status"], "succeeded")
        self.assertEqual(foreign.status_code, 404)

    async def test_malformed_webhook_object_is_bad_request(self):
        created = (await self.create()).json()["reservation"]
        obj = intent_object("pi_1", created["id"])
        obj["currency"] = ["eur"]
        payload = provider_event("payment_intent.succeeded", obj)

        response = await self.client.post(
            "/webhooks/stripe", content=payload, headers={"Stripe-Signature": sign(payload)}
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "invalid_payload")

    async def test_review_endpoints(self):
        url = f"/parkings/{self.parking_id}/reviews"

        created = await self.client.post(url, json={"rating": 4, "comment": "Close to the museum"},
                                         headers={"X-User-Id": "user-1"})
        again = await self.client.post(url, json={"rating": 1}, headers={"X-User-Id": "user-1"})
        out_of_range = await self.client.post(url, json={"rating": 7}, headers={"X-User-Id": "user-2"})
        unknown = await self.client.post("/parkings/999/reviews", json={"rating": 3}, headers={"X-User-Id": "user-2"})
        listed = await self.client.get(url)
        detail = await self.client.get(f"/parkings/{self.parking_id}")

        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["rating"], 4)
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["error"], "already_exists")
        self.assertEqual(out_of_range.status_code, 422)
        self.assertEqual(unknown.status_code, 404)
        self.assertEqual(listed.json()["total"], 1)
        self.assertEqual(listed.json()["data"][0]["comment"], "Close to the museum")
        self.assertEqual(detail.json()["rating"], 4.0)
        self.assertEqual(detail.json()["total_ratings"], 1)


if __name__ == "__main__":
    unittest.main()
