import datetime as dt
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from group_service.auth import create_access_token
from group_service.cache import ResponseCache
from group_service.main import app
from group_service.performance import PerformanceMonitor

from factories import ADDRESS, reset_group_db


def auth(user_id, is_admin=False):
    token = create_access_token({"sub": user_id, "is_admin": is_admin})
    return {"Authorization": f"Bearer {token}"}


class GroupApiTestCase(unittest.TestCase):
    def setUp(self):
        reset_group_db()
        app.state.cache = ResponseCache()
        app.state.monitor = PerformanceMonitor()
        self.client = TestClient(app)
        self.publish = patch("group_service.messaging.publish_event").start()
        self.addCleanup(patch.stopall)

        self.seller = auth("seller-1")
        resp = self.client.post(
            "/products",
            json={
                "name": "Sunflower Oil 1L",
                "original_price": "10.00",
                "minimum_participants": 2,
                "maximum_participants": 3,
                "discount_tiers": [
                    {"participant_count": 2, "final_price": "8.00"},
                    {"participant_count": 3, "final_price": "7.00"},
                ],
            },
            headers=self.seller,
        )
        self.assertEqual(resp.status_code, 201, resp.text)
        self.product = resp.json()

        end_time = (dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=1)).isoformat()
        resp = self.client.post(
            "/group-purchases",
            json={"product_id": self.product["id"], "end_time": end_time},
            headers=self.seller,
        )
        self.assertEqual(resp.status_code, 201, resp.text)
        self.group = resp.json()

    def add_address(self, user_id):
        resp = self.client.post("/addresses", json=ADDRESS, headers=auth(user_id))
        self.assertEqual(resp.status_code, 201, resp.text)

    def published_keys(self):
        return [c.args[0] for c in self.publish.call_args_list]


class TestProducts(GroupApiTestCase):
    def test_product_carries_ordered_tiers(self):
        resp = self.client.get(f"/products/{self.product['id']}/discount-tiers")
        self.assertEqual([t["participant_count"] for t in resp.json()], [2, 3])

    def test_only_seller_replaces_tiers(self):
        body = {"discount_tiers": [{"participant_count": 2, "final_price": "9.00"}]}
        resp = self.client.put(f"/products/{self.product['id']}/discount-tiers", json=body, headers=auth("intruder"))
        self.assertEqual(resp.status_code, 403)

        resp = self.client.put(f"/products/{self.product['id']}/discount-tiers", json=body, headers=self.seller)
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(len(resp.json()["discount_tiers"]), 1)

    def test_invalid_tiers_are_rejected(self):
        body = {"discount_tiers": [{"participant_count": 2, "final_price": "50.00"}]}
        resp = self.client.put(f"/products/{self.product['id']}/discount-tiers", json=body, headers=self.seller)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["detail"]["error"], "invalid_discount_tiers")

    def test_unknown_product(self):
        resp = self.client.get("/products/999")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["detail"]["error"], "product_not_found")


class TestGroupPurchases(GroupApiTestCase):
    def test_new_group_shows_first_tier_as_display_price(self):
        progress = self.group["progress"]
        self.assertEqual(progress["display_price"], "8.00")
        self.assertEqual(progress["current_price"], "10.00")
        self.assertEqual(progress["status"], "active")
        self.assertFalse(progress["is_complete"])

    def test_etag_tracks_version(self):
        resp = self.client.get(f"/group-purchases/{self.group['id']}")
        self.assertEqual(resp.headers["ETag"], f'W/"gp-{self.group["id"]}-{self.group["version"]}"')

        resp = self.client.get(
            f"/group-purchases/{self.group['id']}",
            headers={"If-None-Match": resp.headers["ETag"]},
        )
        self.assertEqual(resp.status_code, 304)

    def test_second_read_is_served_from_cache(self):
        first = self.client.get(f"/group-purchases/{self.group['id']}")
        second = self.client.get(f"/group-purchases/{self.group['id']}")
        self.assertEqual(first.headers["X-Cache-Status"], "MISS")
        self.assertEqual(second.headers["X-Cache-Status"], "HIT")

    def test_cached_group_expires_with_its_end_time(self):
        now = [0.0]
        app.state.cache = ResponseCache(default_ttl=120.0, clock=lambda: now[0])
        end_time = (dt.datetime.now(dt.timezone.utc) + dt.timedelta(seconds=30)).isoformat()
        resp = self.client.post(
            "/group-purchases",
            json={"product_id": self.product["id"], "end_time": end_time},
            headers=self.seller,
        )
        short = resp.json()

        for path in (f"/group-purchases/{short['id']}", "/group-purchases"):
            self.assertEqual(self.client.get(path).headers["X-Cache-Status"], "MISS")
            self.assertEqual(self.client.get(path).headers["X-Cache-Status"], "HIT")

        # Past the group's end_time but well inside the default TTL
        now[0] = 31.0
        for path in (f"/group-purchases/{short['id']}", "/group-purchases"):
            self.assertEqual(self.client.get(path).headers["X-Cache-Status"], "MISS")

    def test_join_is_visible_on_next_read(self):
        self.add_address("buyer-1")
        self.client.get(f"/group-purchases/{self.group['id']}")

        resp = self.client.post(f"/group-purchases/{self.group['id']}/join", json={"quantity": 2}, headers=auth("buyer-1"))
        self.assertEqual(resp.status_code, 200, resp.text)
        joined = resp.json()
        self.assertEqual(joined["participation"]["quantity"], 2)
        self.assertEqual(joined["group_purchase"]["current_participants"], 1)

        resp = self.client.get(f"/group-purchases/{self.group['id']}")
        self.assertEqual(resp.headers["X-Cache-Status"], "MISS")
        self.assertEqual(resp.json()["version"], joined["group_purchase"]["version"])
        self.assertEqual(resp.json()["current_participants"], 1)
        self.assertIn("group.joined", self.published_keys())

    def test_join_without_body_defaults_to_one(self):
        self.add_address("buyer-1")
        resp = self.client.post(f"/group-purchases/{self.group['id']}/join", headers=auth("buyer-1"))
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["participation"]["quantity"], 1)

    def test_reaching_target_and_capacity_publish_events(self):
        for user in ("b1", "b2", "b3"):
            self.add_address(user)
            resp = self.client.post(f"/group-purchases/{self.group['id']}/join", headers=auth(user))
            self.assertEqual(resp.status_code, 200, resp.text)

        keys = self.published_keys()
        self.assertEqual(keys.count("group.joined"), 3)
        self.assertEqual(keys.count("group.target_reached"), 1)
        self.assertEqual(keys.count("group.full"), 1)

        reached = next(c.args[1] for c in self.publish.call_args_list if c.args[0] == "group.target_reached")
        self.assertEqual(sorted(reached["participant_ids"]), ["b1", "b2"])
        self.assertEqual(reached["seller_id"], "seller-1")

        self.add_address("b4")
        resp = self.client.post(f"/group-purchases/{self.group['id']}/join", headers=auth("b4"))
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["detail"]["error"], "group_full")

    def test_profile_incomplete_points_to_addresses(self):
        resp = self.client.post(f"/group-purchases/{self.group['id']}/join", headers=auth("nobody"))
        self.assertEqual(resp.status_code, 400)
        detail = resp.json()["detail"]
        self.assertEqual(detail["error"], "profile_incomplete")
        self.assertEqual(detail["remediation"], "/addresses")

    def test_leave_without_join(self):
        resp = self.client.delete(f"/group-purchases/{self.group['id']}/leave", headers=auth("buyer-1"))
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["detail"]["error"], "not_participating")

    def test_join_then_leave(self):
        self.add_address("buyer-1")
        self.client.post(f"/group-purchases/{self.group['id']}/join", headers=auth("buyer-1"))
        resp = self.client.delete(f"/group-purchases/{self.group['id']}/leave", headers=auth("buyer-1"))
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["current_participants"], 0)

        resp = self.client.get(f"/group-purchases/{self.group['id']}/participation", headers=auth("buyer-1"))
        self.assertFalse(resp.json()["is_participating"])
        self.assertIn("group.left", self.published_keys())

    def test_my_group_purchases(self):
        self.add_address("buyer-1")
        self.client.post(f"/group-purchases/{self.group['id']}/join", headers=auth("buyer-1"))
        resp = self.client.get("/group-purchases/me", headers=auth("buyer-1"))
        self.assertEqual(resp.json()["group_purchase_ids"], [self.group["id"]])

    def test_close_by_seller_only(self):
        resp = self.client.post(f"/group-purchases/{self.group['id']}/close", headers=auth("buyer-1"))
        self.assertEqual(resp.status_code, 403)

        resp = self.client.post(f"/group-purchases/{self.group['id']}/close", headers=self.seller)
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["status"], "ended")
        self.assertIn("group.ended", self.published_keys())

        resp = self.client.get("/group-purchases")
        self.assertEqual(resp.json()["total"], 0)

    def test_broker_outage_does_not_fail_join(self):
        self.publish.side_effect = OSError("connection refused")
        self.add_address("buyer-1")
        resp = self.client.post(f"/group-purchases/{self.group['id']}/join", headers=auth("buyer-1"))
        self.assertEqual(resp.status_code, 200, resp.text)

    def test_database_failure_on_join_is_a_500(self):
        self.add_address("buyer-1")
        failure = OperationalError("UPDATE group_purchases", {}, Exception("database is locked"))
        with patch("group_service.routers.group_purchase_router.join_group_purchase", side_effect=failure):
            with self.assertLogs("group_service.routers.group_purchase_router", level="ERROR"):
                resp = self.client.post(f"/group-purchases/{self.group['id']}/join", headers=auth("buyer-1"))
        self.assertEqual(resp.status_code, 500)
        self.assertTrue(resp.json()["detail"].startswith("Failed to join group purchase"))
        self.publish.assert_not_called()

    def test_unknown_group(self):
        resp = self.client.get("/group-purchases/999")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["detail"]["error"], "group_purchase_not_found")


class TestServiceEndpoints(GroupApiTestCase):
    def test_health(self):
        self.assertEqual(self.client.get("/health").json()["status"], "healthy")

    def test_performance_metrics_require_admin(self):
        self.assertEqual(self.client.get("/metrics/performance", headers=auth("buyer-1")).status_code, 403)

        self.client.get(f"/group-purchases/{self.group['id']}")
        self.client.get(f"/group-purchases/{self.group['id']}")
        resp = self.client.get("/metrics/performance", headers=auth("admin", is_admin=True))
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertGreater(body["stats"]["requests_last_5_min"], 0)
        self.assertGreater(body["stats"]["cache_hit_rate"], 0)
        self.assertEqual(body["cache"]["hits"], 1)


if __name__ == "__main__":
    unittest.main()
