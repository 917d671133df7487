import hashlib
import hmac
import json
import unittest

from fastapi.testclient import TestClient

from orderflow.database import get_db
from orderflow.main import app
from orderflow.models import Order, OrderStatus, User
from orderflow.security import create_token
from orderflow.services.container import get_services

from helpers import (
    FakeGateway,
    fill_cart,
    make_coupon,
    make_product,
    make_services,
    make_session_factory,
    make_user,
    make_vendor,
)


def auth(user):
    return {"Authorization": f"Bearer {create_token(user.id, user.role)}"}


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        self.SessionLocal = make_session_factory()
        self.db = self.SessionLocal()
        self.gateway = FakeGateway(statuses=["pending", "completed"])
        self.services = make_services(self.SessionLocal, gateway=self.gateway)

        def override_get_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_services] = lambda: self.services
        self.client = TestClient(app)

        self.user = make_user(self.db)
        self.admin = make_user(self.db, role="admin")
        self.agent = make_user(self.db, role="delivery")
        self.vendor = make_vendor(self.db, commission_rate=0.1)
        self.product = make_product(self.db, price=5000, stock=20, vendor=self.vendor)

    def tearDown(self):
        app.dependency_overrides.clear()
        self.db.close()

    def _checkout(self, code=None):
        fill_cart(self.db, self.user, [(self.product, 2)])
        body = {"shipping_address": {"city": "Cotonou"}, "phone": "+22990000001"}
        if code:
            body["coupon_code"] = code
        response = self.client.post("/api/orders", json=body, headers=auth(self.user))
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def _pay(self, order_id):
        response = self.client.post(f"/api/payments/orders/{order_id}", json={}, headers=auth(self.user))
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()["payment_id"]


class TestAuthAndHealth(ApiTestCase):
    def test_health(self):
        self.assertEqual(self.client.get("/health").json()["status"], "healthy")

    def test_requires_token(self):
        self.assertEqual(self.client.get("/api/orders/my").status_code, 401)
        bad = {"Authorization": "Bearer not-a-jwt"}
        self.assertEqual(self.client.get("/api/orders/my", headers=bad).status_code, 401)

    def test_cookie_token(self):
        self.client.cookies.set("access_token", create_token(self.user.id, "user"))
        self.assertEqual(self.client.get("/api/orders/my").status_code, 200)

    def test_admin_only(self):
        self._checkout()
        order_id = self.db.query(Order).one().id
        response = self.client.post(f"/api/orders/admin/{order_id}/status", json={"status": "confirmed"}, headers=auth(self.user))
        self.assertEqual(response.status_code, 403)


class TestCheckoutAndSettlement(ApiTestCase):
    def test_checkout_pay_and_wait(self):
        make_coupon(self.db, code="PROMO10", discount_percent=10, min_order_amount=5000, max_uses=100)
        preview = self.client.post("/api/coupons/preview", json={"order_total": 10000, "code": "promo10"}, headers=auth(self.user))
        self.assertEqual(preview.json()["discount"], 1000)

        order = self._checkout(code="PROMO10")
        self.assertEqual(order["total_amount"], 9000)
        self.assertEqual(order["discount_source"], "coupon")

        payment_id = self._pay(order["order_id"])
        waited = self.client.post(f"/api/payments/{payment_id}/wait", json={}, headers=auth(self.user))
        self.assertEqual(waited.status_code, 200, waited.text)
        self.assertEqual(waited.json()["state"], "completed")

        detail = self.client.get(f"/api/orders/{order['order_id']}", headers=auth(self.user)).json()
        self.assertEqual(detail["status"], "confirmed")
        self.assertEqual(detail["payments"][0]["status"], "completed")

    def test_wait_timeout_is_202(self):
        self.gateway.statuses = ["pending"]
        order = self._checkout()
        payment_id = self._pay(order["order_id"])

        waited = self.client.post(f"/api/payments/{payment_id}/wait", json={"timeout_seconds": 0.05}, headers=auth(self.user))
        self.assertEqual(waited.status_code, 202)
        self.assertEqual(waited.json()["state"], "pending_confirmation")
        self.assertEqual(self.client.get(f"/api/payments/{payment_id}", headers=auth(self.user)).json()["status"], "processing")

    def test_wait_rejects_non_positive_timeout(self):
        order = self._checkout()
        payment_id = self._pay(order["order_id"])
        waited = self.client.post(f"/api/payments/{payment_id}/wait", json={"timeout_seconds": 0}, headers=auth(self.user))
        self.assertEqual(waited.status_code, 400)

    def test_manual_check(self):
        self.gateway.statuses = ["completed"]
        order = self._checkout()
        payment_id = self._pay(order["order_id"])
        checked = self.client.post(f"/api/payments/{payment_id}/check", headers=auth(self.user))
        self.assertEqual(checked.json()["order_status"], "confirmed")

    def test_other_users_cannot_read_payment(self):
        order = self._checkout()
        payment_id = self._pay(order["order_id"])
        stranger = make_user(self.db)
        self.assertEqual(self.client.get(f"/api/payments/{payment_id}", headers=auth(stranger)).status_code, 404)

    def test_invalid_phone(self):
        order = self._checkout()
        response = self.client.post(f"/api/payments/orders/{order['order_id']}", json={"phone": "abc"}, headers=auth(self.user))
        self.assertEqual(response.status_code, 400)

    def test_cancel_pending_order(self):
        order = self._checkout()
        response = self.client.post(f"/api/orders/my/{order['order_id']}/cancel", headers=auth(self.user))
        self.assertEqual(response.json()["status"], "cancelled")
        again = self.client.post(f"/api/orders/my/{order['order_id']}/cancel", headers=auth(self.user))
        self.assertEqual(again.status_code, 409)


class TestWebhook(ApiTestCase):
    def _payload(self, payment_id):
        return json.dumps({
            "event": "transaction.success",
            "data": {"transactionId": "kkp_1", "status": "SUCCESS", "custom_data": {"paymentId": payment_id}},
        }).encode()

    def test_signed_webhook_settles(self):
        self.services.webhook_secret = "sec"
        order = self._checkout()
        payment_id = self._pay(order["order_id"])
        body = self._payload(payment_id)

        rejected = self.client.post("/api/payments/webhook/kkiapay", content=body, headers={"x-kkiapay-signature": "nope"})
        self.assertEqual(rejected.status_code, 401)

        signature = hmac.new(b"sec", body, hashlib.sha256).hexdigest()
        accepted = self.client.post("/api/payments/webhook/kkiapay", content=body, headers={"x-kkiapay-signature": signature})
        self.assertEqual(accepted.status_code, 200)
        self.assertTrue(accepted.json()["matched"])
        self.assertEqual(accepted.json()["order_status"], "confirmed")

        # Provider retries are harmless.
        replay = self.client.post("/api/payments/webhook/kkiapay", content=body, headers={"x-kkiapay-signature": signature})
        self.assertFalse(replay.json()["settled_now"])

    def test_unknown_payment_is_acknowledged(self):
        body = json.dumps({"data": {"transactionId": "ghost", "status": "SUCCESS"}}).encode()
        response = self.client.post("/api/payments/webhook/kkiapay", content=body)
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["matched"])

    def test_malformed_body(self):
        response = self.client.post("/api/payments/webhook/kkiapay", content=b"not json")
        self.assertEqual(response.status_code, 400)


class TestDeliveryLoyaltyCommissions(ApiTestCase):
    def _confirmed_order_id(self):
        self.gateway.statuses = ["completed"]
        order = self._checkout()
        payment_id = self._pay(order["order_id"])
        self.client.post(f"/api/payments/{payment_id}/check", headers=auth(self.user))
        return order["order_id"]

    def test_full_delivery_flow(self):
        order_id = self._confirmed_order_id()

        assigned = self.client.post(
            f"/api/delivery/admin/{order_id}/assign",
            json={"delivery_user_id": str(self.agent.id)},
            headers=auth(self.admin),
        )
        self.assertEqual(assigned.json()["status"], "shipped")
        self.assertEqual(len(self.client.get("/api/delivery/my", headers=auth(self.agent)).json()), 1)

        early = self.client.post(f"/api/orders/{order_id}/confirm-delivery", headers=auth(self.user))
        self.assertEqual(early.status_code, 409)

        proof = self.client.post(
            f"/api/delivery/{order_id}/proofs",
            json={"proof_type": "delivered", "recipient_name": "Kossi", "location_lat": 6.37, "location_lng": 2.39},
            headers=auth(self.agent),
        )
        self.assertEqual(proof.status_code, 201, proof.text)

        first = self.client.post(f"/api/orders/{order_id}/confirm-delivery", headers=auth(self.user)).json()
        second = self.client.post(f"/api/orders/{order_id}/confirm-delivery", headers=auth(self.user)).json()
        self.assertEqual(first["status"], "delivered")
        self.assertEqual(first["customer_confirmed_at"], second["customer_confirmed_at"])

        balance = self.client.get("/api/loyalty", headers=auth(self.user)).json()
        self.assertEqual(balance["available_points"], 10)

    def test_only_agents_record_proofs(self):
        order_id = self._confirmed_order_id()
        response = self.client.post(f"/api/delivery/{order_id}/proofs", json={"proof_type": "pickup"}, headers=auth(self.user))
        self.assertEqual(response.status_code, 403)

    def test_redeem_without_points(self):
        response = self.client.post("/api/loyalty/redeem", json={"reward_type": "free_shipping", "points_cost": 100}, headers=auth(self.user))
        self.assertEqual(response.status_code, 400)

    def test_reward_price_is_not_client_controlled(self):
        response = self.client.post("/api/loyalty/redeem", json={"reward_type": "fixed_2500", "points_cost": 1}, headers=auth(self.user))
        self.assertEqual(response.status_code, 400)
        catalogue = self.client.get("/api/loyalty", headers=auth(self.user)).json()["rewards"]
        self.assertIn({"reward_type": "fixed_2500", "description": "2,500 FCFA off your next order", "points_cost": 300}, catalogue)

    def test_vendor_commissions_and_payout(self):
        self._confirmed_order_id()
        vendor_user = self.db.get(User, self.vendor.user_id)

        mine = self.client.get("/api/commissions/my", headers=auth(vendor_user)).json()
        self.assertEqual(len(mine["items"]), 1)
        self.assertEqual(mine["total_pending"], 1000)

        commission_id = mine["items"][0]["id"]
        paid = self.client.post(f"/api/commissions/admin/{commission_id}/pay", headers=auth(self.admin))
        self.assertEqual(paid.json()["status"], "paid")
        again = self.client.post(f"/api/commissions/admin/{commission_id}/pay", headers=auth(self.admin))
        self.assertEqual(again.status_code, 409)

    def test_admin_cannot_skip_states(self):
        self._checkout()
        order_id = self.db.query(Order).filter(Order.status == OrderStatus.pending).one().id
        response = self.client.post(f"/api/orders/admin/{order_id}/status", json={"status": "delivered"}, headers=auth(self.admin))
        self.assertEqual(response.status_code, 409)


if __name__ == "__main__":
    unittest.main()
