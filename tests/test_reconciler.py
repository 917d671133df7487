import asyncio
import time
import unittest
from unittest import mock

from orderflow.errors import InvalidCoupon, InvalidTransition, PaymentTimeout, ProviderError, ValidationError
from orderflow.models import (
    Cart,
    CartItem,
    Commission,
    Coupon,
    LoyaltyReward,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    PaymentStatusHistory,
)
from orderflow.services import discounts
from orderflow.services.catalog import snapshot_lines
from orderflow.services.gateway import PayerInfo, ProviderStatus

from helpers import (
    FakeGateway,
    cart_size,
    fill_cart,
    make_coupon,
    make_product,
    make_services,
    make_session_factory,
    make_user,
    make_vendor,
)

PAYER = PayerInfo(name="Ama", email="ama@example.com", phone="+229 90 00 00 01")


class ReconcilerTestCase(unittest.IsolatedAsyncioTestCase):
    statuses = ("pending",)

    def setUp(self):
        self.SessionLocal = make_session_factory()
        self.db = self.SessionLocal()
        self.gateway = FakeGateway(statuses=list(self.statuses))
        self.services = make_services(self.SessionLocal, gateway=self.gateway)
        self.reconciler = self.services.reconciler
        self.user = make_user(self.db)
        self.vendor = make_vendor(self.db, commission_rate=0.15)
        self.product = make_product(self.db, price=5000, stock=10, vendor=self.vendor)
        fill_cart(self.db, self.user, [(self.product, 2)])

    def tearDown(self):
        self.db.close()

    def _order(self, code=None):
        lines = snapshot_lines(self.db, self.services.cart.get_items(self.db, self.user.id))
        subtotal = sum(line.subtotal for line in lines)
        discount = discounts.resolve(self.db, subtotal, self.user.id, code)
        return self.services.orders.create_order(self.db, self.user.id, lines, discount=discount, phone=self.user.phone)

    def _completed(self, payment):
        return ProviderStatus(status=PaymentStatus.completed, transaction_id=f"tx_{payment.provider_payment_id}")

    def _reload(self, obj):
        self.db.expire_all()
        return self.db.get(type(obj), obj.id)


class TestBegin(ReconcilerTestCase):
    async def test_creates_processing_payment(self):
        order = self._order()
        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)

        self.assertEqual(payment.status, PaymentStatus.processing)
        self.assertEqual(payment.provider_payment_id, "kkp_1")
        self.assertEqual(payment.amount, order.total_amount)
        self.assertEqual(payment.phone_number, "+22990000001")
        self.assertEqual(self.gateway.initiated[0]["metadata"]["paymentId"], str(payment.id))
        history = self.db.query(PaymentStatusHistory).filter(PaymentStatusHistory.payment_id == payment.id).all()
        self.assertEqual([h.new_status for h in history], ["pending", "processing"])

    async def test_invalid_phone_is_rejected_before_persistence(self):
        order = self._order()
        with self.assertRaises(ValidationError):
            await self.reconciler.begin(self.db, order.id, self.user.id, PayerInfo(phone="12"))
        self.assertEqual(self.db.query(Payment).count(), 0)
        self.assertEqual(self.gateway.initiated, [])

    async def test_provider_retry_then_success(self):
        self.gateway.initiate_failures = 1
        order = self._order()
        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        self.assertEqual(payment.status, PaymentStatus.processing)

    async def test_provider_exhausted_fails_payment_not_order(self):
        self.gateway.initiate_failures = 5
        order = self._order()
        with self.assertRaises(ProviderError):
            await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)

        payment = self.db.query(Payment).one()
        self.assertEqual(self._reload(payment).status, PaymentStatus.failed)
        self.assertEqual(self._reload(order).status, OrderStatus.pending)

    async def test_paid_order_cannot_be_paid_again(self):
        order = self._order()
        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        self.reconciler.apply_status(self.db, payment.id, self._completed(payment), "test")
        with self.assertRaises(InvalidTransition):
            await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)


class TestPollSettlement(ReconcilerTestCase):
    statuses = ("pending", "pending", "completed")

    async def test_scenario_promo10_settles(self):
        coupon = make_coupon(self.db, code="PROMO10", discount_percent=10, min_order_amount=5000, max_uses=100)
        order = self._order(code="PROMO10")
        self.assertEqual(order.total_amount, 9000)

        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        outcome = await self.reconciler.poll(payment.id)

        self.assertEqual(outcome.state, "completed")
        self.assertTrue(outcome.settled_now)
        self.assertEqual(outcome.order_status, OrderStatus.confirmed)
        order = self._reload(order)
        payment = self._reload(payment)
        self.assertEqual(order.status, OrderStatus.confirmed)
        self.assertEqual(order.payment_reference, "tx_kkp_1")
        self.assertEqual(payment.status, PaymentStatus.completed)
        self.assertIsNotNone(payment.completed_at)
        self.assertEqual(self._reload(coupon).used_count, 1)
        self.assertEqual(cart_size(self.db, self.user), 0)
        self.assertEqual(self.gateway.queries, 3)

    async def test_commissions_snapshot_vendor_rate(self):
        order = self._order()
        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        await self.reconciler.poll(payment.id)

        rows = self.db.query(Commission).filter(Commission.order_id == order.id).all()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].sale_amount, 10000)
        self.assertEqual(rows[0].commission_rate, 0.15)
        self.assertEqual(rows[0].commission_amount, 1500)

        self.vendor.commission_rate = 0.30
        self.db.commit()
        self.assertEqual(self._reload(rows[0]).commission_amount, 1500)

    async def test_terminal_handler_is_idempotent(self):
        order = self._order()
        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        first = await self.reconciler.poll(payment.id)

        # The customer keeps shopping, then a late webhook races the poll.
        cart = self.db.query(Cart).filter(Cart.user_id == self.user.id).one()
        self.db.add(CartItem(cart_id=cart.id, product_id=self.product.id, quantity=1))
        self.db.commit()
        second = self.reconciler.apply_status(self.db, payment.id, self._completed(payment), "webhook")

        self.assertTrue(first.settled_now)
        self.assertFalse(second.settled_now)
        self.assertEqual(second.state, "completed")
        self.assertEqual(cart_size(self.db, self.user), 1)
        self.assertEqual(self.services.sink.names().count("order_confirmed"), 1)
        self.assertEqual(self.db.query(Commission).count(), 1)
        completed = self.db.query(PaymentStatusHistory).filter(PaymentStatusHistory.new_status == "completed").count()
        self.assertEqual(completed, 1)

    async def test_loyalty_coupon_consumed_only_on_settlement(self):
        account = self.services.loyalty.get_or_create_account(self.db, self.user.id)
        account.points_earned = 300
        self.db.commit()
        reward = self.services.loyalty.redeem(self.db, self.user.id, "fixed_2500")

        order = self._order()
        self.assertEqual(order.coupon_code, reward.coupon_code)
        self.assertEqual(order.discount_amount, 2500)
        self.assertFalse(self._reload(reward).is_used)

        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        await self.reconciler.poll(payment.id)

        reward = self._reload(reward)
        self.assertTrue(reward.is_used)
        self.assertEqual(reward.used_order_id, order.id)
        coupon = self.db.query(Coupon).filter(Coupon.code == reward.coupon_code).one()
        self.assertEqual(coupon.used_count, 1)


class TestPollFailure(ReconcilerTestCase):
    statuses = ("pending", "failed")

    async def test_failed_payment_leaves_order_pending(self):
        order = self._order()
        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        outcome = await self.reconciler.poll(payment.id)

        self.assertEqual(outcome.state, "failed")
        self.assertEqual(self._reload(order).status, OrderStatus.pending)
        self.assertEqual(self._reload(payment).status, PaymentStatus.failed)
        self.assertEqual(cart_size(self.db, self.user), 1)
        self.assertIn("payment_failed", self.services.sink.names())

    async def test_user_can_retry_after_failure(self):
        order = self._order()
        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        await self.reconciler.poll(payment.id)

        retry = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        self.assertNotEqual(retry.id, payment.id)
        outcome = self.reconciler.apply_status(self.db, retry.id, self._completed(retry), "webhook")
        self.assertEqual(outcome.order_status, OrderStatus.confirmed)

    async def test_failed_is_terminal(self):
        order = self._order()
        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        await self.reconciler.poll(payment.id)

        outcome = self.reconciler.apply_status(
            self.db, payment.id, ProviderStatus(status=PaymentStatus.cancelled), "webhook",
        )
        self.assertEqual(outcome.payment_status, PaymentStatus.failed)


class TestTimeoutAndOutOfBand(ReconcilerTestCase):
    statuses = ("pending",)

    async def test_scenario_late_confirmation_settles_out_of_band(self):
        order = self._order()
        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)

        with self.assertRaises(PaymentTimeout):
            await self.reconciler.poll(payment.id, timeout=0.05)
        self.assertEqual(self._reload(payment).status, PaymentStatus.processing)
        self.assertEqual(self._reload(order).status, OrderStatus.pending)
        self.assertEqual(cart_size(self.db, self.user), 1)

        # The payer approves on their phone after the client gave up.
        self.gateway.statuses = ["completed"]
        outcomes = await self.reconciler.reconcile_open_payments(min_age_seconds=0)

        self.assertEqual(len(outcomes), 1)
        self.assertEqual(outcomes[0].state, "completed")
        self.assertEqual(self._reload(order).status, OrderStatus.confirmed)
        self.assertEqual(cart_size(self.db, self.user), 0)

    async def test_provider_outage_during_poll_surfaces_as_timeout(self):
        order = self._order()
        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        self.gateway.status_failures = 10

        with self.assertRaises(PaymentTimeout):
            await self.reconciler.poll(payment.id)
        self.assertEqual(self._reload(payment).status, PaymentStatus.processing)

    async def test_transient_provider_error_is_retried(self):
        order = self._order()
        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        self.gateway.status_failures = 1
        self.gateway.statuses = ["completed"]

        outcome = await self.reconciler.poll(payment.id)
        self.assertEqual(outcome.state, "completed")

    async def test_cancel_token_stops_background_poll(self):
        order = self._order()
        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)

        task = self.reconciler.track(payment.id)
        self.assertIs(self.reconciler.track(payment.id), task)
        await asyncio.sleep(0.02)
        self.assertTrue(self.reconciler.cancel(payment.id))

        outcome = await task
        self.assertEqual(outcome.state, "pending_confirmation")
        self.assertFalse(self.reconciler.is_tracking(payment.id))
        self.assertEqual(self._reload(payment).status, PaymentStatus.processing)

    async def test_background_polls_are_independent(self):
        other_user = make_user(self.db)
        fill_cart(self.db, other_user, [(self.product, 1)])
        first_order = self._order()
        first = await self.reconciler.begin(self.db, first_order.id, self.user.id, PAYER)

        lines = snapshot_lines(self.db, [(self.product.id, 1)])
        second_order = self.services.orders.create_order(self.db, other_user.id, lines)
        second = await self.reconciler.begin(self.db, second_order.id, other_user.id, PAYER)

        tasks = [self.reconciler.track(first.id), self.reconciler.track(second.id)]
        self.reconciler.cancel(first.id)
        self.gateway.by_id[second.provider_payment_id] = "completed"
        results = await asyncio.gather(*tasks)

        self.assertEqual(results[0].state, "pending_confirmation")
        self.assertEqual(results[1].state, "completed")
        await self.reconciler.shutdown()

    async def test_caller_timeout_cannot_exceed_configured_bound(self):
        order = self._order()
        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)

        loop = asyncio.get_running_loop()
        started = loop.time()
        with self.assertRaises(PaymentTimeout):
            await self.reconciler.poll(payment.id, timeout=5)
        self.assertLess(loop.time() - started, 1.0)

        with self.assertRaises(ValidationError):
            await self.reconciler.poll(payment.id, timeout=0)

    async def test_flagged_payment_is_left_out_of_sweeps(self):
        order = self._order()
        first = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        second = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)

        self.reconciler.apply_status(self.db, first.id, self._completed(first), "webhook")
        outcome = self.reconciler.apply_status(self.db, second.id, self._completed(second), "webhook")
        self.assertEqual(outcome.state, "needs_review")
        self.assertEqual(self._reload(second).status, PaymentStatus.processing)
        self.assertTrue(self._reload(second).needs_review)

        self.gateway.statuses = ["completed"]
        queries = self.gateway.queries
        self.assertEqual(await self.reconciler.reconcile_open_payments(min_age_seconds=0), [])
        self.assertEqual(self.gateway.queries, queries)

    async def test_completion_for_cancelled_order_needs_review(self):
        order = self._order()
        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        self.services.orders.cancel_by_customer(self.db, order.id, self.user.id)

        outcome = self.reconciler.apply_status(self.db, payment.id, self._completed(payment), "webhook")
        again = self.reconciler.apply_status(self.db, payment.id, self._completed(payment), "webhook")

        self.assertEqual(outcome.state, "needs_review")
        self.assertEqual(again.state, "needs_review")
        self.assertEqual(self._reload(order).status, OrderStatus.cancelled)
        payment = self._reload(payment)
        self.assertEqual(payment.status, PaymentStatus.cancelled)
        self.assertTrue(payment.payment_metadata["needs_review"])
        flagged = self.db.query(PaymentStatusHistory).filter(PaymentStatusHistory.source == "webhook").count()
        self.assertEqual(flagged, 1)


class TestSlowMail(ReconcilerTestCase):
    statuses = ("pending", "completed")

    async def test_mail_latency_does_not_stall_the_loop(self):
        sent = []

        def slow_send(to_email, subject, html_content, text_content=None):
            time.sleep(0.3)
            sent.append(subject)
            return True

        loop = asyncio.get_running_loop()
        gaps = []
        stop = asyncio.Event()

        async def ticker():
            last = loop.time()
            while not stop.is_set():
                await asyncio.sleep(0.01)
                now = loop.time()
                gaps.append(now - last)
                last = now

        order = self._order()
        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        self.services.sink.send_mail = True

        with mock.patch("orderflow.services.notifications.send_email", slow_send):
            tick = asyncio.create_task(ticker())
            outcome = await self.reconciler.poll(payment.id)
            await asyncio.sleep(0.05)
            stop.set()
            await tick
            await self.services.sink.drain()

        self.assertEqual(outcome.state, "completed")
        self.assertLess(max(gaps), 0.2)
        self.assertEqual(sent, ["Payment confirmed"])


class TestWebhookCorrelation(ReconcilerTestCase):
    def _payload(self, status="SUCCESS", **custom):
        return {"event": "transaction.success", "data": {"transactionId": "kkp_1", "status": status, "custom_data": custom}}

    async def test_by_payment_id(self):
        order = self._order()
        payment = await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        outcome = self.reconciler.apply_webhook(self.db, self._payload(paymentId=str(payment.id)))
        self.assertEqual(outcome.state, "completed")
        self.assertEqual(self._reload(payment).transaction_id, "kkp_1")

    async def test_by_transaction_id(self):
        order = self._order()
        await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        outcome = self.reconciler.apply_webhook(self.db, self._payload())
        self.assertEqual(outcome.order_status, OrderStatus.confirmed)

    async def test_by_order_id(self):
        order = self._order()
        await self.reconciler.begin(self.db, order.id, self.user.id, PAYER)
        payload = {"data": {"status": "FAILED", "custom_data": {"orderId": str(order.id)}}}
        outcome = self.reconciler.apply_webhook(self.db, payload)
        self.assertEqual(outcome.state, "failed")
        self.assertEqual(self.db.get(Order, order.id).status, OrderStatus.pending)

    async def test_unknown_payment(self):
        self.assertIsNone(self.reconciler.apply_webhook(self.db, {"data": {"transactionId": "nope", "status": "SUCCESS"}}))
        self.assertIsNone(self.reconciler.apply_webhook(self.db, {}))


class TestLoyaltyRewardRace(ReconcilerTestCase):
    async def test_single_use_reward_races_yield_one_order(self):
        account = self.services.loyalty.get_or_create_account(self.db, self.user.id)
        account.points_earned = 200
        self.db.commit()
        reward = self.services.loyalty.redeem(self.db, self.user.id, "discount_10")

        lines = snapshot_lines(self.db, [(self.product.id, 1)])
        resolved = [discounts.resolve(self.db, 5000, self.user.id) for _ in range(3)]
        self.assertTrue(all(d.reward_id == reward.id for d in resolved))

        created = 0
        for discount in resolved:
            try:
                self.services.orders.create_order(self.db, self.user.id, lines, discount=discount)
                created += 1
            except InvalidCoupon:
                pass
        self.assertEqual(created, 1)
        self.assertEqual(self.db.query(LoyaltyReward).filter(LoyaltyReward.is_used == True).count(), 0)


if __name__ == "__main__":
    unittest.main()
