import os
import tempfile
import threading
import unittest

from orderflow.models import Coupon, CouponRedemption, LoyaltyAccount, LoyaltyReward, Order
from orderflow.services import discounts
from orderflow.services.catalog import snapshot_lines

from helpers import make_coupon, make_file_session_factory, make_product, make_services, make_user


def run_together(workers):
    """Start every worker at the same barrier and collect what each returned or raised."""
    barrier = threading.Barrier(len(workers))
    results = [None] * len(workers)

    def target(index, work):
        barrier.wait()
        try:
            results[index] = ("ok", work())
        except Exception as e:
            results[index] = ("error", e)

    threads = [threading.Thread(target=target, args=(i, w)) for i, w in enumerate(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return results


class FileDatabaseTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.SessionLocal = make_file_session_factory(os.path.join(self.tmp.name, "orderflow.db"))
        self.services = make_services(self.SessionLocal)
        self.db = self.SessionLocal()

    def tearDown(self):
        self.db.close()
        self.SessionLocal.kw["bind"].dispose()
        self.tmp.cleanup()


class TestConcurrentCheckouts(FileDatabaseTestCase):
    def test_single_use_coupon_across_parallel_checkouts(self):
        coupon_id = make_coupon(self.db, code="ONCE", discount_amount=1000, max_uses=1).id
        product_id = make_product(self.db, price=5000, stock=20).id
        user_ids = [make_user(self.db).id for _ in range(4)]

        def checkout(user_id):
            db = self.SessionLocal()
            lines = snapshot_lines(db, [(product_id, 1)])
            discount = discounts.resolve(db, 5000, user_id, "ONCE")

            def work():
                try:
                    return self.services.orders.create_order(db, user_id, lines, discount=discount).id
                finally:
                    db.close()
            return work

        results = run_together([checkout(uid) for uid in user_ids])

        winners = [value for kind, value in results if kind == "ok"]
        self.assertEqual(len(winners), 1, results)
        self.db.expire_all()
        self.assertEqual(self.db.get(Coupon, coupon_id).used_count, 1)
        self.assertEqual(self.db.query(CouponRedemption).count(), 1)
        self.assertEqual(self.db.query(Order).count(), 1)


class TestConcurrentRedemptions(FileDatabaseTestCase):
    def test_one_balance_pays_for_one_reward(self):
        user_id = make_user(self.db).id
        self.db.add(LoyaltyAccount(user_id=user_id, points_earned=300, points_spent=0))
        self.db.commit()

        def redeem():
            db = self.SessionLocal()
            try:
                return self.services.loyalty.redeem(db, user_id, "fixed_2500").id
            finally:
                db.close()

        results = run_together([redeem, redeem, redeem])

        winners = [value for kind, value in results if kind == "ok"]
        self.assertEqual(len(winners), 1, results)
        self.db.expire_all()
        account = self.db.query(LoyaltyAccount).filter(LoyaltyAccount.user_id == user_id).one()
        self.assertEqual(account.points_spent, 300)
        self.assertEqual(account.available_points, 0)
        self.assertEqual(self.db.query(LoyaltyReward).count(), 1)


if __name__ == "__main__":
    unittest.main()
