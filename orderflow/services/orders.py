"""
Order Store & state machine.

    pending   -> confirmed | cancelled
    confirmed -> shipped   | cancelled
    shipped   -> delivered | cancelled
    delivered, cancelled: terminal

Status changes are conditional UPDATEs keyed on (id, current status), so two
writers racing on the same order cannot both win.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from orderflow.errors import InvalidCoupon, InvalidTransition, NotFound, PermissionDenied, ValidationError
from orderflow.models import (
    Coupon,
    CouponRedemption,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    Product,
    TERMINAL_ORDER_STATUSES,
)
from orderflow.services.catalog import OrderLine, parse_uuid
from orderflow.services.discounts import NO_DISCOUNT, Discount, check_coupon, check_user_limit, compute_discount
from orderflow.utils.clock import utcnow

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    OrderStatus.pending: {OrderStatus.confirmed, OrderStatus.cancelled},
    OrderStatus.confirmed: {OrderStatus.shipped, OrderStatus.cancelled},
    OrderStatus.shipped: {OrderStatus.delivered, OrderStatus.cancelled},
    OrderStatus.delivered: set(),
    OrderStatus.cancelled: set(),
}


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


class OrderStore:
    def __init__(self, loyalty=None, sink=None):
        self.loyalty = loyalty
        self.sink = sink

    # =====================================================
    # LOOKUPS
    # =====================================================

    def get(self, db: Session, order_id) -> Order:
        order = db.get(Order, parse_uuid(order_id, "order id"))
        if not order:
            raise NotFound("Order not found")
        return order

    def get_for_user(self, db: Session, order_id, user_id) -> Order:
        order = self.get(db, order_id)
        if order.user_id != user_id:
            raise NotFound("Order not found")
        return order

    # =====================================================
    # CREATE
    # =====================================================

    def create_order(
        self,
        db: Session,
        user_id,
        lines: Iterable[OrderLine],
        discount: Discount = NO_DISCOUNT,
        shipping_address: Optional[dict] = None,
        phone: Optional[str] = None,
        payment_method: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Order:
        """
        Persist the order, its line snapshots and the coupon consumption as
        one unit. Either everything is committed or nothing is.
        """
        lines = list(lines)
        if not lines:
            raise ValidationError("Order must contain at least one item")
        for line in lines:
            if line.quantity is None or line.quantity <= 0:
                raise ValidationError(f"Quantity for '{line.product_title}' must be positive")
            if line.unit_price is None or line.unit_price < 0:
                raise ValidationError(f"Missing price snapshot for '{line.product_title}'")

        subtotal = round(sum(line.subtotal for line in lines), 2)
        now = utcnow()

        coupon = None
        discount_amount = 0.0
        if discount.coupon_id is not None:
            coupon = db.get(Coupon, discount.coupon_id)
            # Re-validated against the order's own subtotal, never a cached figure.
            check_coupon(coupon, subtotal, now)
            check_user_limit(db, coupon, user_id)
            discount_amount = compute_discount(coupon, subtotal)
        elif discount.amount:
            raise ValidationError("A discount must reference a coupon")

        if discount_amount < 0 or discount_amount > subtotal:
            raise ValidationError("Discount cannot exceed the order subtotal")

        try:
            order = Order(
                user_id=user_id,
                subtotal_amount=subtotal,
                discount_amount=discount_amount,
                total_amount=round(subtotal - discount_amount, 2),
                coupon_code=coupon.code if coupon else None,
                status=OrderStatus.pending,
                shipping_address=shipping_address,
                phone=phone,
                payment_method=payment_method,
                notes=notes,
            )
            db.add(order)
            db.flush()

            for line in lines:
                db.add(OrderItem(
                    order_id=order.id,
                    product_id=line.product_id,
                    vendor_id=line.vendor_id,
                    product_title=line.product_title,
                    quantity=line.quantity,
                    price=line.unit_price,
                    subtotal=line.subtotal,
                ))
                if line.product_id is not None:
                    self._reserve_stock(db, line)

            if coupon is not None:
                self._consume_coupon(db, coupon)
                db.add(CouponRedemption(
                    coupon_id=coupon.id,
                    user_id=user_id,
                    order_id=order.id,
                    discount_amount=discount_amount,
                ))

            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(order)
        logger.info(
            "Order created | order=%s user=%s subtotal=%s discount=%s total=%s coupon=%s",
            order.id, user_id, subtotal, discount_amount, order.total_amount, order.coupon_code,
        )
        if self.sink:
            self.sink.emit(db, "order_created", user_id=user_id, order_id=order.id, amount=order.total_amount)
        return order

    @staticmethod
    def _consume_coupon(db: Session, coupon: Coupon) -> None:
        result = db.execute(
            update(Coupon)
            .where(
                Coupon.id == coupon.id,
                (Coupon.max_uses.is_(None)) | (Coupon.used_count < Coupon.max_uses),
            )
            .values(used_count=Coupon.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidCoupon("Coupon usage limit reached")

    @staticmethod
    def _reserve_stock(db: Session, line: OrderLine) -> None:
        result = db.execute(
            update(Product)
            .where(Product.id == line.product_id, Product.stock >= line.quantity)
            .values(stock=Product.stock - line.quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ValidationError(f"Not enough stock for '{line.product_title}'")

    @staticmethod
    def _release_stock(db: Session, order: Order) -> None:
        for item in order.items:
            if item.product_id is None:
                continue
            db.execute(
                update(Product)
                .where(Product.id == item.product_id)
                .values(stock=Product.stock + item.quantity)
                .execution_options(synchronize_session=False)
            )

    # =====================================================
    # STATE MACHINE
    # =====================================================

    def _compare_and_set(self, db: Session, order: Order, expected: OrderStatus, **values) -> bool:
        values.setdefault("updated_at", utcnow())
        result = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def transition(self, db: Session, order_id, new_status, actor=None) -> Order:
        try:
            new_status = OrderStatus(new_status)
        except ValueError:
            raise ValidationError(f"Invalid status: '{new_status}'")

        order = self.get(db, order_id)
        current = order.status

        if current in TERMINAL_ORDER_STATUSES:
            logger.warning(
                "Rejected transition on terminal order | order=%s %s->%s actor=%s",
                order.id, current.value, new_status.value, actor,
            )
            raise InvalidTransition(f"Order is already {current.value}")
        if not can_transition(current, new_status):
            logger.warning(
                "Rejected transition | order=%s %s->%s actor=%s",
                order.id, current.value, new_status.value, actor,
            )
            raise InvalidTransition(f"Cannot move order from {current.value} to {new_status.value}")
        if new_status == OrderStatus.delivered and order.delivery_delivered_at is None:
            logger.warning("Rejected delivered without proof | order=%s actor=%s", order.id, actor)
            raise InvalidTransition("Order cannot be delivered before proof of delivery is recorded")

        try:
            if not self._compare_and_set(db, order, current, status=new_status):
                raise InvalidTransition("Order was modified concurrently, reload and retry")

            if new_status == OrderStatus.cancelled:
                self._release_stock(db, order)
                self._cancel_open_payments(db, order)
            elif new_status == OrderStatus.delivered:
                db.refresh(order)
                self.on_delivered(db, order)

            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(order)
        logger.info("Order transition | order=%s %s->%s actor=%s", order.id, current.value, new_status.value, actor)
        return order

    def cancel_by_customer(self, db: Session, order_id, user_id) -> Order:
        order = self.get_for_user(db, order_id, user_id)
        if order.status != OrderStatus.pending:
            raise InvalidTransition(
                f"Cannot cancel an order in status '{order.status.value}'. Only pending orders can be cancelled."
            )
        return self.transition(db, order.id, OrderStatus.cancelled, actor=user_id)

    @staticmethod
    def _cancel_open_payments(db: Session, order: Order) -> None:
        db.execute(
            update(Payment)
            .where(
                Payment.order_id == order.id,
                Payment.status.in_([PaymentStatus.pending, PaymentStatus.processing]),
            )
            .values(status=PaymentStatus.cancelled, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    def confirm_paid(self, db: Session, order: Order, payment_reference: Optional[str]) -> bool:
        """pending -> confirmed inside the caller's settlement transaction. No commit."""
        return self._compare_and_set(
            db, order, OrderStatus.pending,
            status=OrderStatus.confirmed,
            payment_reference=payment_reference,
        )

    def on_delivered(self, db: Session, order: Order) -> int:
        """Delivered hook. Safe to call repeatedly: accrual is keyed on the order."""
        if self.loyalty is None:
            return 0
        return self.loyalty.accrue_for_order(db, order)

    # =====================================================
    # CUSTOMER CONFIRMATION
    # =====================================================

    def confirm_delivery(self, db: Session, order_id, user_id) -> Order:
        order = self.get_for_user(db, order_id, user_id)

        if order.customer_confirmed_at is not None:
            # Duplicate client retry: nothing to do.
            return order
        if order.status == OrderStatus.cancelled:
            raise InvalidTransition("Order was cancelled")
        if order.delivery_delivered_at is None:
            raise InvalidTransition("Order has not been delivered yet")

        now = utcnow()
        try:
            result = db.execute(
                update(Order)
                .where(
                    Order.id == order.id,
                    Order.customer_confirmed_at.is_(None),
                    Order.delivery_delivered_at.isnot(None),
                    Order.status.in_([OrderStatus.shipped, OrderStatus.delivered]),
                )
                .values(customer_confirmed_at=now, status=OrderStatus.delivered, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                db.refresh(order)
                if order.customer_confirmed_at is not None:
                    return order
                raise InvalidTransition(f"Cannot confirm delivery of a {order.status.value} order")

            db.refresh(order)
            self.on_delivered(db, order)
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(order)
        logger.info("Delivery confirmed by customer | order=%s user=%s", order.id, user_id)
        if self.sink:
            self.sink.emit(db, "delivery_confirmed", user_id=order.user_id, order_id=order.id)
        return order
