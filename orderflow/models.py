import uuid
import enum
from sqlalchemy import (
    Column,
    String,
    Text,
    Integer,
    Float,
    Boolean,
    DateTime,
    JSON,
    Enum,
    ForeignKey,
    Index,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from orderflow.database import Base


# =========================
# ENUMS
# =========================

class OrderStatus(str, enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class PaymentMethod(str, enum.Enum):
    kkiapay = "kkiapay"
    mobile_money = "mobile_money"
    card = "card"


class CommissionStatus(str, enum.Enum):
    pending = "pending"
    paid = "paid"


class ProofType(str, enum.Enum):
    pickup = "pickup"
    delivered = "delivered"


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.delivered, OrderStatus.cancelled})
TERMINAL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.completed,
    PaymentStatus.failed,
    PaymentStatus.cancelled,
})


# =========================
# USER
# =========================

class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    email = Column(String, nullable=False, unique=True, index=True)
    full_name = Column(String)
    phone = Column(String)

    # user / admin / delivery / vendor
    role = Column(String, default="user", nullable=False)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    orders = relationship(
        "Order",
        back_populates="user",
        foreign_keys="Order.user_id",
    )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# =========================
# VENDOR
# =========================

class Vendor(Base):
    __tablename__ = "vendors"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    business_name = Column(String, nullable=False, unique=True)
    commission_rate = Column(Float, nullable=False, default=0.10)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    products = relationship("Product", back_populates="vendor")


# =========================
# PRODUCT
# =========================

class Product(Base):
    __tablename__ = "products"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    title = Column(String, nullable=False)
    price = Column(Float, nullable=False)
    stock = Column(Integer, default=0)

    vendor_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("vendors.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    status = Column(String, default="active", nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    vendor = relationship("Vendor", back_populates="products")


# =========================
# CART
# =========================

class Cart(Base):
    __tablename__ = "carts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    items = relationship("CartItem", back_populates="cart", cascade="all, delete-orphan")


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    cart_id = Column(Uuid(as_uuid=True), ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Uuid(as_uuid=True), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    cart = relationship("Cart", back_populates="items")
    product = relationship("Product")


# =========================
# ORDER
# =========================

class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    subtotal_amount = Column(Float, nullable=False)
    discount_amount = Column(Float, nullable=False, default=0)
    total_amount = Column(Float, nullable=False)  # subtotal - discount
    coupon_code = Column(String)

    status = Column(
        Enum(OrderStatus, name="order_status"),
        default=OrderStatus.pending,
        nullable=False,
    )

    shipping_address = Column(JSON)
    phone = Column(String)
    payment_method = Column(String)
    payment_reference = Column(String)  # provider transaction id once settled
    notes = Column(Text)

    delivery_user_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    delivery_notes = Column(Text)
    delivery_received_at = Column(DateTime(timezone=True))
    delivery_delivered_at = Column(DateTime(timezone=True))
    customer_confirmed_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="orders", foreign_keys=[user_id])
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
    )
    payments = relationship(
        "Payment",
        back_populates="order",
        order_by="Payment.created_at",
    )
    proofs = relationship(
        "DeliveryProof",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="DeliveryProof.timestamp",
    )


Index("idx_orders_status", Order.status)


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Uuid(as_uuid=True), ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    vendor_id = Column(Uuid(as_uuid=True), ForeignKey("vendors.id", ondelete="SET NULL"), nullable=True)

    # Snapshots taken at order time, never recomputed from the live product
    product_title = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)
    subtotal = Column(Float, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="items")


# =========================
# PAYMENT
# =========================

class Payment(Base):
    __tablename__ = "payments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    order_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)

    amount = Column(Float, nullable=False)
    payment_method = Column(
        Enum(PaymentMethod, name="payment_method"),
        nullable=False,
        default=PaymentMethod.kkiapay,
    )
    phone_number = Column(String)

    status = Column(
        Enum(PaymentStatus, name="payment_status"),
        default=PaymentStatus.pending,
        nullable=False,
    )

    provider_payment_id = Column(String, index=True)   # returned by initiate
    transaction_id = Column(String, index=True)        # confirmed by the provider
    payment_metadata = Column("metadata", JSON)
    # Provider reported a completion that could not be applied; kept out of sweeps.
    needs_review = Column(Boolean, default=False, nullable=False)

    completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    order = relationship("Order", back_populates="payments")
    history = relationship(
        "PaymentStatusHistory",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="PaymentStatusHistory.created_at",
    )


class PaymentStatusHistory(Base):
    __tablename__ = "payment_status_history"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    payment_id = Column(Uuid(as_uuid=True), ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    old_status = Column(String)
    new_status = Column(String, nullable=False)
    source = Column(String)   # poll / webhook / check / initiate
    reason = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    payment = relationship("Payment", back_populates="history")


# =========================
# COUPONS
# =========================

class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code = Column(String, nullable=False, unique=True, index=True)
    description = Column(Text)

    # exactly one of these is set
    discount_amount = Column(Float)
    discount_percent = Column(Float)   # 10 means 10%

    min_order_amount = Column(Float, default=0)
    max_uses = Column(Integer)
    used_count = Column(Integer, default=0, nullable=False)
    max_uses_per_user = Column(Integer, default=1)    # None: unlimited per customer

    valid_from = Column(DateTime(timezone=True))
    valid_until = Column(DateTime(timezone=True))
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())


class CouponRedemption(Base):
    __tablename__ = "coupon_redemptions"
    __table_args__ = (
        UniqueConstraint("coupon_id", "order_id", name="uq_coupon_redemptions_coupon_order"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    coupon_id = Column(Uuid(as_uuid=True), ForeignKey("coupons.id", ondelete="RESTRICT"), nullable=False, index=True)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True)
    discount_amount = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    coupon = relationship("Coupon")


# =========================
# LOYALTY
# =========================

class LoyaltyAccount(Base):
    """Running point totals per user. available = earned - spent."""
    __tablename__ = "loyalty_accounts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    points_earned = Column(Integer, default=0, nullable=False)
    points_spent = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @property
    def available_points(self) -> int:
        return (self.points_earned or 0) - (self.points_spent or 0)


class LoyaltyAccrual(Base):
    """Accrual marker: one row per delivered order that has credited points."""
    __tablename__ = "loyalty_accruals"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, unique=True)
    order_total = Column(Float, nullable=False)
    points = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class LoyaltyReward(Base):
    __tablename__ = "loyalty_rewards"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    reward_type = Column(String, nullable=False)
    points_spent = Column(Integer, nullable=False)
    coupon_code = Column(String, unique=True, index=True)
    is_used = Column(Boolean, default=False, nullable=False)
    used_at = Column(DateTime(timezone=True))
    used_order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    expires_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# =========================
# COMMISSIONS
# =========================

class Commission(Base):
    __tablename__ = "commissions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    order_item_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("order_items.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    vendor_id = Column(Uuid(as_uuid=True), ForeignKey("vendors.id", ondelete="RESTRICT"), nullable=False, index=True)
    sale_amount = Column(Float, nullable=False)
    commission_rate = Column(Float, nullable=False)
    commission_amount = Column(Float, nullable=False)
    status = Column(
        Enum(CommissionStatus, name="commission_status"),
        default=CommissionStatus.pending,
        nullable=False,
    )
    paid_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())


# =========================
# DELIVERY PROOFS
# =========================

class DeliveryProof(Base):
    __tablename__ = "delivery_proofs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    delivery_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    proof_type = Column(Enum(ProofType, name="proof_type"), nullable=False)

    recipient_name = Column(String)
    recipient_photo_url = Column(String)
    recipient_id_photo_url = Column(String)
    signature_url = Column(String)
    location_lat = Column(Float)
    location_lng = Column(Float)
    location_address = Column(String)
    notes = Column(Text)

    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    order = relationship("Order", back_populates="proofs")


# =========================
# NOTIFICATIONS
# =========================

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String, nullable=False)  # event name, e.g. order_confirmed
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    link = Column(String)
    data = Column(JSON)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


Index("idx_notifications_is_read", Notification.is_read)
