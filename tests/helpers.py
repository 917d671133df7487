import uuid
from datetime import timedelta

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from orderflow.database import Base
from orderflow.errors import ProviderError
from orderflow.models import Cart, CartItem, Coupon, Product, User, Vendor
from orderflow.services.container import build_services
from orderflow.services.gateway import ProviderStatus, map_provider_status
from orderflow.services.notifications import EventSink
from orderflow.utils.clock import utcnow


def make_session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def make_file_session_factory(path):
    """One connection per session, so threads really contend on the database file."""
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 10},
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


class RecordingSink(EventSink):
    def __init__(self):
        super().__init__(send_mail=False)
        self.events = []
        self.subscribe(lambda event, payload: self.events.append((event, payload)))

    def names(self):
        return [name for name, _ in self.events]


class FakeGateway:
    """
    Scripted provider. ``statuses`` are returned in order by query_status,
    the last one repeating; ``*_failures`` make the next N calls raise.
    """

    def __init__(self, statuses=None, initiate_failures=0, status_failures=0):
        self.statuses = list(statuses or ["pending"])
        self.initiate_failures = initiate_failures
        self.status_failures = status_failures
        self.initiated = []
        self.queries = 0
        # provider id -> fixed status, overrides the script
        self.by_id = {}

    async def initiate(self, amount, reason, payer, metadata=None):
        if self.initiate_failures:
            self.initiate_failures -= 1
            raise ProviderError("provider down")
        provider_id = f"kkp_{len(self.initiated) + 1}"
        self.initiated.append({"amount": amount, "reason": reason, "payer": payer, "metadata": metadata, "id": provider_id})
        return provider_id

    async def query_status(self, provider_payment_id):
        self.queries += 1
        if self.status_failures:
            self.status_failures -= 1
            raise ProviderError("provider down")
        if provider_payment_id in self.by_id:
            status = self.by_id[provider_payment_id]
        else:
            status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return ProviderStatus(
            status=map_provider_status(status),
            transaction_id=f"tx_{provider_payment_id}",
        )


def make_services(session_factory, gateway=None, **options):
    options.setdefault("poll_interval", 0.01)
    options.setdefault("timeout", 0.2)
    options.setdefault("max_retries", 2)
    options.setdefault("backoff", 0)
    options.setdefault("background_polling", False)
    return build_services(
        session_factory,
        gateway=gateway or FakeGateway(),
        sink=RecordingSink(),
        webhook_secret=None,
        **options,
    )


# =====================================================
# SEED DATA
# =====================================================

def make_user(db, role="user", phone="+22990000001", email=None):
    user = User(
        email=email or f"{uuid.uuid4().hex[:10]}@example.com",
        full_name=f"Test {role}",
        phone=phone,
        role=role,
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_vendor(db, commission_rate=0.10):
    owner = make_user(db, role="vendor")
    vendor = Vendor(user_id=owner.id, business_name=f"Shop {uuid.uuid4().hex[:6]}", commission_rate=commission_rate)
    db.add(vendor)
    db.commit()
    db.refresh(vendor)
    return vendor


def make_product(db, price=5000.0, stock=10, vendor=None, title=None):
    product = Product(
        title=title or f"Product {uuid.uuid4().hex[:6]}",
        price=price,
        stock=stock,
        vendor_id=vendor.id if vendor else None,
        status="active",
        is_deleted=False,
    )
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


def make_coupon(db, code="PROMO10", discount_percent=None, discount_amount=None, min_order_amount=0,
                max_uses=None, used_count=0, valid_days=30, is_active=True, max_uses_per_user=1):
    now = utcnow()
    coupon = Coupon(
        code=code,
        discount_percent=discount_percent,
        discount_amount=discount_amount,
        min_order_amount=min_order_amount,
        max_uses=max_uses,
        max_uses_per_user=max_uses_per_user,
        used_count=used_count,
        valid_from=now - timedelta(days=1),
        valid_until=now + timedelta(days=valid_days),
        is_active=is_active,
    )
    db.add(coupon)
    db.commit()
    db.refresh(coupon)
    return coupon


def fill_cart(db, user, products_and_quantities):
    cart = Cart(user_id=user.id)
    db.add(cart)
    db.flush()
    for product, quantity in products_and_quantities:
        db.add(CartItem(cart_id=cart.id, product_id=product.id, quantity=quantity))
    db.commit()
    return cart


def cart_size(db, user):
    cart = db.query(Cart).filter(Cart.user_id == user.id).first()
    if cart is None:
        return 0
    return db.query(CartItem).filter(CartItem.cart_id == cart.id).count()
