"""Wires the settlement services together. Routes depend on ``get_services``."""

from dataclasses import dataclass
from typing import Optional

from orderflow.config import settings
from orderflow.database import SessionLocal
from orderflow.services.cart import CartService
from orderflow.services.commissions import CommissionLedger
from orderflow.services.delivery import DeliveryWorkflow
from orderflow.services.gateway import KkiaPayGateway, PaymentGateway
from orderflow.services.loyalty import LoyaltyLedger
from orderflow.services.notifications import EventSink
from orderflow.services.orders import OrderStore
from orderflow.services.reconciler import SettlementReconciler


@dataclass
class Services:
    sink: EventSink
    cart: CartService
    loyalty: LoyaltyLedger
    orders: OrderStore
    delivery: DeliveryWorkflow
    commissions: CommissionLedger
    gateway: PaymentGateway
    reconciler: SettlementReconciler
    webhook_secret: Optional[str] = None


def build_services(
    session_factory=SessionLocal,
    gateway: Optional[PaymentGateway] = None,
    sink: Optional[EventSink] = None,
    webhook_secret: Optional[str] = settings.kkiapay_secret,
    **reconciler_options,
) -> Services:
    sink = sink or EventSink()
    gateway = gateway or KkiaPayGateway()
    cart = CartService()
    loyalty = LoyaltyLedger(sink=sink)
    orders = OrderStore(loyalty=loyalty, sink=sink)
    commissions = CommissionLedger(sink=sink)
    reconciler = SettlementReconciler(
        session_factory,
        orders=orders,
        gateway=gateway,
        cart=cart,
        loyalty=loyalty,
        commissions=commissions,
        sink=sink,
        **reconciler_options,
    )
    return Services(
        sink=sink,
        cart=cart,
        loyalty=loyalty,
        orders=orders,
        delivery=DeliveryWorkflow(orders, sink=sink),
        commissions=commissions,
        gateway=gateway,
        reconciler=reconciler,
        webhook_secret=webhook_secret,
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(
            poll_interval=settings.payment_poll_interval,
            timeout=settings.payment_poll_timeout,
        )
    return _services
