"""
Notification / audit sink.

Every state transition in the settlement pipeline ends with ``sink.emit(...)``
once the transition is committed. Emitting writes an in-app notification,
hands a best-effort email to a worker thread when called from
the event loop, and fans the event out to any registered
subscriber (audit log, push, analytics). Nothing here may raise into the
caller: a failed notification never undoes a committed order change.
"""

import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from orderflow.models import Notification, User
from orderflow.utils.email import send_email

logger = logging.getLogger(__name__)


EVENT_TEMPLATES = {
    "order_created": (
        "Order received",
        "Your order #{short_id} of {amount} FCFA has been recorded and is awaiting payment.",
    ),
    "order_confirmed": (
        "Payment confirmed",
        "Your payment of {amount} FCFA was confirmed. Order #{short_id} is being prepared.",
    ),
    "payment_failed": (
        "Payment failed",
        "Your payment of {amount} FCFA for order #{short_id} did not go through. You can retry from your order page.",
    ),
    "delivery_assigned": (
        "Delivery on its way",
        "Order #{short_id} has been handed to a delivery agent.",
    ),
    "delivery_proof_recorded": (
        "Delivery update",
        "A {proof_type} proof was recorded for order #{short_id}.",
    ),
    "delivery_confirmed": (
        "Delivery confirmed",
        "Thanks for confirming receipt of order #{short_id}.",
    ),
    "reward_redeemed": (
        "Reward unlocked",
        "You redeemed {points} points. Your coupon code is {coupon_code}.",
    ),
    "commission_paid": (
        "Commission paid",
        "A commission of {amount} FCFA for order #{short_id} has been paid out.",
    ),
}

Subscriber = Callable[[str, dict], None]


class EventSink:
    def __init__(self, send_mail: bool = True):
        self.send_mail = send_mail
        self._subscribers: list[Subscriber] = []
        self._pending_mail: set[asyncio.Future] = set()

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def emit(self, db: Session, event: str, user_id=None, link: Optional[str] = None, **payload) -> None:
        logger.info("event=%s user=%s payload=%s", event, user_id, payload)

        for callback in self._subscribers:
            try:
                callback(event, dict(payload, user_id=user_id))
            except Exception:
                logger.exception("Event subscriber failed | event=%s", event)

        if user_id is None:
            return

        title, message = self._render(event, payload)
        try:
            db.add(Notification(
                user_id=user_id,
                type=event,
                title=title,
                message=message,
                link=link,
                data={k: str(v) for k, v in payload.items()},
            ))
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Could not store notification | event=%s user=%s", event, user_id)
            return

        if self.send_mail:
            user = db.get(User, user_id)
            if user and user.email:
                self._dispatch_mail(user.email, title, message)

    def _dispatch_mail(self, to_email: str, title: str, message: str) -> None:
        args = (to_email, title, f"<p>{message}</p>", message)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Sync route handlers already run in the threadpool.
            send_email(*args)
            return
        future = loop.run_in_executor(None, send_email, *args)
        self._pending_mail.add(future)
        future.add_done_callback(self._pending_mail.discard)

    async def drain(self) -> None:
        """Wait for mail handed to the executor from the event loop."""
        if self._pending_mail:
            await asyncio.gather(*list(self._pending_mail), return_exceptions=True)

    @staticmethod
    def _render(event: str, payload: dict) -> tuple[str, str]:
        title, template = EVENT_TEMPLATES.get(event, (event.replace("_", " ").capitalize(), event))
        values = dict(payload)
        order_id = values.get("order_id")
        values.setdefault("short_id", str(order_id)[:8] if order_id else "")
        amount = values.get("amount")
        if isinstance(amount, (int, float)):
            values["amount"] = f"{amount:,.0f}"
        try:
            return title, template.format(**values)
        except (KeyError, IndexError, ValueError):
            return title, template
