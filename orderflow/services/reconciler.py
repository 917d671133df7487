"""
Settlement Reconciler.

Bridges the mobile-money provider and the Order Store:

1. ``begin`` records a pending Payment, opens the provider transaction and
   moves the Payment to ``processing``.
2. ``poll`` asks the provider at a fixed interval until a terminal status,
   the hard timeout, or the caller's cancel token. One asyncio task per
   payment (``track``); polls never share a loop.
3. ``apply_status`` is the single terminal-state handler used by polling,
   webhooks, manual checks and the sweeper. It is idempotent: only the
   caller whose conditional UPDATEs win performs the settlement side effects
   (cart clear, reward consumption, commissions).

A timeout never fails the order. The Payment stays ``processing`` and the
Order ``pending`` until some later out-of-band observation settles it.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, Optional
import uuid

from sqlalchemy import update
from sqlalchemy.orm import Session

from orderflow.config import settings
from orderflow.errors import (
    InvalidTransition,
    NotFound,
    PaymentTimeout,
    ProviderError,
    ValidationError,
)
from orderflow.models import (
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentStatusHistory,
    TERMINAL_PAYMENT_STATUSES,
)
from orderflow.services.catalog import parse_uuid
from orderflow.services.gateway import PayerInfo, ProviderStatus, map_provider_status
from orderflow.utils.clock import utcnow

logger = logging.getLogger(__name__)

PHONE_RE = re.compile(r"^\+?[0-9]{8,15}$")

PENDING_CONFIRMATION_MESSAGE = (
    "Payment not confirmed yet. If you approved it on your phone, "
    "check your order history in a few minutes."
)

OPEN_PAYMENT_STATUSES = (PaymentStatus.pending, PaymentStatus.processing)


@dataclass(frozen=True)
class SettlementOutcome:
    payment_id: uuid.UUID
    order_id: uuid.UUID
    payment_status: PaymentStatus
    order_status: OrderStatus
    state: str              # completed / failed / cancelled / pending_confirmation / needs_review
    settled_now: bool = False
    message: str = ""

    def as_dict(self) -> dict:
        return {
            "payment_id": str(self.payment_id),
            "order_id": str(self.order_id),
            "payment_status": self.payment_status.value,
            "order_status": self.order_status.value,
            "state": self.state,
            "settled_now": self.settled_now,
            "message": self.message,
        }


def normalize_phone(phone: Optional[str]) -> str:
    cleaned = re.sub(r"[\s\-().]", "", phone or "")
    if not PHONE_RE.match(cleaned):
        raise ValidationError("Invalid phone number")
    return cleaned


class SettlementReconciler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        orders,
        gateway,
        cart,
        loyalty,
        commissions,
        sink=None,
        poll_interval: float = settings.payment_poll_interval,
        timeout: float = settings.payment_poll_timeout,
        max_retries: int = settings.payment_provider_max_retries,
        backoff: float = settings.payment_provider_backoff,
        background_polling: bool = True,
    ):
        self.session_factory = session_factory
        self.orders = orders
        self.gateway = gateway
        self.cart = cart
        self.loyalty = loyalty
        self.commissions = commissions
        self.sink = sink
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff = backoff
        self.background_polling = background_polling
        self._tasks: dict[uuid.UUID, asyncio.Task] = {}
        self._tokens: dict[uuid.UUID, asyncio.Event] = {}

    # =====================================================
    # HELPERS
    # =====================================================

    @staticmethod
    def _record_history(db: Session, payment_id, old_status, new_status, source: str, reason: Optional[str] = None):
        db.add(PaymentStatusHistory(
            payment_id=payment_id,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
            source=source,
            reason=reason,
        ))

    @staticmethod
    def _state_for(payment: Payment) -> str:
        if payment.status == PaymentStatus.completed:
            return "completed"
        if payment.status == PaymentStatus.failed:
            return "failed"
        if payment.status == PaymentStatus.cancelled:
            return "cancelled"
        return "pending_confirmation"

    def _outcome(self, db: Session, payment: Payment, settled_now: bool = False,
                 state: Optional[str] = None, message: str = "") -> SettlementOutcome:
        db.refresh(payment)
        order = payment.order
        db.refresh(order)
        state = state or self._state_for(payment)
        if not message:
            message = {
                "completed": "Payment confirmed.",
                "failed": "Payment failed. You can retry from your order page.",
                "cancelled": "Payment was cancelled.",
                "pending_confirmation": PENDING_CONFIRMATION_MESSAGE,
            }.get(state, "")
        return SettlementOutcome(
            payment_id=payment.id,
            order_id=order.id,
            payment_status=payment.status,
            order_status=order.status,
            state=state,
            settled_now=settled_now,
            message=message,
        )

    def _get_payment(self, db: Session, payment_id) -> Payment:
        payment = db.get(Payment, parse_uuid(payment_id, "payment id"))
        if payment is None:
            raise NotFound("Payment not found")
        return payment

    async def _call_provider(self, fn: Callable[[], Awaitable], what: str):
        """Bounded retries with exponential backoff. Raises ProviderError when exhausted."""
        last_error = None
        for attempt in range(self.max_retries):
            try:
                return await fn()
            except ProviderError as e:
                last_error = e
                logger.warning("Provider %s failed (attempt %s/%s): %s", what, attempt + 1, self.max_retries, e)
                if attempt + 1 < self.max_retries:
                    await asyncio.sleep(self.backoff * (2 ** attempt))
        logger.error("Provider %s failed after %s attempts: %s", what, self.max_retries, last_error)
        raise ProviderError(f"Payment provider unavailable: {last_error.message if last_error else what}")

    # =====================================================
    # BEGIN
    # =====================================================

    async def begin(
        self,
        db: Session,
        order_id,
        user_id,
        payer: PayerInfo,
        payment_method: PaymentMethod = PaymentMethod.kkiapay,
    ) -> Payment:
        order = self.orders.get_for_user(db, order_id, user_id)
        phone = normalize_phone(payer.phone or order.phone)

        if order.status != OrderStatus.pending:
            raise InvalidTransition(f"Order is {order.status.value}, not awaiting payment")
        completed = (
            db.query(Payment.id)
            .filter(Payment.order_id == order.id, Payment.status == PaymentStatus.completed)
            .first()
        )
        if completed is not None:
            raise InvalidTransition("Order is already paid")

        payment = Payment(
            order_id=order.id,
            user_id=user_id,
            amount=order.total_amount,
            payment_method=payment_method,
            phone_number=phone,
            status=PaymentStatus.pending,
            payment_metadata={"customer_name": payer.name, "customer_email": payer.email},
        )
        db.add(payment)
        db.flush()
        self._record_history(db, payment.id, None, PaymentStatus.pending, "initiate")
        db.commit()
        db.refresh(payment)

        reason = f"Order #{str(order.id)[:8]}"
        metadata = {"orderId": str(order.id), "paymentId": str(payment.id), "userId": str(user_id)}
        try:
            provider_id = await self._call_provider(
                lambda: self.gateway.initiate(
                    order.total_amount,
                    reason,
                    PayerInfo(name=payer.name, email=payer.email, phone=phone),
                    metadata,
                ),
                "initiate",
            )
        except ProviderError as e:
            self._close_payment(db, payment, PaymentStatus.failed, "initiate", str(e.message))
            db.commit()
            raise

        result = db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.pending)
            .values(status=PaymentStatus.processing, provider_payment_id=provider_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            self._record_history(db, payment.id, PaymentStatus.pending, PaymentStatus.processing, "initiate")
        db.commit()
        db.refresh(payment)
        logger.info("Payment started | payment=%s order=%s provider_id=%s", payment.id, order.id, provider_id)
        return payment

    # =====================================================
    # TERMINAL-STATE HANDLER (idempotent)
    # =====================================================

    def apply_status(self, db: Session, payment_id, result: ProviderStatus, source: str) -> SettlementOutcome:
        payment = self._get_payment(db, payment_id)
        if result.status == PaymentStatus.completed:
            return self._settle(db, payment, result, source)
        if result.status in (PaymentStatus.failed, PaymentStatus.cancelled):
            return self._fail(db, payment, result, source)
        return self._outcome(db, payment)

    def _settle(self, db: Session, payment: Payment, result: ProviderStatus, source: str) -> SettlementOutcome:
        if payment.status == PaymentStatus.completed:
            return self._outcome(db, payment)
        if payment.status in TERMINAL_PAYMENT_STATUSES:
            return self._flag_for_review(db, payment, result, source, f"payment already {payment.status.value}")

        order = payment.order
        transaction_id = result.transaction_id or payment.provider_payment_id
        now = utcnow()
        try:
            won = db.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status.in_(OPEN_PAYMENT_STATUSES))
                .values(
                    status=PaymentStatus.completed,
                    transaction_id=transaction_id,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount == 1
            if not won:
                db.rollback()
                return self._outcome(db, payment)

            if not self.orders.confirm_paid(db, order, transaction_id):
                # Order is no longer pending: roll the payment back and flag it.
                db.rollback()
                db.refresh(order)
                return self._flag_for_review(db, payment, result, source, f"order is {order.status.value}")

            self._record_history(db, payment.id, payment.status, PaymentStatus.completed, source)
            db.refresh(order)
            self.cart.clear(db, order.user_id)
            self.loyalty.mark_reward_used(db, order.coupon_code, order.id)
            self.commissions.record_for_order(db, order)
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(
            "Order settled | order=%s payment=%s transaction=%s source=%s",
            order.id, payment.id, transaction_id, source,
        )
        if self.sink:
            self.sink.emit(db, "order_confirmed", user_id=order.user_id, order_id=order.id, amount=order.total_amount)
        return self._outcome(db, payment, settled_now=True)

    def _fail(self, db: Session, payment: Payment, result: ProviderStatus, source: str) -> SettlementOutcome:
        if payment.status in TERMINAL_PAYMENT_STATUSES:
            return self._outcome(db, payment)
        reason = result.raw.get("failureReason") if result.raw else None
        try:
            changed = self._close_payment(db, payment, result.status, source, reason)
            db.commit()
        except Exception:
            db.rollback()
            raise
        if changed:
            logger.info("Payment %s | payment=%s order=%s source=%s", result.status.value, payment.id, payment.order_id, source)
            if self.sink and result.status == PaymentStatus.failed:
                self.sink.emit(
                    db, "payment_failed",
                    user_id=payment.user_id, order_id=payment.order_id, amount=payment.amount,
                )
        return self._outcome(db, payment)

    def _close_payment(self, db: Session, payment: Payment, status: PaymentStatus, source: str,
                       reason: Optional[str] = None) -> bool:
        old_status = payment.status
        result = db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(OPEN_PAYMENT_STATUSES))
            .values(status=status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self._record_history(db, payment.id, old_status, status, source, reason)
        return True

    def _flag_for_review(self, db: Session, payment: Payment, result: ProviderStatus, source: str,
                         reason: str) -> SettlementOutcome:
        review_message = "Payment received for an order that is no longer awaiting payment. Support will follow up."
        if payment.needs_review:
            return self._outcome(db, payment, state="needs_review", message=review_message)

        logger.error(
            "Provider reports completion that cannot settle | payment=%s order=%s reason=%s transaction=%s",
            payment.id, payment.order_id, reason, result.transaction_id,
        )
        metadata = dict(payment.payment_metadata or {})
        metadata.update({
            "needs_review": True,
            "review_reason": reason,
            "provider_transaction_id": result.transaction_id,
        })
        payment.payment_metadata = metadata
        payment.needs_review = True
        self._record_history(db, payment.id, payment.status, PaymentStatus.completed, source,
                             f"not applied: {reason}")
        db.commit()
        return self._outcome(db, payment, state="needs_review", message=review_message)

    # =====================================================
    # PROVIDER OBSERVATIONS
    # =====================================================

    async def check_once(self, db: Session, payment_id, source: str = "check") -> SettlementOutcome:
        """One provider query, then apply. Used for manual checks and the sweeper."""
        payment = self._get_payment(db, payment_id)
        if payment.status in TERMINAL_PAYMENT_STATUSES or not payment.provider_payment_id:
            return self._outcome(db, payment)
        provider_id = payment.provider_payment_id
        result = await self._call_provider(lambda: self.gateway.query_status(provider_id), "status")
        return self.apply_status(db, payment.id, result, source)

    def apply_webhook(self, db: Session, payload: dict) -> Optional[SettlementOutcome]:
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        transaction_id = data.get("transactionId") or payload.get("transactionId")
        raw_status = data.get("status") or payload.get("status")
        custom = data.get("custom_data") or payload.get("custom_data") or {}
        if isinstance(custom, str):
            custom = {}

        payment = self._find_payment(db, custom.get("paymentId"), transaction_id, custom.get("orderId"))
        if payment is None:
            logger.warning("Webhook for unknown payment | transaction=%s custom=%s", transaction_id, custom)
            return None

        result = ProviderStatus(
            status=map_provider_status(raw_status),
            transaction_id=transaction_id,
            raw={"failureReason": data.get("failureReason"), "event": payload.get("event")},
        )
        return self.apply_status(db, payment.id, result, "webhook")

    @staticmethod
    def _find_payment(db: Session, payment_id, transaction_id, order_id) -> Optional[Payment]:
        if payment_id:
            try:
                payment = db.get(Payment, uuid.UUID(str(payment_id)))
            except ValueError:
                payment = None
            if payment is not None:
                return payment
        if transaction_id:
            payment = (
                db.query(Payment)
                .filter((Payment.transaction_id == transaction_id) | (Payment.provider_payment_id == transaction_id))
                .first()
            )
            if payment is not None:
                return payment
        if order_id:
            try:
                oid = uuid.UUID(str(order_id))
            except ValueError:
                return None
            return (
                db.query(Payment)
                .filter(Payment.order_id == oid)
                .order_by(Payment.created_at.desc())
                .first()
            )
        return None

    # =====================================================
    # POLLING
    # =====================================================

    async def poll(
        self,
        payment_id,
        cancel: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> SettlementOutcome:
        """
        Poll until terminal, timeout, or ``cancel`` is set.

        Raises PaymentTimeout when the bound elapses or the provider stays
        unreachable; the payment is left ``processing`` for out-of-band
        settlement. A cancelled poll returns the current, still-open outcome.
        A caller ``timeout`` can only shorten the configured bound.
        """
        payment_id = parse_uuid(payment_id, "payment id")
        if timeout is not None and timeout <= 0:
            raise ValidationError("Timeout must be positive")
        bound = self.timeout if timeout is None else min(timeout, self.timeout)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + bound

        while True:
            with self.session_factory() as db:
                payment = self._get_payment(db, payment_id)
                if payment.status in TERMINAL_PAYMENT_STATUSES or not payment.provider_payment_id:
                    return self._outcome(db, payment)
                provider_id = payment.provider_payment_id

            try:
                result = await self._call_provider(lambda: self.gateway.query_status(provider_id), "status")
            except ProviderError as e:
                raise PaymentTimeout(PENDING_CONFIRMATION_MESSAGE) from e

            if result.status in TERMINAL_PAYMENT_STATUSES:
                with self.session_factory() as db:
                    return self.apply_status(db, payment_id, result, "poll")

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.info("Payment poll timed out | payment=%s", payment_id)
                raise PaymentTimeout(PENDING_CONFIRMATION_MESSAGE)

            wait = min(self.poll_interval, remaining)
            if cancel is None:
                await asyncio.sleep(wait)
            else:
                try:
                    await asyncio.wait_for(cancel.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass
                if cancel.is_set():
                    logger.info("Payment poll cancelled by caller | payment=%s", payment_id)
                    with self.session_factory() as db:
                        return self._outcome(db, self._get_payment(db, payment_id))

    def track(self, payment_id) -> asyncio.Task:
        """Start (or return) the background poll task for one payment."""
        payment_id = parse_uuid(payment_id, "payment id")
        task = self._tasks.get(payment_id)
        if task is not None and not task.done():
            return task

        token = asyncio.Event()
        task = asyncio.get_running_loop().create_task(self.poll(payment_id, cancel=token))
        self._tasks[payment_id] = task
        self._tokens[payment_id] = token
        task.add_done_callback(lambda t, pid=payment_id: self._on_task_done(pid, t))
        return task

    def schedule(self, payment_id) -> Optional[asyncio.Task]:
        """Server-side reconciliation after ``begin``, independent of the client waiting."""
        if not self.background_polling:
            return None
        return self.track(payment_id)

    def _on_task_done(self, payment_id: uuid.UUID, task: asyncio.Task) -> None:
        self._tasks.pop(payment_id, None)
        self._tokens.pop(payment_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, PaymentTimeout):
            logger.info("Background poll ended without a terminal status | payment=%s", payment_id)
        elif exc is not None:
            logger.error("Background poll crashed | payment=%s", payment_id, exc_info=exc)

    def cancel(self, payment_id) -> bool:
        token = self._tokens.get(parse_uuid(payment_id, "payment id"))
        if token is None:
            return False
        token.set()
        return True

    def is_tracking(self, payment_id) -> bool:
        task = self._tasks.get(parse_uuid(payment_id, "payment id"))
        return task is not None and not task.done()

    async def shutdown(self) -> None:
        for token in list(self._tokens.values()):
            token.set()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # =====================================================
    # OUT-OF-BAND SWEEP
    # =====================================================

    async def reconcile_open_payments(self, min_age_seconds: float = 0, limit: int = 50) -> list[SettlementOutcome]:
        """Re-check processing payments no poller is watching, e.g. after a client gave up."""
        cutoff = utcnow() - timedelta(seconds=min_age_seconds)
        with self.session_factory() as db:
            ids = [
                row.id
                for row in db.query(Payment.id)
                .filter(
                    Payment.status == PaymentStatus.processing,
                    Payment.provider_payment_id.isnot(None),
                    Payment.needs_review == False,
                    Payment.created_at <= cutoff,
                )
                .order_by(Payment.created_at.asc())
                .limit(limit)
            ]

        outcomes = []
        for payment_id in ids:
            if self.is_tracking(payment_id):
                continue
            with self.session_factory() as db:
                try:
                    outcomes.append(await self.check_once(db, payment_id, source="sweep"))
                except ProviderError:
                    logger.warning("Sweep could not reach provider | payment=%s", payment_id)
        return outcomes

    async def run_sweeper(self, interval: float, min_age_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reconcile_open_payments(min_age_seconds=min_age_seconds)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Payment sweep failed")
