"""
Commission Ledger.

One Commission row per order line of a settled order, priced with the
vendor's rate at settlement time. Rows start ``pending``; only an admin
payout flips them to ``paid``.
"""

import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from orderflow.config import settings
from orderflow.errors import InvalidTransition, NotFound
from orderflow.models import Commission, CommissionStatus, Order, Vendor
from orderflow.services.catalog import commission_rate_for, parse_uuid
from orderflow.utils.clock import utcnow

logger = logging.getLogger(__name__)


class CommissionLedger:
    def __init__(self, default_rate: float = settings.default_commission_rate, sink=None):
        self.default_rate = default_rate
        self.sink = sink

    def record_for_order(self, db: Session, order: Order) -> list[Commission]:
        """Derive commissions inside the caller's settlement transaction. No commit."""
        already = {
            row.order_item_id
            for row in db.query(Commission.order_item_id).filter(Commission.order_id == order.id)
        }
        created = []
        for item in order.items:
            if item.vendor_id is None or item.id in already:
                continue
            rate = commission_rate_for(db, item.vendor_id, self.default_rate)
            if rate is None:
                continue
            commission = Commission(
                order_id=order.id,
                order_item_id=item.id,
                vendor_id=item.vendor_id,
                sale_amount=item.subtotal,
                commission_rate=rate,
                commission_amount=round(item.subtotal * rate, 2),
                status=CommissionStatus.pending,
            )
            db.add(commission)
            created.append(commission)
        if created:
            logger.info("Commissions recorded | order=%s rows=%s", order.id, len(created))
        return created

    def mark_paid(self, db: Session, commission_id) -> Commission:
        commission = db.get(Commission, parse_uuid(commission_id, "commission id"))
        if commission is None:
            raise NotFound("Commission not found")

        now = utcnow()
        result = db.execute(
            update(Commission)
            .where(Commission.id == commission.id, Commission.status == CommissionStatus.pending)
            .values(status=CommissionStatus.paid, paid_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            raise InvalidTransition("Commission is already paid")
        db.commit()
        db.refresh(commission)

        logger.info("Commission paid | commission=%s vendor=%s amount=%s", commission.id, commission.vendor_id, commission.commission_amount)
        if self.sink:
            owner = db.get(Vendor, commission.vendor_id)
            if owner is not None and owner.user_id is not None:
                self.sink.emit(
                    db, "commission_paid",
                    user_id=owner.user_id,
                    order_id=commission.order_id,
                    amount=commission.commission_amount,
                )
        return commission

    def list_for_vendor(self, db: Session, vendor_id, status=None) -> list[Commission]:
        query = db.query(Commission).filter(Commission.vendor_id == vendor_id)
        if status is not None:
            query = query.filter(Commission.status == CommissionStatus(status))
        return query.order_by(Commission.created_at.desc()).all()
