"""
Delivery Workflow: agent assignment, proof-of-delivery records.

The customer-confirmation step that finalizes an order lives on the
OrderStore (``confirm_delivery``) because it owns the status change.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from orderflow.errors import InvalidTransition, PermissionDenied, ValidationError
from orderflow.models import DeliveryProof, Order, OrderStatus, ProofType, User
from orderflow.services.catalog import parse_uuid
from orderflow.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ProofArtifacts:
    recipient_name: Optional[str] = None
    recipient_photo_url: Optional[str] = None
    recipient_id_photo_url: Optional[str] = None
    signature_url: Optional[str] = None
    location_lat: Optional[float] = None
    location_lng: Optional[float] = None
    location_address: Optional[str] = None
    notes: Optional[str] = None


class DeliveryWorkflow:
    def __init__(self, orders, sink=None):
        self.orders = orders
        self.sink = sink

    def assign(self, db: Session, order_id, delivery_user_id, actor=None) -> Order:
        order = self.orders.get(db, order_id)
        delivery_user_id = parse_uuid(delivery_user_id, "delivery user id")

        agent = db.get(User, delivery_user_id)
        if agent is None or agent.role != "delivery" or not agent.is_active:
            raise ValidationError("Delivery user not found or not a delivery agent")

        if order.status != OrderStatus.confirmed:
            logger.warning(
                "Rejected delivery assignment | order=%s status=%s actor=%s",
                order.id, order.status.value, actor,
            )
            raise InvalidTransition(f"Only confirmed orders can be assigned, order is {order.status.value}")
        if order.delivery_user_id is not None:
            raise InvalidTransition("Order already has a delivery agent")

        now = utcnow()
        result = db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.status == OrderStatus.confirmed,
                Order.delivery_user_id.is_(None),
            )
            .values(delivery_user_id=delivery_user_id, status=OrderStatus.shipped, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            raise InvalidTransition("Order was modified concurrently, reload and retry")
        db.commit()
        db.refresh(order)

        logger.info("Delivery assigned | order=%s agent=%s actor=%s", order.id, delivery_user_id, actor)
        if self.sink:
            self.sink.emit(db, "delivery_assigned", user_id=order.user_id, order_id=order.id)
            self.sink.emit(db, "delivery_assigned", user_id=delivery_user_id, order_id=order.id)
        return order

    def record_proof(
        self,
        db: Session,
        order_id,
        delivery_user_id,
        proof_type,
        artifacts: Optional[ProofArtifacts] = None,
    ) -> DeliveryProof:
        artifacts = artifacts or ProofArtifacts()
        try:
            proof_type = ProofType(proof_type)
        except ValueError:
            raise ValidationError(f"Invalid proof type: '{proof_type}'")

        order = self.orders.get(db, order_id)
        if order.delivery_user_id != delivery_user_id:
            raise PermissionDenied("Order is not assigned to you")
        if order.status != OrderStatus.shipped:
            raise InvalidTransition(f"Cannot record proof on a {order.status.value} order")
        if proof_type == ProofType.delivered and not (artifacts.recipient_name or "").strip():
            raise ValidationError("Recipient name is required for a delivery proof")

        now = utcnow()
        try:
            proof = DeliveryProof(
                order_id=order.id,
                delivery_user_id=delivery_user_id,
                proof_type=proof_type,
                recipient_name=artifacts.recipient_name,
                recipient_photo_url=artifacts.recipient_photo_url,
                recipient_id_photo_url=artifacts.recipient_id_photo_url,
                signature_url=artifacts.signature_url,
                location_lat=artifacts.location_lat,
                location_lng=artifacts.location_lng,
                location_address=artifacts.location_address,
                notes=artifacts.notes,
                timestamp=now,
            )
            db.add(proof)

            # First milestone timestamp wins; later proofs only append records.
            if proof_type == ProofType.pickup and order.delivery_received_at is None:
                order.delivery_received_at = now
            if proof_type == ProofType.delivered and order.delivery_delivered_at is None:
                order.delivery_delivered_at = now
            order.updated_at = now
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(proof)
        logger.info("Delivery proof | order=%s agent=%s type=%s", order.id, delivery_user_id, proof_type.value)
        if self.sink:
            self.sink.emit(
                db, "delivery_proof_recorded",
                user_id=order.user_id,
                order_id=order.id,
                proof_type=proof_type.value,
            )
        return proof

    def assigned_orders(self, db: Session, delivery_user_id) -> list[Order]:
        return (
            db.query(Order)
            .filter(Order.delivery_user_id == delivery_user_id)
            .order_by(Order.created_at.desc())
            .all()
        )
