from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from orderflow.database import get_db
from orderflow.dependencies import require_admin, require_delivery_agent
from orderflow.errors import OrderflowError, to_http
from orderflow.models import User
from orderflow.routes.orders import serialize_order
from orderflow.services.container import Services, get_services
from orderflow.services.delivery import ProofArtifacts

router = APIRouter(prefix="/delivery", tags=["delivery"])


# =====================================================
# PYDANTIC SCHEMAS
# =====================================================

class AssignPayload(BaseModel):
    delivery_user_id: str


class ProofPayload(BaseModel):
    proof_type: str  # pickup | delivered
    recipient_name: Optional[str] = None
    recipient_photo_url: Optional[str] = None
    recipient_id_photo_url: Optional[str] = None
    signature_url: Optional[str] = None
    location_lat: Optional[float] = None
    location_lng: Optional[float] = None
    location_address: Optional[str] = None
    notes: Optional[str] = None


# =====================================================
# ADMIN: ASSIGN AGENT
# =====================================================

@router.post("/admin/{order_id}/assign")
def assign_delivery(
    order_id: str,
    payload: AssignPayload,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    try:
        order = services.delivery.assign(db, order_id, payload.delivery_user_id, actor=admin.id)
    except OrderflowError as e:
        raise to_http(e)
    return serialize_order(order, include_admin_fields=True)


# =====================================================
# AGENT: PROOFS / ASSIGNED ORDERS
# =====================================================

@router.post("/{order_id}/proofs", status_code=201)
def record_proof(
    order_id: str,
    payload: ProofPayload,
    db: Session = Depends(get_db),
    agent: User = Depends(require_delivery_agent),
    services: Services = Depends(get_services),
):
    artifacts = ProofArtifacts(**payload.model_dump(exclude={"proof_type"}))
    try:
        proof = services.delivery.record_proof(db, order_id, agent.id, payload.proof_type, artifacts)
    except OrderflowError as e:
        raise to_http(e)
    return {
        "id": str(proof.id),
        "order_id": str(proof.order_id),
        "proof_type": proof.proof_type,
        "recipient_name": proof.recipient_name,
        "timestamp": proof.timestamp,
    }


@router.get("/my")
def my_deliveries(
    db: Session = Depends(get_db),
    agent: User = Depends(require_delivery_agent),
    services: Services = Depends(get_services),
):
    return [serialize_order(o, include_admin_fields=True) for o in services.delivery.assigned_orders(db, agent.id)]
