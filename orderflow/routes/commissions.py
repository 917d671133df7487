from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from orderflow.database import get_db
from orderflow.dependencies import require_admin, require_vendor
from orderflow.errors import OrderflowError, to_http
from orderflow.models import Commission, CommissionStatus, User, Vendor
from orderflow.services.catalog import parse_uuid
from orderflow.services.container import Services, get_services

router = APIRouter(prefix="/commissions", tags=["commissions"])


def _serialize_commission(c: Commission) -> dict:
    return {
        "id": str(c.id),
        "order_id": str(c.order_id),
        "order_item_id": str(c.order_item_id),
        "vendor_id": str(c.vendor_id),
        "sale_amount": c.sale_amount,
        "commission_rate": c.commission_rate,
        "commission_amount": c.commission_amount,
        "status": c.status,
        "paid_at": c.paid_at,
        "created_at": c.created_at,
    }


def _parse_status(status: Optional[str]) -> Optional[CommissionStatus]:
    if status is None:
        return None
    try:
        return CommissionStatus(status)
    except ValueError:
        raise HTTPException(400, f"Invalid status: '{status}'")


@router.get("/my")
def my_commissions(
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    vendor: Vendor = Depends(require_vendor),
    services: Services = Depends(get_services),
):
    rows = services.commissions.list_for_vendor(db, vendor.id, _parse_status(status))
    return {
        "items": [_serialize_commission(c) for c in rows],
        "total_pending": round(sum(c.commission_amount for c in rows if c.status == CommissionStatus.pending), 2),
        "total_paid": round(sum(c.commission_amount for c in rows if c.status == CommissionStatus.paid), 2),
    }


@router.get("/admin")
def admin_list_commissions(
    status: Optional[str] = Query(None),
    vendor_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    query = db.query(Commission)
    parsed = _parse_status(status)
    if parsed is not None:
        query = query.filter(Commission.status == parsed)
    if vendor_id:
        try:
            query = query.filter(Commission.vendor_id == parse_uuid(vendor_id, "vendor id"))
        except OrderflowError as e:
            raise to_http(e)
    return [_serialize_commission(c) for c in query.order_by(Commission.created_at.desc()).limit(limit).all()]


@router.post("/admin/{commission_id}/pay")
def admin_pay_commission(
    commission_id: str,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    try:
        commission = services.commissions.mark_paid(db, commission_id)
    except OrderflowError as e:
        raise to_http(e)
    return _serialize_commission(commission)
