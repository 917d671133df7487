from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Optional, List

from orderflow.database import get_db
from orderflow.dependencies import get_current_user, require_admin
from orderflow.errors import OrderflowError, to_http
from orderflow.models import Order, OrderStatus, User
from orderflow.services import discounts
from orderflow.services.catalog import snapshot_lines
from orderflow.services.container import Services, get_services

router = APIRouter(prefix="/orders", tags=["orders"])


# =====================================================
# PYDANTIC SCHEMAS
# =====================================================

class OrderItemInput(BaseModel):
    product_id: str
    quantity: int


class CreateOrderPayload(BaseModel):
    # Omit items to check out the current cart.
    items: Optional[List[OrderItemInput]] = None
    shipping_address: Optional[dict] = None
    phone: Optional[str] = None
    payment_method: Optional[str] = "kkiapay"
    notes: Optional[str] = None
    coupon_code: Optional[str] = None


class StatusUpdatePayload(BaseModel):
    status: str


# =====================================================
# HELPERS
# =====================================================

def serialize_order(o: Order, include_admin_fields: bool = False) -> dict:
    data = {
        "id":                    str(o.id),
        "user_id":               str(o.user_id),
        "status":                o.status,
        "subtotal_amount":       o.subtotal_amount,
        "discount_amount":       o.discount_amount,
        "total_amount":          o.total_amount,
        "coupon_code":           o.coupon_code,
        "shipping_address":      o.shipping_address,
        "phone":                 o.phone,
        "payment_method":        o.payment_method,
        "payment_reference":     o.payment_reference,
        "notes":                 o.notes,
        "delivery_received_at":  o.delivery_received_at,
        "delivery_delivered_at": o.delivery_delivered_at,
        "customer_confirmed_at": o.customer_confirmed_at,
        "created_at":            o.created_at,
        "updated_at":            o.updated_at,
        "items": [
            {
                "id":            str(i.id),
                "product_id":    str(i.product_id) if i.product_id else None,
                "product_title": i.product_title,
                "quantity":      i.quantity,
                "price":         i.price,
                "subtotal":      i.subtotal,
            }
            for i in o.items
        ],
        "payments": [
            {
                "id":         str(p.id),
                "amount":     p.amount,
                "status":     p.status,
                "method":     p.payment_method,
                "created_at": p.created_at,
            }
            for p in o.payments
        ],
    }
    if include_admin_fields:
        data["delivery_user_id"] = str(o.delivery_user_id) if o.delivery_user_id else None
        data["delivery_notes"] = o.delivery_notes
    return data


# =====================================================
# USER: CREATE ORDER
# =====================================================

@router.post("", status_code=201)
def create_order(
    payload: CreateOrderPayload,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """
    Snapshots server-side prices, resolves at most one discount (explicit
    coupon or the best loyalty reward) and persists the order with its
    coupon consumption atomically. The cart is cleared on payment, not here.
    """
    if payload.items is not None:
        requested = [(i.product_id, i.quantity) for i in payload.items]
    else:
        requested = services.cart.get_items(db, user.id)
    if not requested:
        raise HTTPException(400, "Order must contain at least one item")

    try:
        lines = snapshot_lines(db, requested)
        subtotal = round(sum(line.subtotal for line in lines), 2)
        discount = discounts.resolve(db, subtotal, user.id, payload.coupon_code)
        order = services.orders.create_order(
            db,
            user.id,
            lines,
            discount=discount,
            shipping_address=payload.shipping_address,
            phone=payload.phone or user.phone,
            payment_method=payload.payment_method,
            notes=payload.notes,
        )
    except OrderflowError as e:
        raise to_http(e)

    return {
        "order_id": str(order.id),
        "status": order.status,
        "subtotal_amount": order.subtotal_amount,
        "discount_amount": order.discount_amount,
        "total_amount": order.total_amount,
        "coupon_code": order.coupon_code,
        "discount_source": discount.source,
    }


# =====================================================
# USER: LIST / DETAIL
# =====================================================

@router.get("/my")
def my_orders(
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    query = db.query(Order).filter(Order.user_id == user.id)
    if status:
        try:
            query = query.filter(Order.status == OrderStatus(status))
        except ValueError:
            raise HTTPException(400, f"Invalid status: '{status}'")
    orders = query.order_by(Order.created_at.desc()).all()
    return [serialize_order(o) for o in orders]


@router.get("/{order_id}")
def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    try:
        if user.role == "admin":
            order = services.orders.get(db, order_id)
        else:
            order = services.orders.get_for_user(db, order_id, user.id)
    except OrderflowError as e:
        raise to_http(e)
    return serialize_order(order, include_admin_fields=user.role == "admin")


# =====================================================
# USER: CANCEL / CONFIRM RECEIPT
# =====================================================

@router.post("/my/{order_id}/cancel")
def cancel_my_order(
    order_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    try:
        order = services.orders.cancel_by_customer(db, order_id, user.id)
    except OrderflowError as e:
        raise to_http(e)
    return {"message": "Order cancelled", "order_id": str(order.id), "status": order.status}


@router.post("/{order_id}/confirm-delivery")
def confirm_delivery(
    order_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    try:
        order = services.orders.confirm_delivery(db, order_id, user.id)
    except OrderflowError as e:
        raise to_http(e)
    return {
        "message": "Delivery confirmed",
        "order_id": str(order.id),
        "status": order.status,
        "customer_confirmed_at": order.customer_confirmed_at,
    }


# =====================================================
# ADMIN: STATUS
# =====================================================

@router.post("/admin/{order_id}/status")
def admin_update_status(
    order_id: str,
    payload: StatusUpdatePayload,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    try:
        order = services.orders.transition(db, order_id, payload.status, actor=admin.id)
    except OrderflowError as e:
        raise to_http(e)
    return serialize_order(order, include_admin_fields=True)
