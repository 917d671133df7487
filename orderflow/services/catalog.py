"""Price / title / vendor snapshots taken from the live catalog at order time."""

from dataclasses import dataclass
from typing import Iterable, Optional
import uuid

from sqlalchemy.orm import Session

from orderflow.errors import NotFound, ValidationError
from orderflow.models import Product, Vendor


@dataclass(frozen=True)
class OrderLine:
    product_id: Optional[uuid.UUID]
    product_title: str
    quantity: int
    unit_price: float
    vendor_id: Optional[uuid.UUID] = None

    @property
    def subtotal(self) -> float:
        return round(self.unit_price * self.quantity, 2)


def parse_uuid(value, label: str = "id") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        raise ValidationError(f"Invalid {label}: '{value}'")


def snapshot_lines(db: Session, requested: Iterable[tuple]) -> list[OrderLine]:
    """
    Turn (product_id, quantity) pairs into priced order lines.
    Always uses the server-side price, never a client-sent one.
    """
    lines = []
    for product_id, quantity in requested:
        pid = parse_uuid(product_id, "product id")
        if quantity is None or int(quantity) <= 0:
            raise ValidationError(f"Quantity for product {pid} must be positive")

        product = db.query(Product).filter(
            Product.id == pid,
            Product.is_deleted == False,
            Product.status == "active",
        ).first()
        if not product:
            raise NotFound(f"Product {pid} not found or unavailable")
        if product.stock is not None and product.stock < int(quantity):
            raise ValidationError(f"Not enough stock for '{product.title}'. Available: {product.stock}")

        lines.append(OrderLine(
            product_id=product.id,
            product_title=product.title,
            quantity=int(quantity),
            unit_price=float(product.price),
            vendor_id=product.vendor_id,
        ))
    return lines


def commission_rate_for(db: Session, vendor_id, default: float) -> Optional[float]:
    """Current commission rate of a vendor, read at settlement time."""
    if vendor_id is None:
        return None
    vendor = db.get(Vendor, vendor_id)
    if vendor is None:
        return None
    return vendor.commission_rate if vendor.commission_rate is not None else default
