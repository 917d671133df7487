"""Cart collaborator: read the user's cart at checkout, clear it on settlement."""

import logging

from sqlalchemy.orm import Session

from orderflow.models import Cart, CartItem

logger = logging.getLogger(__name__)


class CartService:
    def get_items(self, db: Session, user_id) -> list[tuple]:
        cart = db.query(Cart).filter(Cart.user_id == user_id).first()
        if not cart:
            return []
        return [(item.product_id, item.quantity) for item in cart.items]

    def clear(self, db: Session, user_id) -> int:
        """Delete the cart's items inside the caller's transaction. No commit."""
        cart = db.query(Cart).filter(Cart.user_id == user_id).first()
        if not cart:
            return 0
        removed = (
            db.query(CartItem)
            .filter(CartItem.cart_id == cart.id)
            .delete(synchronize_session=False)
        )
        logger.info("Cart cleared | user=%s items=%s", user_id, removed)
        return removed
