"""Per-user cart state.

Every mutation re-checks the product's current stock; nothing is reserved.
Writes return ``None`` (or ``False``) on any failure and leave the cart as it
was, reads degrade to ``None``/``0``. Transport status codes are the caller's
business.
"""
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db
from models.cart import Cart, CartItem
from models.product import Product

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def _money(value) -> str:
    return f"{Decimal(value):.2f}"


def _find_cart(user_id: int) -> Optional[Cart]:
    return Cart.query.filter_by(user_id=user_id).first()


def get_or_create_cart(user_id: int) -> Cart:
    cart = _find_cart(user_id)
    if cart:
        return cart
    cart = Cart(user_id=user_id)
    db.session.add(cart)
    try:
        db.session.commit()
    except IntegrityError:
        # Another request created it first
        db.session.rollback()
        cart = _find_cart(user_id)
        if cart is None:
            raise
    return cart


def serialize_cart(cart: Cart) -> dict:
    items = []
    subtotal = ZERO
    item_count = 0
    for ci in cart.items:
        product = ci.product
        subtotal += Decimal(product.price) * ci.quantity
        item_count += ci.quantity
        items.append({
            "id": ci.id,
            "cart_id": ci.cart_id,
            "product_id": ci.product_id,
            "quantity": ci.quantity,
            "line_total": _money(Decimal(product.price) * ci.quantity),
            "product": {
                "id": product.id,
                "name": product.name,
                "slug": product.slug,
                "price": _money(product.price),
                "original_price": _money(product.original_price),
                "stock": product.stock,
                "images": product.images or [],
                "manufacturer": product.manufacturer,
            },
        })
    return {
        "id": cart.id,
        "user_id": cart.user_id,
        "items": items,
        "subtotal": _money(subtotal),
        "item_count": item_count,
        "created_at": cart.created_at,
        "updated_at": cart.updated_at,
    }


def empty_cart_snapshot() -> dict:
    return {"items": [], "subtotal": _money(ZERO), "item_count": 0}


def get_cart_with_items(user_id: int) -> Optional[dict]:
    try:
        cart = _find_cart(user_id)
        if not cart:
            return None
        return serialize_cart(cart)
    except SQLAlchemyError as e:
        logger.error("Error fetching cart for user %s: %s", user_id, e, exc_info=True)
        db.session.rollback()
        return None


def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _line_quantity(user_id: int, product_id: int) -> int:
    cart = _find_cart(user_id)
    if not cart:
        return 0
    item = CartItem.query.filter_by(cart_id=cart.id, product_id=product_id).first()
    return item.quantity if item else 0


def exceeds_stock(user_id: int, product_id: int, quantity: int) -> bool:
    """True when adding ``quantity`` would take the user's line past current stock."""
    product = db.session.get(Product, product_id)
    if not product:
        return False
    return _line_quantity(user_id, product_id) + quantity > product.stock


def _merge_line(user_id: int, product_id: int, quantity: int) -> bool:
    product = db.session.get(Product, product_id)
    if not product:
        return False

    cart = get_or_create_cart(user_id)
    item = CartItem.query.filter_by(cart_id=cart.id, product_id=product_id).first()
    new_quantity = (item.quantity if item else 0) + quantity
    if new_quantity > product.stock:
        logger.info(
            "Stock ceiling hit: product=%s requested=%s stock=%s",
            product_id, new_quantity, product.stock,
        )
        return False

    if item:
        item.quantity = new_quantity
    else:
        db.session.add(CartItem(cart_id=cart.id, product_id=product_id, quantity=quantity))
    db.session.commit()
    return True


def add_to_cart(user_id: int, product_id: int, quantity: int = 1) -> Optional[dict]:
    """Add ``quantity`` units, merging into an existing line for the product.

    A concurrent request inserting the same line first trips the unique
    (cart, product) constraint; the merge is then retried once against it.
    """
    if not _is_positive_int(quantity):
        return None
    for attempt in range(2):
        try:
            if not _merge_line(user_id, product_id, quantity):
                return None
            return get_cart_with_items(user_id)
        except IntegrityError as e:
            db.session.rollback()
            if attempt == 0:
                logger.info("Cart line for product %s created concurrently, merging", product_id)
                continue
            logger.error("Error adding product %s to cart of user %s: %s", product_id, user_id, e, exc_info=True)
            return None
        except SQLAlchemyError as e:
            logger.error(
                "Error adding product %s x%s to cart of user %s: %s",
                product_id, quantity, user_id, e, exc_info=True,
            )
            db.session.rollback()
            return None
    return None


def get_owned_cart_item(user_id: int, item_id: int) -> Optional[CartItem]:
    """The line item if it belongs to ``user_id``'s cart, else None."""
    item = db.session.get(CartItem, item_id)
    if not item or item.cart.user_id != user_id:
        return None
    return item


def update_cart_item_quantity(user_id: int, item_id: int, quantity: int) -> Optional[dict]:
    """Set the exact quantity. Zero or less removes the line."""
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        return None
    try:
        item = get_owned_cart_item(user_id, item_id)
        if not item:
            return None
        if quantity <= 0:
            db.session.delete(item)
        elif quantity > item.product.stock:
            return None
        else:
            item.quantity = quantity
        db.session.commit()
    except SQLAlchemyError as e:
        logger.error("Error updating cart item %s for user %s: %s", item_id, user_id, e, exc_info=True)
        db.session.rollback()
        return None
    return get_cart_with_items(user_id)


def remove_from_cart(user_id: int, item_id: int) -> Optional[dict]:
    try:
        item = get_owned_cart_item(user_id, item_id)
        if not item:
            return None
        db.session.delete(item)
        db.session.commit()
    except SQLAlchemyError as e:
        logger.error("Error removing cart item %s for user %s: %s", item_id, user_id, e, exc_info=True)
        db.session.rollback()
        return None
    return get_cart_with_items(user_id)


def delete_cart_lines(user_id: int) -> int:
    """Delete every line of the user's cart without committing."""
    cart = _find_cart(user_id)
    if not cart:
        return 0
    deleted = CartItem.query.filter_by(cart_id=cart.id).delete(synchronize_session="fetch")
    db.session.expire(cart, ["items"])
    return deleted


def clear_cart(user_id: int) -> bool:
    try:
        delete_cart_lines(user_id)
        db.session.commit()
        return True
    except SQLAlchemyError as e:
        logger.error("Error clearing cart for user %s: %s", user_id, e, exc_info=True)
        db.session.rollback()
        return False


def get_cart_item_count(user_id: int) -> int:
    try:
        total = (
            db.session.query(db.func.coalesce(db.func.sum(CartItem.quantity), 0))
            .join(Cart, Cart.id == CartItem.cart_id)
            .filter(Cart.user_id == user_id)
            .scalar()
        )
        return int(total or 0)
    except Exception as e:
        logger.error("Error counting cart items for user %s: %s", user_id, e)
        db.session.rollback()
        return 0
