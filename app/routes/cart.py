from flask import Blueprint, current_app, g, request
from models import db
from models.product import Product
from extensions import limiter
from app.schemas.cart import AddToCartRequest, UpdateCartItemRequest
from app.services import cart_service
from app.utils import auth_required, auth_optional, validate_schema, ok, error
from app.version import API_PREFIX

cart_bp = Blueprint("cart", __name__, url_prefix=f"{API_PREFIX}/cart")


def _cart_write_limit():
    return current_app.config["CART_LIMIT_PER_IP"]


def _snapshot(user_id):
    return cart_service.get_cart_with_items(user_id) or cart_service.empty_cart_snapshot()


@cart_bp.route("", methods=["GET"])
@auth_required
def view_cart():
    """
    Current user's cart
    ---
    tags: [Cart]
    responses:
      200:
        description: Cart snapshot with items, subtotal and item_count
      401:
        description: Not authenticated
    """
    return ok({"cart": _snapshot(g.user_id)})


@cart_bp.route("", methods=["POST"])
@limiter.limit(_cart_write_limit)
@auth_required
@validate_schema(AddToCartRequest)
def add_to_cart():
    """
    Add a product to the cart
    ---
    tags: [Cart]
    parameters:
      - in: body
        name: body
        schema:
          type: object
          required: [productId]
          properties:
            productId: {type: integer}
            quantity: {type: integer, minimum: 1}
    responses:
      200:
        description: Updated cart snapshot
      404:
        description: Product not found
      409:
        description: Not enough stock
      500:
        description: Cart could not be written
    """
    data = request.validated_data
    cart = cart_service.add_to_cart(g.user_id, data.product_id, data.quantity)
    if cart is None:
        if not db.session.get(Product, data.product_id):
            return error("Product not found", status=404)
        if cart_service.exceeds_stock(g.user_id, data.product_id, data.quantity):
            return error("Not enough stock for the requested quantity", status=409)
        return error("Could not update cart", status=500)
    return ok({"cart": cart}, message="Product added to cart")


@cart_bp.route("/<int:item_id>", methods=["PUT"])
@limiter.limit(_cart_write_limit)
@auth_required
@validate_schema(UpdateCartItemRequest)
def update_cart_item(item_id):
    """
    Set the quantity of a cart line (0 or less removes it)
    ---
    tags: [Cart]
    responses:
      200:
        description: Updated cart snapshot
      404:
        description: Cart item not found
      409:
        description: Not enough stock
      500:
        description: Cart could not be written
    """
    quantity = request.validated_data.quantity
    cart = cart_service.update_cart_item_quantity(g.user_id, item_id, quantity)
    if cart is None:
        item = cart_service.get_owned_cart_item(g.user_id, item_id)
        if not item:
            return error("Cart item not found", status=404)
        if quantity > item.product.stock:
            return error("Not enough stock for the requested quantity", status=409)
        return error("Could not update cart", status=500)
    return ok({"cart": cart}, message="Cart updated")


@cart_bp.route("/<int:item_id>", methods=["DELETE"])
@limiter.limit(_cart_write_limit)
@auth_required
def remove_cart_item(item_id):
    """
    Remove a cart line
    ---
    tags: [Cart]
    responses:
      200:
        description: Updated cart snapshot
      404:
        description: Cart item not found
    """
    cart = cart_service.remove_from_cart(g.user_id, item_id)
    if cart is None:
        return error("Cart item not found", status=404)
    return ok({"cart": cart}, message="Item removed")


@cart_bp.route("/clear", methods=["POST"])
@auth_required
def clear_cart():
    if not cart_service.clear_cart(g.user_id):
        return error("Error clearing cart", status=500)
    return ok({"success": True}, message="Cart cleared")


@cart_bp.route("/count", methods=["GET"])
@auth_optional
def cart_count():
    """Badge count. Anonymous callers get 0."""
    if g.user_id is None:
        return ok({"count": 0})
    return ok({"count": cart_service.get_cart_item_count(g.user_id)})
