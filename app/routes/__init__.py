from .cart import cart_bp
from .payments import payments_bp


__all__ = [
    'cart_bp',
    'payments_bp',
]
