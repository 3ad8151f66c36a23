from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import BigInteger, Integer

# Use BigInteger in production but fall back to Integer for SQLite
BIGINT = BigInteger().with_variant(Integer, "sqlite")

db = SQLAlchemy()

# Re-export common models for convenience
from .user import User  # noqa: F401
from .product import Product  # noqa: F401
from .address import Address  # noqa: F401
from .cart import Cart, CartItem  # noqa: F401
from .order import Order, OrderItem, OrderStatusLog  # noqa: F401
