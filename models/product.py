# --- models/product.py ---
from models import db, BIGINT
from datetime import datetime


class Product(db.Model):
    """Catalog row. Only ``stock`` is written by the checkout path."""

    __tablename__ = "product"
    __table_args__ = (
        db.CheckConstraint("stock >= 0", name="ck_product_stock_non_negative"),
    )

    id = db.Column(BIGINT, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(220), unique=True, nullable=False)
    manufacturer = db.Column(db.String(100), nullable=True)

    # Pricing
    price = db.Column(db.Numeric(10, 2), nullable=False)
    original_price = db.Column(db.Numeric(10, 2), nullable=False)

    # Inventory
    stock = db.Column(db.Integer, nullable=False, default=0)

    # Media
    images = db.Column(db.JSON, default=list)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
