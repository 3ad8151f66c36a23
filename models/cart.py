from models import db, BIGINT
from datetime import datetime


class Cart(db.Model):
    __tablename__ = "cart"

    id = db.Column(BIGINT, primary_key=True)
    user_id = db.Column(BIGINT, db.ForeignKey("user.id"), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = db.relationship(
        "CartItem",
        backref="cart",
        cascade="all, delete-orphan",
        lazy=True,
        order_by="CartItem.created_at.desc()",
    )


class CartItem(db.Model):
    __tablename__ = "cart_item"
    __table_args__ = (
        db.UniqueConstraint("cart_id", "product_id", name="uq_cart_item_cart_product"),
    )

    id = db.Column(BIGINT, primary_key=True)
    cart_id = db.Column(BIGINT, db.ForeignKey("cart.id"), nullable=False, index=True)
    product_id = db.Column(BIGINT, db.ForeignKey("product.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    product = db.relationship("Product")
