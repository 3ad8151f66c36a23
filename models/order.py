from enum import Enum
from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Numeric, Integer
from sqlalchemy.sql import func
from models import db, BIGINT


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class Order(db.Model):
    __tablename__ = "order"
    __table_args__ = (
        db.Index("ix_order_user_created", "user_id", "created_at"),
    )
    id = Column(BIGINT, primary_key=True)
    order_number = Column(String(32), unique=True, nullable=False)
    # Client-supplied retry key, see checkout_service.place_order
    checkout_key = Column(String(100), unique=True, nullable=True)
    user_id = Column(BIGINT, ForeignKey("user.id"), nullable=False)
    address_id = Column(BIGINT, ForeignKey("address.id"), nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)
    shipping = Column(Numeric(10, 2), nullable=False, default=0)
    tax = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    gateway_payment_id = Column(String(64), nullable=True, index=True)
    gateway_status = Column(String(30), nullable=True)  # raw gateway vocabulary
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    items = db.relationship("OrderItem", backref="order", cascade="all, delete-orphan", lazy=True)
    status_log = db.relationship(
        "OrderStatusLog", backref="order", lazy=True, order_by="OrderStatusLog.id"
    )


class OrderItem(db.Model):
    __tablename__ = "order_item"
    id = db.Column(BIGINT, primary_key=True)
    order_id = db.Column(BIGINT, db.ForeignKey("order.id"), nullable=False)
    product_id = db.Column(BIGINT, db.ForeignKey("product.id"), nullable=False)
    quantity = db.Column(Integer, nullable=False)
    # Price at purchase time, decoupled from later catalog changes
    price = db.Column(Numeric(10, 2), nullable=False)


class OrderStatusLog(db.Model):
    __tablename__ = "order_status_log"
    id = Column(BIGINT, primary_key=True)
    order_id = Column(BIGINT, ForeignKey("order.id"), nullable=False)
    status = Column(String(20), nullable=False)
    payment_status = Column(String(20), nullable=False)
    source = Column(String(20), nullable=False)  # checkout, webhook, cli
    timestamp = Column(DateTime, default=func.now())
