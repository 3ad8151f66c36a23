from models import db, BIGINT
from datetime import datetime


class Address(db.Model):
    __tablename__ = "address"

    id = db.Column(BIGINT, primary_key=True)
    user_id = db.Column(BIGINT, db.ForeignKey("user.id"), nullable=False, index=True)
    full_name = db.Column(db.String(100), nullable=False)
    street = db.Column(db.String(200), nullable=False)
    city = db.Column(db.String(100), nullable=False)
    state = db.Column(db.String(100), nullable=True)
    postal_code = db.Column(db.String(20), nullable=False)
    country = db.Column(db.String(2), nullable=False, default="AR")
    phone = db.Column(db.String(30), nullable=True)
    # At most one default per user, enforced by set_default_address()
    is_default = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
