# --- models/user.py ---
from models import db, BIGINT
from datetime import datetime


class User(db.Model):
    __tablename__ = "user"

    id = db.Column(BIGINT, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    addresses = db.relationship("Address", backref="user", lazy=True)

    def __repr__(self):
        return f"<User id={self.id} email={self.email}>"
