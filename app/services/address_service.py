from typing import Optional

from models import db
from models.address import Address
from app.utils.db import transactional


def get_owned_address(user_id: int, address_id: int) -> Optional[Address]:
    return Address.query.filter_by(id=address_id, user_id=user_id).first()


def set_default_address(user_id: int, address_id: int) -> Optional[Address]:
    """Make one address the user's default, clearing the others in the same transaction."""
    address = get_owned_address(user_id, address_id)
    if not address:
        return None
    with transactional("Failed to set default address"):
        (
            Address.query.filter(Address.user_id == user_id, Address.id != address_id)
            .update({Address.is_default: False}, synchronize_session="fetch")
        )
        address.is_default = True
    return address


def get_default_address(user_id: int) -> Optional[Address]:
    return Address.query.filter_by(user_id=user_id, is_default=True).first()
