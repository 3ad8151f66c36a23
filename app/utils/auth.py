from functools import wraps
from flask import request, g
from .responses import error
from .jwt import decode_token, TokenError


def _bearer_token():
    auth = request.headers.get("Authorization", "")
    if not auth:
        return None
    return auth.split(" ", 1)[1] if auth.startswith("Bearer ") else auth


def _load_identity():
    """Populate ``g.user_id``/``g.user_email``. Raises TokenError."""
    token = _bearer_token()
    if not token:
        raise TokenError("Unauthorized")
    payload = decode_token(token, expected_type="access")
    g.user_id = int(payload["sub"])
    g.user_email = payload.get("email")


def auth_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            _load_identity()
        except TokenError as e:
            return error(str(e), status=401)
        return func(*args, **kwargs)

    return wrapper


def auth_optional(func):
    """Like auth_required, but anonymous callers get ``g.user_id = None``."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            _load_identity()
        except TokenError:
            g.user_id = None
            g.user_email = None
        return func(*args, **kwargs)

    return wrapper
