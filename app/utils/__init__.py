from .responses import ok, error, validation_error_response
from .auth import auth_required, auth_optional
from .validation import validate_schema
from .db import transactional
from .jwt import create_access_token, decode_token, TokenError

__all__ = [
    'ok',
    'error',
    'validation_error_response',
    'auth_required',
    'auth_optional',
    'validate_schema',
    'transactional',
    'create_access_token',
    'decode_token',
    'TokenError',
]
