"""
auth/csrf.py -- Double-submit CSRF tokens signed with itsdangerous.

The refresh cookie is sent automatically by the browser, so a cross-site form
could trigger /auth/refresh. Cookie-channel refreshes therefore also require
the X-CSRF-Token header to:
  1. equal the csrf_token cookie (double submit: only same-origin script can
     read the cookie and copy it into a header), and
  2. carry a valid, unexpired itsdangerous signature made with SECRET_KEY, so
     a token planted by a sibling subdomain cannot be forged.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import hmac
import secrets
from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

_SALT = "orgwarden-csrf"


def _serializer(secret_key: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret_key, salt=_SALT)


def generate_csrf_token(secret_key: str) -> str:
    """Return a new signed, timestamped token wrapping a random nonce."""
    return _serializer(secret_key).dumps(secrets.token_hex(16))


def validate_csrf_token(
    header_value: Optional[str],
    cookie_value: Optional[str],
    secret_key: str,
    max_age: int,
) -> bool:
    """True when header and cookie match and the signature is valid and fresh."""
    if not header_value or not cookie_value:
        return False
    if not hmac.compare_digest(header_value, cookie_value):
        return False
    try:
        _serializer(secret_key).loads(header_value, max_age=max_age)
    except SignatureExpired:
        return False
    except BadSignature:
        return False
    return True
