import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from .errors import InvalidToken

ACCESS_TOKEN = "access"
VERIFICATION_TOKEN = "verify"


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.sha256(f"{salt}:{password}".encode("utf-8")).hexdigest()
    return f"{salt}${digest}"


def verify_password(password: str, stored_hash: str) -> bool:
    try:
        salt, expected = stored_hash.split("$", 1)
    except ValueError:
        return False
    digest = hashlib.sha256(f"{salt}:{password}".encode("utf-8")).hexdigest()
    return secrets.compare_digest(digest, expected)


def issue_token(subject: str, purpose: str, secret: str, ttl: timedelta, algorithm: str = "HS256") -> str:
    now = datetime.now(timezone.utc)
    claims = {"sub": subject, "typ": purpose, "iat": now, "exp": now + ttl}
    return jwt.encode(claims, secret, algorithm=algorithm)


def decode_token(token: str, purpose: str, secret: str, algorithm: str = "HS256") -> dict[str, Any]:
    try:
        claims = jwt.decode(token, secret, algorithms=[algorithm], options={"require": ["sub", "exp"]})
    except jwt.ExpiredSignatureError as exc:
        raise InvalidToken("token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise InvalidToken("invalid token") from exc
    if claims.get("typ") != purpose:
        raise InvalidToken("invalid token")
    return claims
