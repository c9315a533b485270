"""
Bridge credentials.

The bridge signs every call with two independent proofs:

* a short-lived JWT (``Authorization: Bearer``) carrying the caller's role, and
* an HMAC-SHA256 hex digest of ``f"{timestamp}\\n{body}"`` sent as
  ``x-rp9-signature`` together with ``x-timestamp`` (unix seconds).

Both the verifying middleware and the outbound bridge client use the helpers
below, so the two sides cannot drift apart.
"""

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt

from app.config import settings
from app.exceptions import AuthError, ErrorCode

logger = logging.getLogger(__name__)

TIMESTAMP_HEADER = "x-timestamp"
SIGNATURE_HEADER = "x-rp9-signature"


@dataclass(frozen=True)
class Principal:
    """Identity of an accepted bridge request."""

    subject: str
    role: str
    tenant_id: Optional[str] = None


# Function to create a short-lived service token
def create_service_token(
    subject: str,
    role: str,
    ttl: Optional[timedelta] = None,
    tenant_id: Optional[str] = None,
) -> str:
    if not subject:
        raise ValueError("Missing 'sub' claim for service token.")

    now = datetime.now(timezone.utc)
    ttl = ttl or timedelta(seconds=min(300, settings.token_max_ttl_seconds))
    claims = {
        "sub": subject,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + ttl).timestamp()),
    }
    if tenant_id:
        claims["tenant_id"] = tenant_id
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


# Function to decode and validate a bridge token
def decode_bridge_token(token: str) -> Principal:
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require_exp": True, "require_iat": True, "require_sub": True},
        )
    except ExpiredSignatureError:
        raise AuthError("Token has expired", code=ErrorCode.AUTH_TOKEN_EXPIRED)
    except JWTError as e:
        logger.debug("JWT decoding failed: %s", e)
        raise AuthError("Invalid token", code=ErrorCode.AUTH_TOKEN_INVALID)

    # Only minutes-scale tokens are accepted, whatever the issuer chose
    if int(payload["exp"]) - int(payload["iat"]) > settings.token_max_ttl_seconds:
        raise AuthError("Token lifetime exceeds the allowed maximum", code=ErrorCode.AUTH_TOKEN_INVALID)

    role = payload.get("role")
    if role not in settings.bridge_allowed_roles:
        raise AuthError(
            "Insufficient permissions",
            code=ErrorCode.AUTH_ROLE_FORBIDDEN,
            status_code=403,
            details={"role": role},
        )
    return Principal(subject=payload["sub"], role=role, tenant_id=payload.get("tenant_id"))


# Function to compute the request-integrity signature
def compute_signature(secret: str, timestamp: str, body: bytes | str) -> str:
    if isinstance(body, str):
        body = body.encode("utf-8")
    # Raw bytes: the body is not required to be valid UTF-8
    message = timestamp.encode("utf-8") + b"\n" + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


# Function to verify timestamp freshness and signature (constant time)
def verify_signature(
    timestamp: Optional[str],
    body: bytes | str,
    signature: Optional[str],
    secret: Optional[str] = None,
    now: Optional[float] = None,
) -> None:
    if not timestamp or not signature:
        raise AuthError("Missing signature headers", code=ErrorCode.AUTH_SIGNATURE_INVALID)

    try:
        sent_at = int(timestamp)
    except ValueError:
        raise AuthError("Malformed request timestamp", code=ErrorCode.AUTH_TIMESTAMP_OUT_OF_WINDOW)

    current = time.time() if now is None else now
    if abs(current - sent_at) > settings.signature_tolerance_seconds:
        raise AuthError(
            "Request timestamp outside the tolerance window",
            code=ErrorCode.AUTH_TIMESTAMP_OUT_OF_WINDOW,
            details={"tolerance_seconds": settings.signature_tolerance_seconds},
        )

    expected = compute_signature(secret or settings.hmac_secret, timestamp, body)
    if not hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8")):
        raise AuthError("Invalid request signature", code=ErrorCode.AUTH_SIGNATURE_INVALID)


def sign_request(body: bytes | str, secret: Optional[str] = None, now: Optional[float] = None) -> dict[str, str]:
    """Timestamp and signature headers for an outbound bridge call."""
    timestamp = str(int(time.time() if now is None else now))
    return {
        TIMESTAMP_HEADER: timestamp,
        SIGNATURE_HEADER: compute_signature(secret or settings.hmac_secret, timestamp, body),
    }
