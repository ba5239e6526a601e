from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any, Mapping

from jose import JWTError, jwt

from src.domain.errors import SignatureVerificationError, WebhookMisconfiguredError


CHALLENGE_HEADER = "x-fic-verification-challenge"
CHALLENGE_QUERY_PARAM = "x-fic-verification-challenge"
_SIGNATURE_PREFIX = "sha256="


def _header_value(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is not None:
        return value
    wanted = name.lower()
    for key, candidate in headers.items():
        if key.lower() == wanted:
            return candidate
    return None


def extract_verification_challenge(
    headers: Mapping[str, str],
    query_params: Mapping[str, str],
) -> str | None:
    challenge = _header_value(headers, CHALLENGE_HEADER)
    if not challenge:
        challenge = query_params.get(CHALLENGE_QUERY_PARAM)
    return challenge or None


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def signature_matches(raw_body: bytes, signature_header: str | None, secret: str) -> bool:
    if not signature_header:
        return False
    provided = signature_header.strip()
    if provided.lower().startswith(_SIGNATURE_PREFIX):
        provided = provided[len(_SIGNATURE_PREFIX):]
    return hmac.compare_digest(compute_signature(raw_body, secret), provided.lower())


def verify_notification_signature(raw_body: bytes, signature_header: str | None, secret: str | None) -> None:
    """HMAC-SHA256 over the exact raw body, compared in constant time."""
    if not secret:
        raise WebhookMisconfiguredError("Subscription has no webhook secret configured")
    if not signature_header:
        raise SignatureVerificationError("Missing webhook signature")
    if not signature_matches(raw_body, signature_header, secret):
        raise SignatureVerificationError("Invalid webhook signature")


@dataclass
class BearerTokenCheck:
    present: bool
    verified: bool = False
    reason: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)


def _decode_public_key(public_key_b64: str) -> str | None:
    try:
        return base64.b64decode(public_key_b64, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def verify_bearer_token(
    authorization: str | None,
    *,
    public_key_b64: str | None,
    issuer: str,
    expected_jti: str | None = None,
    expected_subject: str | None = None,
) -> BearerTokenCheck:
    """Check the ES256 JWT the remote may attach to deliveries.

    Never raises: callers decide whether an unverified token blocks the request.
    """
    token = _bearer_token(authorization)
    if not token:
        return BearerTokenCheck(present=False, reason="missing_token")
    if not public_key_b64:
        return BearerTokenCheck(present=True, reason="public_key_not_configured")
    public_key = _decode_public_key(public_key_b64)
    if not public_key:
        return BearerTokenCheck(present=True, reason="public_key_invalid")

    try:
        claims = jwt.decode(
            token,
            public_key,
            algorithms=["ES256"],
            issuer=issuer,
            options={"verify_aud": False},
        )
    except JWTError as exc:
        return BearerTokenCheck(present=True, reason=f"invalid_token: {exc}")

    if expected_jti and str(claims.get("jti")) != str(expected_jti):
        return BearerTokenCheck(present=True, reason="jti_mismatch", claims=claims)
    if expected_subject and str(claims.get("sub")) != str(expected_subject):
        return BearerTokenCheck(present=True, reason="subject_mismatch", claims=claims)
    return BearerTokenCheck(present=True, verified=True, claims=claims)
