"""
Best-effort decoding of self-describing tokens (JWT) on the client side.

No signature check happens here: the client does not hold the issuer's keys and
does not need them. The claims are an untrusted scheduling hint (when should we
renew?), never a trust decision; the server remains the only authority on
whether a token is valid.
"""
import logging
import math
from collections.abc import Mapping
from typing import Any

import jwt

from session_client.errors import CredentialParseError

logger = logging.getLogger(__name__)

_UNVERIFIED_OPTIONS = {
    "verify_signature": False,
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iat": False,
    "verify_aud": False,
    "verify_iss": False,
}


class UntrustedClaims(Mapping):
    """Read-only view over a token payload that was decoded without verification."""

    def __init__(self, payload: dict[str, Any]):
        self._payload = dict(payload)

    def __getitem__(self, key: str) -> Any:
        return self._payload[key]

    def __iter__(self):
        return iter(self._payload)

    def __len__(self) -> int:
        return len(self._payload)

    def __repr__(self) -> str:
        return f"UntrustedClaims(keys={sorted(self._payload)})"

    @property
    def expires_at(self) -> int | None:
        """exp claim as integer unix seconds, or None if missing, not numeric or not finite."""
        exp = self._payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        # JSON numbers like 1e999 and NaN decode to non-finite floats
        if isinstance(exp, float) and not math.isfinite(exp):
            return None
        return int(exp)

    def get_str(self, key: str) -> str | None:
        value = self._payload.get(key)
        return value if isinstance(value, str) and value else None


def decode_untrusted_claims(token: str) -> UntrustedClaims:
    """
    Decode the payload segment of a JWT without verifying it.
    Raises CredentialParseError for anything that is not a JWT with a JSON object payload.
    """
    if not token or not isinstance(token, str):
        raise CredentialParseError("empty token")
    try:
        payload = jwt.decode(token.strip(), options=_UNVERIFIED_OPTIONS)
    except jwt.PyJWTError as e:
        raise CredentialParseError(str(e)) from e
    if not isinstance(payload, dict):
        raise CredentialParseError("token payload is not an object")
    return UntrustedClaims(payload)


def try_decode_claims(token: str | None) -> UntrustedClaims | None:
    """Like decode_untrusted_claims but returns None instead of raising."""
    if not token:
        return None
    try:
        return decode_untrusted_claims(token)
    except CredentialParseError as e:
        logger.debug("Token is not self-describing: %s", e)
        return None


def parse_expiry(token: str | None) -> int | None:
    """exp claim in unix seconds, or None when the token has none. Never raises."""
    claims = try_decode_claims(token)
    if claims is None:
        return None
    return claims.expires_at


def mask_token(token: str | None) -> str:
    """Loggable form of a token: first and last few characters only."""
    if not token:
        return "<none>"
    if len(token) <= 16:
        return "***"
    return f"{token[:6]}...{token[-4:]}"
