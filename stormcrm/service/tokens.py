"""Signed session tokens.

Access and refresh tokens are compact HS256 JWTs signed with two separate
secrets loaded once from configuration. Nothing about an issued token is kept
server-side: validity is the signature plus ``exp``. Rotating either secret
therefore invalidates every outstanding token signed with the old value, and
there is no per-token revocation.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from stormcrm.config import Settings
from stormcrm.logging import get_logger
from stormcrm.service.errors import ExpiredTokenError, MalformedTokenError

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}


@dataclass(frozen=True)
class IdentitySummary:
    id: str
    email: str
    role: str

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "IdentitySummary":
        return cls(id=str(row["id"]), email=row["email"], role=row["role"])


@dataclass(frozen=True)
class TokenClaims:
    id: str
    email: str
    iat: int
    exp: int
    role: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return _encode_segment(digest)


class TokenService:
    """Issues and verifies access and refresh tokens."""

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.access_secret: str = settings.jwt_secret
        self.refresh_secret: str = settings.refresh_token_secret
        self.access_ttl_seconds = settings.access_token_ttl_minutes * 60
        self.refresh_ttl_seconds = settings.refresh_token_ttl_minutes * 60
        self._clock = clock

    def _encode(self, payload: dict[str, Any], secret: str) -> str:
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_sign(secret, signing_input)}"

    def issue_access_token(self, identity: IdentitySummary) -> str:
        now = int(self._clock())
        payload = {
            "id": identity.id,
            "email": identity.email,
            "role": identity.role,
            "iat": now,
            "exp": now + self.access_ttl_seconds,
        }
        return self._encode(payload, self.access_secret)

    def issue_refresh_token(self, identity: IdentitySummary) -> str:
        now = int(self._clock())
        payload = {
            "id": identity.id,
            "email": identity.email,
            "iat": now,
            "exp": now + self.refresh_ttl_seconds,
        }
        return self._encode(payload, self.refresh_secret)

    def issue_token_pair(self, identity: IdentitySummary) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(identity),
            refresh_token=self.issue_refresh_token(identity),
        )

    def verify(self, token: str, secret: str) -> TokenClaims:
        """Decode ``token`` and check it against ``secret``.

        Expiry is evaluated on the parsed payload before the signature, so a
        token past its ``exp`` raises :class:`ExpiredTokenError` whether or not
        its signature is valid. Every other defect raises
        :class:`MalformedTokenError`.
        """

        if not isinstance(token, str):
            raise MalformedTokenError("token is not a string")
        if not token.isascii():
            raise MalformedTokenError("token contains non-ascii characters")
        parts = token.split(".")
        if len(parts) != 3:
            raise MalformedTokenError("token does not have three segments")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedTokenError("token segments could not be decoded") from exc
        if not isinstance(header, dict) or not isinstance(payload, dict):
            raise MalformedTokenError("token segments are not objects")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise MalformedTokenError("unsupported algorithm")

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise MalformedTokenError("missing or non-numeric exp")
        if exp <= self._clock():
            raise ExpiredTokenError("token expired")

        if not hmac.compare_digest(
            _sign(secret, f"{header_b64}.{payload_b64}").encode(), sig_b64.encode()
        ):
            raise MalformedTokenError("signature mismatch")

        if not payload.get("id") or not payload.get("email"):
            raise MalformedTokenError("token is missing identity claims")
        iat = payload.get("iat")
        return TokenClaims(
            id=str(payload["id"]),
            email=str(payload["email"]),
            role=payload.get("role"),
            iat=int(iat) if isinstance(iat, (int, float)) else 0,
            exp=int(exp),
        )

    def verify_access(self, token: str) -> TokenClaims:
        return self.verify(token, self.access_secret)

    def verify_refresh(self, token: str) -> TokenClaims:
        return self.verify(token, self.refresh_secret)


__all__ = ["IdentitySummary", "TokenClaims", "TokenPair", "TokenService"]
