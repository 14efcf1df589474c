from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from stormcrm.config import Settings
from stormcrm.logging import get_logger
from stormcrm.service.abuse import AbuseSignals
from stormcrm.service.errors import (
    AccountDisabledError,
    AuthenticationError,
    ConflictError,
    InsufficientPermissionsError,
    NoTokenError,
    NotFoundError,
)
from stormcrm.service.tokens import IdentitySummary, TokenPair, TokenService
from stormcrm.storage.common import Database, utcnow_iso
from stormcrm.storage.errors import ConstraintViolation
from stormcrm.storage.statements import FetchById, FetchByUniqueField, InsertInto, Partition, UpdateById

logger = get_logger(__name__)

BEARER_PREFIX = "Bearer "

DEFAULT_ROLE = "sales_rep"
SELF_SERVICE_ROLES = frozenset({"sales_rep", "viewer"})


@dataclass(frozen=True)
class AuthContext:
    """Identity attached to an authenticated request, read from the token alone."""

    id: str
    email: str
    role: str


def extract_bearer(header: Optional[str]) -> str:
    """Return the token from an ``Authorization`` header.

    The ``Bearer `` prefix is matched case-sensitively.
    """

    if not header or not header.startswith(BEARER_PREFIX):
        raise NoTokenError()
    token = header[len(BEARER_PREFIX):].strip()
    if not token:
        raise NoTokenError()
    return token


def public_user(row: dict[str, Any]) -> dict[str, Any]:
    """Strip credentials from a stored user row."""

    return {k: v for k, v in row.items() if k != "password_hash"}


class AuthService:
    """Registration, login and token authentication over the configured database."""

    def __init__(self, db: Database, tokens: TokenService, settings: Settings) -> None:
        self.db = db
        self.tokens = tokens
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    async def _user_by_email(self, email: str) -> Optional[dict[str, Any]]:
        result = await self.db.query(
            FetchByUniqueField(Partition.USERS, "email", email.strip().lower())
        )
        return result.first

    async def _user_by_id(self, user_id: str) -> Optional[dict[str, Any]]:
        result = await self.db.query(FetchById(Partition.USERS, user_id))
        return result.first

    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        *,
        phone: Optional[str] = None,
        role: Optional[str] = None,
    ) -> tuple[dict[str, Any], TokenPair]:
        role = role or DEFAULT_ROLE
        if role not in SELF_SERVICE_ROLES:
            raise InsufficientPermissionsError(
                "Elevated roles must be granted by an administrator"
            )
        email = email.strip().lower()
        if await self._user_by_email(email):
            raise ConflictError("An account with this email already exists", error_code="User already exists")
        try:
            result = await self.db.query(
                InsertInto(
                    Partition.USERS,
                    {
                        "email": email,
                        "password_hash": self.hash_password(password),
                        "first_name": first_name,
                        "last_name": last_name,
                        "phone": phone or None,
                        "role": role,
                        "is_active": True,
                        "last_login_at": None,
                    },
                )
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "An account with this email already exists", error_code="User already exists"
            ) from exc
        user = result.first
        logger.info("user_registered", user_id=user["id"], role=role)
        return public_user(user), self.tokens.issue_token_pair(IdentitySummary.from_row(user))

    async def login(
        self,
        email: str,
        password: str,
        *,
        signals: Optional[AbuseSignals] = None,
    ) -> tuple[dict[str, Any], TokenPair]:
        """Check credentials and issue a token pair.

        Bad credentials are reported to ``signals`` so repeated guessing ends in
        an IP block; a successful login clears the client's failure count.
        """

        user = await self._user_by_email(email)
        if not user or not self.verify_password(user.get("password_hash"), password):
            if signals is not None:
                signals.record_failure()
            logger.warning("login_failed", reason="invalid_credentials")
            raise AuthenticationError("Email or password is incorrect", error_code="Invalid credentials")
        if not user.get("is_active", True):
            logger.warning("login_failed", reason="account_disabled", user_id=user["id"])
            raise AccountDisabledError("Your account has been disabled. Please contact support.")

        updated = await self.db.query(
            UpdateById(Partition.USERS, user["id"], {"last_login_at": utcnow_iso()})
        )
        user = updated.first or user
        if signals is not None:
            signals.clear_failures()
        logger.info("user_logged_in", user_id=user["id"])
        return public_user(user), self.tokens.issue_token_pair(IdentitySummary.from_row(user))

    async def refresh(self, refresh_token: str) -> str:
        """Issue a new access token; the role is re-read from storage."""

        try:
            claims = self.tokens.verify_refresh(refresh_token)
        except AuthenticationError as exc:
            logger.warning("refresh_token_rejected", reason=type(exc).__name__)
            raise AuthenticationError("Token refresh failed") from None
        user = await self._user_by_id(claims.id)
        if not user or not user.get("is_active", True):
            logger.warning("refresh_token_rejected", reason="user_missing_or_inactive", user_id=claims.id)
            raise AuthenticationError("User not found or inactive", error_code="Invalid token")
        return self.tokens.issue_access_token(IdentitySummary.from_row(user))

    async def profile(self, user_id: str) -> dict[str, Any]:
        user = await self._user_by_id(user_id)
        if not user:
            raise NotFoundError("User not found")
        return public_user(user)

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve the ``Authorization`` header to an :class:`AuthContext`.

        Expired and malformed tokens are indistinguishable to the caller; the
        reason is only logged.
        """

        token = extract_bearer(authorization)
        try:
            claims = self.tokens.verify_access(token)
        except AuthenticationError as exc:
            logger.warning("access_token_rejected", reason=type(exc).__name__, detail=str(exc))
            raise AuthenticationError("Invalid or expired token") from None
        if not claims.role:
            logger.warning("access_token_rejected", reason="missing_role")
            raise AuthenticationError("Invalid or expired token")
        return AuthContext(id=claims.id, email=claims.email, role=claims.role)

    def authenticate_optional(self, authorization: Optional[str]) -> Optional[AuthContext]:
        try:
            return self.authenticate(authorization)
        except (NoTokenError, AuthenticationError):
            return None


__all__ = [
    "AuthContext",
    "AuthService",
    "BEARER_PREFIX",
    "extract_bearer",
    "public_user",
]
