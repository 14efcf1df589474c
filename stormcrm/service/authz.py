from __future__ import annotations

from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

from stormcrm.logging import get_logger
from stormcrm.service.auth import AuthContext
from stormcrm.service.errors import (
    AuthenticationRequiredError,
    AuthorizationCheckFailedError,
    InsufficientPermissionsError,
)

logger = get_logger(__name__)


class Role(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    SALES_REP = "sales_rep"
    VIEWER = "viewer"


ALL_ROLES = tuple(role.value for role in Role)

OwnerResolver = Callable[[], Awaitable[Optional[str]]]


def _role_names(allowed: Iterable[Role | str]) -> list[str]:
    return [Role(role).value for role in allowed]


def require_roles(ctx: Optional[AuthContext], allowed: Iterable[Role | str]) -> AuthContext:
    """Return ``ctx`` when its role is one of ``allowed``."""

    if ctx is None:
        raise AuthenticationRequiredError()
    names = _role_names(allowed)
    if ctx.role not in names:
        logger.warning(
            "role_check_denied", user_id=ctx.id, role=ctx.role, allowed=names
        )
        raise InsufficientPermissionsError(
            f"This action requires one of the following roles: {', '.join(names)}"
        )
    return ctx


async def require_owner_or_admin(
    ctx: Optional[AuthContext], resolve_owner: OwnerResolver
) -> AuthContext:
    """Allow admins outright; anyone else must own the resource.

    ``resolve_owner`` returns the owning identity id, or ``None`` for a
    resource nobody owns. It raises when the owner cannot be determined (a
    missing resource or a failed lookup); that is a failed check (500), not a
    denial.
    """

    if ctx is None:
        raise AuthenticationRequiredError()
    if ctx.role == Role.ADMIN.value:
        return ctx
    try:
        owner_id = await resolve_owner()
    except Exception as exc:
        logger.error(
            "owner_resolution_failed",
            user_id=ctx.id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise AuthorizationCheckFailedError() from exc
    if owner_id is None or str(owner_id) != ctx.id:
        logger.warning("ownership_check_denied", user_id=ctx.id, owner_id=owner_id)
        raise InsufficientPermissionsError("You can only access your own resources")
    return ctx


__all__ = [
    "Role",
    "ALL_ROLES",
    "OwnerResolver",
    "require_roles",
    "require_owner_or_admin",
]
