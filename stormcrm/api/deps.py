"""Request pipeline stages as FastAPI dependencies.

Router-level dependencies run before route-level ones, and both run before
parameter dependencies, so declaring the IP block and general limiter on the
router, the route-class limiter on the route and the identity gates as
parameters fixes the order: block, limit, authenticate, authorize.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, Request, Response

from stormcrm.config import RouteClass
from stormcrm.logging import get_logger
from stormcrm.service.abuse import AbuseSignals, RateLimitDecision
from stormcrm.service.auth import AuthContext
from stormcrm.service.authz import Role, require_owner_or_admin, require_roles
from stormcrm.service.runtime import get_runtime
from stormcrm.storage.statements import FetchById, Partition

logger = get_logger(__name__)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @classmethod
    def from_decision(cls, decision: RateLimitDecision) -> "RateLimitInfo":
        return cls(decision.limit, decision.remaining, decision.reset_seconds)

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def client_key(request: Request) -> str:
    """Key used for rate limiting and IP blocking.

    The first ``X-Forwarded-For`` hop is only honoured when proxy headers are
    trusted; otherwise any client could pick its own key.
    """

    if get_runtime().settings.trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def enforce_ip_block(request: Request) -> None:
    get_runtime().blocklist.check(client_key(request))


class RateLimit:
    """Count the request against one route class and expose the headers."""

    def __init__(self, route_class: RouteClass):
        self.route_class = RouteClass(route_class)

    async def __call__(self, request: Request, response: Response) -> RateLimitInfo:
        limiter = get_runtime().limiter(self.route_class)
        decision = limiter.hit(client_key(request))
        info = RateLimitInfo.from_decision(decision)
        info.apply_headers(response)
        return info


def release_rate_limit(request: Request, route_class: RouteClass) -> None:
    """Un-count the current request; for limiters that only count failures."""

    limiter = get_runtime().limiter(route_class)
    if limiter.skip_successful:
        limiter.release(client_key(request))


async def get_abuse_signals(request: Request) -> AbuseSignals:
    return AbuseSignals(client_key(request), get_runtime().blocklist)


async def get_current_user(
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    return get_runtime().auth.authenticate(authorization)


async def get_optional_user(
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    return get_runtime().auth.authenticate_optional(authorization)


class RoleGate:
    """Admit authenticated callers whose role is in the allow-list."""

    def __init__(self, *roles: Role | str):
        self.roles = tuple(Role(role) for role in roles)

    async def __call__(self, ctx: AuthContext = Depends(get_current_user)) -> AuthContext:
        return require_roles(ctx, self.roles)


class OwnerOrAdminGate:
    """Admit admins, or the identity named in ``owner_field`` of the addressed record."""

    def __init__(self, partition: Partition, owner_field: str, *, path_param: str = "id"):
        self.partition = partition
        self.owner_field = owner_field
        self.path_param = path_param

    async def __call__(
        self, request: Request, ctx: AuthContext = Depends(get_current_user)
    ) -> AuthContext:
        record_id = request.path_params.get(self.path_param)

        async def resolve_owner() -> Optional[str]:
            result = await get_runtime().db.query(FetchById(self.partition, record_id))
            if result.first is None:
                raise LookupError(f"{self.partition.value} {record_id} not found")
            owner = result.first.get(self.owner_field)
            return str(owner) if owner is not None else None

        return await require_owner_or_admin(ctx, resolve_owner)


__all__ = [
    "RateLimitInfo",
    "client_key",
    "enforce_ip_block",
    "RateLimit",
    "release_rate_limit",
    "get_abuse_signals",
    "get_current_user",
    "get_optional_user",
    "RoleGate",
    "OwnerOrAdminGate",
]
