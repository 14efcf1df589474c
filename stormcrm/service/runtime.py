from __future__ import annotations

import threading
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from stormcrm.config import RouteClass, get_settings, reset_settings_cache
from stormcrm.logging import get_logger
from stormcrm.service.abuse import IPBlocklist, SlidingWindowLimiter
from stormcrm.service.auth import AuthService
from stormcrm.service.credentials import CredentialCipher
from stormcrm.service.tokens import TokenService
from stormcrm.storage.factory import create_database
from stormcrm.storage.memory import DEMO_PASSWORD, MemoryDatabase

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a DSN with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            backend=self.settings.store_backend.value,
            database_url=_mask_url_password(self.settings.database_url),
            test_mode=self.settings.test_mode,
        )

        self.db = create_database(self.settings)
        self.tokens = TokenService(self.settings)
        self.auth = AuthService(self.db, self.tokens, self.settings)
        self.credentials = CredentialCipher(
            self.settings.api_key_encryption_key or self.settings.jwt_secret
        )

        self.limiters: Dict[RouteClass, SlidingWindowLimiter] = {}
        for route_class in RouteClass:
            window_seconds, max_requests = self.settings.rate_limit_for(route_class)
            self.limiters[route_class] = SlidingWindowLimiter(
                route_class,
                window_seconds,
                max_requests,
                skip_successful=route_class is RouteClass.AUTH,
            )
        self.blocklist = IPBlocklist(
            self.settings.ip_block_max_attempts,
            self.settings.ip_block_duration_seconds,
        )

        if isinstance(self.db, MemoryDatabase) and self.settings.seed_demo_data:
            self.db.seed_demo_data(self.auth.hash_password(DEMO_PASSWORD))

        logger.info(
            "runtime_initialized",
            backend=self.db.backend,
            rate_limits={
                rc.value: {"window_seconds": lim.window_seconds, "max_requests": lim.max_requests}
                for rc, lim in self.limiters.items()
            },
            ip_block_max_attempts=self.blocklist.max_attempts,
        )

    def limiter(self, route_class: RouteClass | str) -> SlidingWindowLimiter:
        return self.limiters[RouteClass(route_class)]

    async def startup(self) -> None:
        await self.db.open()

    async def shutdown(self) -> None:
        await self.db.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked check is the fast path, the
    locked one prevents two threads building separate runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
