from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from stormcrm.config import RouteClass
from stormcrm.logging import get_logger
from stormcrm.service.errors import IPBlockedError, RateLimitedError

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int
    count: int

    @property
    def retry_after_seconds(self) -> int:
        return self.reset_seconds


class SlidingWindowLimiter:
    """Per-client request counter over a fixed-length window.

    A client's window opens on its first request and is replaced by a fresh
    one once more than ``window_seconds`` have passed since it opened. Expired
    windows are swept from the map at most once per ``window_seconds``. All
    mutations of the shared map happen under one lock, so a check-and-increment
    is atomic even when handlers run on worker threads.
    """

    def __init__(
        self,
        route_class: RouteClass | str,
        window_seconds: int,
        max_requests: int,
        *,
        skip_successful: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if window_seconds <= 0 or max_requests <= 0:
            raise ValueError("window_seconds and max_requests must be positive")
        self.route_class = RouteClass(route_class)
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.skip_successful = skip_successful
        self._clock = clock
        # client_key -> (window_start, count)
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def _reset_in(self, window_start: float, now: float) -> int:
        return max(0, math.ceil(window_start + self.window_seconds - now))

    def _sweep_expired(self, now: float) -> None:
        # caller holds self._lock
        expired = [
            key for key, (start, _) in self._windows.items() if now - start > self.window_seconds
        ]
        for key in expired:
            del self._windows[key]
        self._last_sweep = now
        if expired:
            logger.debug(
                "rate_limit_windows_swept",
                route_class=self.route_class.value,
                removed=len(expired),
                remaining=len(self._windows),
            )

    def check_and_increment(self, client_key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep_expired(now)
            entry = self._windows.get(client_key)
            if entry is None or now - entry[0] > self.window_seconds:
                window_start, count = now, 1
            else:
                window_start, count = entry[0], entry[1] + 1
            self._windows[client_key] = (window_start, count)
        allowed = count <= self.max_requests
        decision = RateLimitDecision(
            allowed=allowed,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_seconds=self._reset_in(window_start, now),
            count=count,
        )
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                route_class=self.route_class.value,
                client_key=client_key,
                count=count,
                limit=self.max_requests,
            )
        return decision

    def hit(self, client_key: str) -> RateLimitDecision:
        """Count one request and raise :class:`RateLimitedError` past the ceiling."""

        decision = self.check_and_increment(client_key)
        if not decision.allowed:
            raise RateLimitedError(
                f"Too many {self.route_class.value} requests, please try again later",
                retry_after_seconds=decision.retry_after_seconds,
                limit=decision.limit,
            )
        return decision

    def release(self, client_key: str) -> None:
        """Give back one counted request in the current window.

        Used after a successful request on limiters that only count failures.
        """

        now = self._clock()
        with self._lock:
            entry = self._windows.get(client_key)
            if entry is None or now - entry[0] > self.window_seconds:
                return
            window_start, count = entry
            self._windows[client_key] = (window_start, max(0, count - 1))

    def tracked_clients(self) -> int:
        with self._lock:
            return len(self._windows)

    def current_count(self, client_key: str) -> int:
        now = self._clock()
        with self._lock:
            entry = self._windows.get(client_key)
        if entry is None or now - entry[0] > self.window_seconds:
            return 0
        return entry[1]


@dataclass
class _BlockRecord:
    failure_count: int = 0
    blocked_until: Optional[float] = None


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class IPBlocklist:
    """Counts failures per client key and blocks the key once they pile up.

    Reaching ``max_attempts`` failures blocks the key for ``block_seconds``.
    Nothing sweeps expired blocks; the record is purged the next time the key
    is looked at, after which the client starts again from zero.
    """

    def __init__(
        self,
        max_attempts: int = 10,
        block_seconds: int = 3600,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_attempts <= 0 or block_seconds <= 0:
            raise ValueError("max_attempts and block_seconds must be positive")
        self.max_attempts = max_attempts
        self.block_seconds = block_seconds
        self._clock = clock
        self._records: Dict[str, _BlockRecord] = {}
        self._lock = threading.Lock()

    def _live_record(self, client_key: str, now: float) -> Optional[_BlockRecord]:
        # caller holds self._lock
        record = self._records.get(client_key)
        if record is not None and record.blocked_until is not None and record.blocked_until <= now:
            self._records.pop(client_key, None)
            logger.info("ip_block_expired", client_key=client_key)
            return None
        return record

    def check(self, client_key: str) -> None:
        now = self._clock()
        with self._lock:
            record = self._live_record(client_key, now)
            blocked_until = record.blocked_until if record else None
        if blocked_until is not None:
            raise IPBlockedError(
                _iso(blocked_until),
                retry_after_seconds=math.ceil(blocked_until - now),
            )

    def record_failure(self, client_key: str) -> int:
        now = self._clock()
        with self._lock:
            record = self._live_record(client_key, now)
            if record is None:
                record = _BlockRecord()
                self._records[client_key] = record
            record.failure_count += 1
            newly_blocked = (
                record.failure_count >= self.max_attempts and record.blocked_until is None
            )
            if newly_blocked:
                record.blocked_until = now + self.block_seconds
            count = record.failure_count
            blocked_until = record.blocked_until
        if newly_blocked:
            logger.warning(
                "ip_blocked",
                client_key=client_key,
                failure_count=count,
                blocked_until=_iso(blocked_until),
            )
        return count

    def clear_failures(self, client_key: str) -> None:
        with self._lock:
            self._records.pop(client_key, None)

    def failure_count(self, client_key: str) -> int:
        now = self._clock()
        with self._lock:
            record = self._live_record(client_key, now)
            return record.failure_count if record else 0

    def blocked_until(self, client_key: str) -> Optional[datetime]:
        now = self._clock()
        with self._lock:
            record = self._live_record(client_key, now)
            if record is None or record.blocked_until is None:
                return None
            return datetime.fromtimestamp(record.blocked_until, tz=timezone.utc)


@dataclass(frozen=True)
class AbuseSignals:
    """Failure reporting bound to the current request's client key."""

    client_key: str
    blocklist: IPBlocklist

    def record_failure(self) -> int:
        return self.blocklist.record_failure(self.client_key)

    def clear_failures(self) -> None:
        self.blocklist.clear_failures(self.client_key)


__all__ = [
    "RateLimitDecision",
    "SlidingWindowLimiter",
    "IPBlocklist",
    "AbuseSignals",
]
