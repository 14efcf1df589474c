"""Contract and helpers shared by the Postgres and in-memory backends."""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

from stormcrm.storage.statements import Statement

T = TypeVar("T")

_BASE36 = string.digits + string.ascii_lowercase


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0

    @property
    def first(self) -> Optional[Dict[str, Any]]:
        return self.rows[0] if self.rows else None


class Database(Protocol):
    """Uniform query/transaction contract.

    ``query`` executes one statement shape. ``transaction`` hands ``work`` a
    handle with the same ``query`` method; every statement issued through the
    handle belongs to one unit that commits when ``work`` returns and rolls back
    when it raises (the exception is re-raised).
    """

    backend: str

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def ping(self) -> bool: ...

    async def query(self, statement: Statement) -> QueryResult: ...

    async def transaction(self, work: Callable[[Any], Awaitable[T]]) -> T: ...


def generate_id() -> str:
    """Return ``<epoch-ms>-<9 random base36 chars>``."""

    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"{int(time.time() * 1000)}-{suffix}"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


__all__ = ["QueryResult", "Database", "generate_id", "utcnow_iso"]
