"""Statement shapes understood by every storage backend.

Handlers describe what they want as one of these frozen dataclasses instead of
raw SQL text. The Postgres adapter compiles each shape to a parameterised
statement; the in-process emulator dispatches on the shape's type. Anything
that is not one of these classes is an unrecognised shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Union


class Partition(str, Enum):
    """Entity partitions; values double as Postgres table names."""

    USERS = "users"
    HAIL_EVENTS = "hail_events"
    LEADS = "leads"
    LEAD_NOTES = "lead_notes"
    CAMPAIGNS = "campaigns"
    CAMPAIGN_LEADS = "campaign_leads"
    SKIPTRACE_RESULTS = "skiptrace_results"
    API_KEYS = "api_keys"
    ACTIVITY_LOG = "activity_log"


@dataclass(frozen=True)
class Ping:
    """Liveness probe; returns one row with the server's current time."""


@dataclass(frozen=True)
class FetchById:
    partition: Partition
    id: str


@dataclass(frozen=True)
class FetchByUniqueField:
    partition: Partition
    field: str
    value: Any


@dataclass(frozen=True)
class InsertInto:
    """Insert one record; ``id``, ``created_at`` and ``updated_at`` are assigned by storage."""

    partition: Partition
    values: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UpdateById:
    """Partial update. ``id`` and ``created_at`` in ``changes`` are ignored."""

    partition: Partition
    id: str
    changes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeleteById:
    partition: Partition
    id: str


@dataclass(frozen=True)
class ListAll:
    partition: Partition
    order_by_created_desc: bool = True


@dataclass(frozen=True)
class ListByOwner:
    """Records whose ``owner_field`` equals ``owner_id``.

    With ``include_unowned`` records whose owner field is null are returned too
    (shared API keys, for instance).
    """

    partition: Partition
    owner_field: str
    owner_id: str
    include_unowned: bool = False


Statement = Union[
    Ping,
    FetchById,
    FetchByUniqueField,
    InsertInto,
    UpdateById,
    DeleteById,
    ListAll,
    ListByOwner,
]

IMMUTABLE_FIELDS = frozenset({"id", "created_at"})


__all__ = [
    "Partition",
    "Ping",
    "FetchById",
    "FetchByUniqueField",
    "InsertInto",
    "UpdateById",
    "DeleteById",
    "ListAll",
    "ListByOwner",
    "Statement",
    "IMMUTABLE_FIELDS",
]
