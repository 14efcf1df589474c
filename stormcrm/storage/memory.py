from __future__ import annotations

import copy
import threading
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from stormcrm.logging import get_logger
from stormcrm.storage.common import QueryResult, generate_id, utcnow_iso
from stormcrm.storage.errors import ConstraintViolation
from stormcrm.storage.statements import (
    IMMUTABLE_FIELDS,
    DeleteById,
    FetchById,
    FetchByUniqueField,
    InsertInto,
    ListAll,
    ListByOwner,
    Partition,
    Ping,
    UpdateById,
)

T = TypeVar("T")

# Case-insensitive unique columns per partition
_UNIQUE_FIELDS: Dict[Partition, tuple[str, ...]] = {
    Partition.USERS: ("email",),
}

DEMO_PASSWORD = "password123"


class MemoryDatabase:
    """Volatile in-process stand-in for Postgres.

    Records live in one ``dict[id, dict]`` per partition and vanish with the
    process. Statements are dispatched on their type; a statement this class
    has no handler for is logged and answered with an empty result.

    ``transaction`` runs the unit against this same object and provides no
    atomicity: statements that completed before an exception stay applied.
    """

    backend = "memory"

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.partitions: Dict[Partition, Dict[str, Dict[str, Any]]] = {
            partition: {} for partition in Partition
        }
        # RLock so handlers can call helpers that also take the lock
        self._data_lock = threading.RLock()
        self._handlers: Dict[type, Callable[[Any], QueryResult]] = {
            Ping: self._ping,
            FetchById: self._fetch_by_id,
            FetchByUniqueField: self._fetch_by_unique_field,
            InsertInto: self._insert,
            UpdateById: self._update,
            DeleteById: self._delete,
            ListAll: self._list_all,
            ListByOwner: self._list_by_owner,
        }

    async def open(self) -> None:
        self.logger.info("memory_database_opened")

    async def close(self) -> None:
        self.logger.info("memory_database_closed")

    async def ping(self) -> bool:
        result = await self.query(Ping())
        return result.row_count == 1

    async def query(self, statement: Any) -> QueryResult:
        handler = self._handlers.get(type(statement))
        if handler is None:
            self.logger.warning(
                "unrecognized_query_shape", shape=type(statement).__name__
            )
            return QueryResult()
        with self._data_lock:
            return handler(statement)

    async def transaction(self, work: Callable[[Any], Awaitable[T]]) -> T:
        return await work(self)

    # -- statement handlers -------------------------------------------------

    def _ping(self, statement: Ping) -> QueryResult:
        return QueryResult(rows=[{"now": utcnow_iso()}], row_count=1)

    def _fetch_by_id(self, statement: FetchById) -> QueryResult:
        row = self.partitions[statement.partition].get(statement.id)
        return self._result([row] if row is not None else [])

    def _fetch_by_unique_field(self, statement: FetchByUniqueField) -> QueryResult:
        table = self.partitions[statement.partition]
        for row in table.values():
            if self._values_match(statement.partition, statement.field, row.get(statement.field), statement.value):
                return self._result([row])
        return self._result([])

    def _insert(self, statement: InsertInto) -> QueryResult:
        table = self.partitions[statement.partition]
        values = {k: v for k, v in statement.values.items() if k not in IMMUTABLE_FIELDS}
        self._check_unique(statement.partition, values, exclude_id=None)
        now = utcnow_iso()
        row_id = generate_id()
        while row_id in table:
            row_id = generate_id()
        row = {**copy.deepcopy(values), "id": row_id, "created_at": now}
        row["updated_at"] = now
        table[row_id] = row
        return self._result([row])

    def _update(self, statement: UpdateById) -> QueryResult:
        table = self.partitions[statement.partition]
        row = table.get(statement.id)
        if row is None:
            return self._result([])
        changes = {
            k: v
            for k, v in statement.changes.items()
            if k not in IMMUTABLE_FIELDS and k != "updated_at"
        }
        self._check_unique(statement.partition, changes, exclude_id=statement.id)
        row.update(copy.deepcopy(changes))
        row["updated_at"] = utcnow_iso()
        return self._result([row])

    def _delete(self, statement: DeleteById) -> QueryResult:
        removed = self.partitions[statement.partition].pop(statement.id, None)
        return QueryResult(rows=[], row_count=1 if removed is not None else 0)

    def _list_all(self, statement: ListAll) -> QueryResult:
        rows = list(self.partitions[statement.partition].values())
        if statement.order_by_created_desc:
            rows = self._newest_first(rows)
        return self._result(rows)

    def _list_by_owner(self, statement: ListByOwner) -> QueryResult:
        rows = []
        for row in self.partitions[statement.partition].values():
            owner = row.get(statement.owner_field)
            if owner == statement.owner_id or (statement.include_unowned and owner is None):
                rows.append(row)
        return self._result(self._newest_first(rows))

    # -- helpers ------------------------------------------------------------

    @staticmethod
    def _newest_first(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return sorted(rows, key=lambda r: r.get("created_at") or "", reverse=True)

    @staticmethod
    def _result(rows: List[Dict[str, Any]]) -> QueryResult:
        copies = [copy.deepcopy(row) for row in rows]
        return QueryResult(rows=copies, row_count=len(copies))

    @staticmethod
    def _values_match(partition: Partition, field: str, stored: Any, wanted: Any) -> bool:
        if field in _UNIQUE_FIELDS.get(partition, ()) and isinstance(stored, str) and isinstance(wanted, str):
            return stored.lower() == wanted.lower()
        return stored == wanted

    def _check_unique(
        self, partition: Partition, values: Dict[str, Any], *, exclude_id: Optional[str]
    ) -> None:
        for field in _UNIQUE_FIELDS.get(partition, ()):
            if values.get(field) is None:
                continue
            for row_id, row in self.partitions[partition].items():
                if row_id == exclude_id:
                    continue
                if self._values_match(partition, field, row.get(field), values[field]):
                    raise ConstraintViolation(
                        f"{partition.value}.{field} already exists",
                        {"partition": partition.value, "field": field},
                    )

    # -- demo data ----------------------------------------------------------

    def seed_demo_data(self, password_hash: str) -> Dict[str, str]:
        """Load the demo accounts, hail events and leads.

        ``password_hash`` is the stored hash of :data:`DEMO_PASSWORD`, shared by
        all three accounts. Returns the seeded user ids keyed by role.
        """

        with self._data_lock:
            user_ids: Dict[str, str] = {}
            for email, first, last, role, phone in (
                ("admin@example.com", "Admin", "User", "admin", "555-0001"),
                ("manager@example.com", "Manager", "User", "manager", "555-0002"),
                ("sales@example.com", "Sales", "Rep", "sales_rep", "555-0003"),
            ):
                row = self._insert(
                    InsertInto(
                        Partition.USERS,
                        {
                            "email": email,
                            "password_hash": password_hash,
                            "first_name": first,
                            "last_name": last,
                            "role": role,
                            "phone": phone,
                            "is_active": True,
                            "last_login_at": None,
                        },
                    )
                ).first
                user_ids[role] = row["id"]

            hail_ids = []
            for event in (
                {"event_date": "2023-06-15", "county": "Dane", "location": "Madison", "lat": 43.0731, "lng": -89.4012, "hail_size": 1.75, "wind_speed": 65, "severity": "severe", "damages_reported": True, "injuries": 2},
                {"event_date": "2023-07-22", "county": "Brown", "location": "Green Bay", "lat": 44.5133, "lng": -88.0133, "hail_size": 2.25, "wind_speed": 70, "severity": "extreme", "damages_reported": True, "injuries": 5},
                {"event_date": "2024-05-08", "county": "Sauk", "location": "Baraboo", "lat": 43.4711, "lng": -89.7445, "hail_size": 1.50, "wind_speed": 55, "severity": "moderate", "damages_reported": True, "injuries": 0},
            ):
                row = self._insert(
                    InsertInto(
                        Partition.HAIL_EVENTS,
                        {**event, "noaa_event_id": None, "source": "SEED"},
                    )
                ).first
                hail_ids.append(row["id"])

            for lead in (
                {"name": "John Smith", "email": "john.smith@example.com", "phone": "608-555-0101", "property_address": "123 Main St", "property_city": "Madison", "property_state": "WI", "property_zip": "53703", "hail_event_id": hail_ids[0], "stage": "qualified", "score": 85, "tags": ["hot-lead", "homeowner"], "assigned_to": user_ids["sales_rep"]},
                {"name": "Sarah Johnson", "email": "sarah.j@example.com", "phone": "920-555-0202", "property_address": "456 Oak Ave", "property_city": "Green Bay", "property_state": "WI", "property_zip": "54301", "hail_event_id": hail_ids[1], "stage": "proposal", "score": 92, "tags": ["hot-lead", "insurance-approved"], "assigned_to": user_ids["sales_rep"]},
                {"name": "Mike Williams", "email": "mike.w@example.com", "phone": "920-555-0303", "property_address": "789 Elm Street", "property_city": "Appleton", "property_state": "WI", "property_zip": "54911", "hail_event_id": hail_ids[2], "stage": "new", "score": 72, "tags": ["homeowner"], "assigned_to": user_ids["admin"]},
            ):
                self._insert(InsertInto(Partition.LEADS, {**lead, "notes": None}))

        self.logger.info(
            "memory_database_seeded",
            users=len(self.partitions[Partition.USERS]),
            hail_events=len(self.partitions[Partition.HAIL_EVENTS]),
            leads=len(self.partitions[Partition.LEADS]),
        )
        return user_ids


__all__ = ["MemoryDatabase", "DEMO_PASSWORD"]
