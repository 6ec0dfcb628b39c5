from __future__ import annotations
import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from contractops.errors import NotFoundError, PersistenceError

log = logging.getLogger("contractops.persistence")

Row = Dict[str, Any]

class PersistenceGateway(ABC):
    """Record store used by the core: equality filters, ordering, join tables."""

    @abstractmethod
    async def get(self, table: str, record_id: Any) -> Optional[Row]: ...

    @abstractmethod
    async def insert(self, table: str, row: Row) -> Row: ...

    @abstractmethod
    async def insert_many(self, table: str, rows: List[Row]) -> List[Row]: ...

    @abstractmethod
    async def update(self, table: str, record_id: Any, changes: Row) -> Row: ...

    @abstractmethod
    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Row]: ...

    @abstractmethod
    async def delete_where(self, table: str, filters: Dict[str, Any]) -> int: ...

@dataclass(frozen=True)
class Relation:
    join_table: str
    source_key: str
    target_key: str
    target_table: str
    order_key: Optional[str] = None

CONTRACT_PARTS = Relation("contract_contractpart", "contract_id", "contractpart_id", "contractpart", order_key="order_index")
CONTRACT_PRODUCTS = Relation("contract_product", "contract_id", "product_id", "product")
CONTRACT_MILESTONES = Relation("contract_milestone", "contract_id", "milestone_id", "milestone")
COMPANY_CONTACTS = Relation("company_contact", "company_id", "contact_id", "contact")

async def fetch_related(gateway: PersistenceGateway, relation: Relation, source_id: Any) -> List[tuple[Row, Optional[Row]]]:
    """Join rows for ``source_id`` paired with the target record they point at."""
    links = await gateway.select(relation.join_table, {relation.source_key: source_id}, order_by=relation.order_key)
    out = []
    for link in links:
        target = await gateway.get(relation.target_table, link.get(relation.target_key))
        out.append((link, target))
    return out

async def link(gateway: PersistenceGateway, relation: Relation, source_id: Any, target_ids: Iterable[Any], **extra: Any) -> List[Row]:
    rows = [{relation.source_key: source_id, relation.target_key: tid, **extra} for tid in target_ids]
    if not rows:
        return []
    return await gateway.insert_many(relation.join_table, rows)

async def unlink(gateway: PersistenceGateway, relation: Relation, source_id: Any) -> int:
    return await gateway.delete_where(relation.join_table, {relation.source_key: source_id})

def _sort_key(order_by: str):
    def key(row: Row):
        v = row.get(order_by)
        return (v is None, v if v is not None else 0)
    return key

class InMemoryGateway(PersistenceGateway):
    def __init__(self, seed: Optional[Dict[str, List[Row]]] = None):
        self._tables: Dict[str, Dict[Any, Row]] = {}
        self._next_id: Dict[str, int] = {}
        self._lock = asyncio.Lock()
        for table, rows in (seed or {}).items():
            for row in rows:
                self._put(table, dict(row))

    def _put(self, table: str, row: Row) -> Row:
        rows = self._tables.setdefault(table, {})
        if row.get("id") is None:
            row["id"] = self._next_id.get(table, 1)
        if row["id"] in rows:
            raise PersistenceError(f"Duplicate id {row['id']} in {table}")
        rows[row["id"]] = row
        if isinstance(row["id"], int):
            self._next_id[table] = max(self._next_id.get(table, 1), row["id"] + 1)
        return row

    def rows(self, table: str) -> List[Row]:
        return [copy.deepcopy(r) for r in self._tables.get(table, {}).values()]

    async def get(self, table: str, record_id: Any) -> Optional[Row]:
        row = self._tables.get(table, {}).get(record_id)
        return copy.deepcopy(row) if row is not None else None

    async def insert(self, table: str, row: Row) -> Row:
        async with self._lock:
            return copy.deepcopy(self._put(table, copy.deepcopy(row)))

    async def insert_many(self, table: str, rows: List[Row]) -> List[Row]:
        async with self._lock:
            return [copy.deepcopy(self._put(table, copy.deepcopy(r))) for r in rows]

    async def update(self, table: str, record_id: Any, changes: Row) -> Row:
        async with self._lock:
            row = self._tables.get(table, {}).get(record_id)
            if row is None:
                raise NotFoundError(f"{table} {record_id} not found")
            row.update(copy.deepcopy(changes))
            return copy.deepcopy(row)

    async def select(self, table, filters=None, order_by=None, limit=None):
        rows = [r for r in self._tables.get(table, {}).values()
                if all(r.get(k) == v for k, v in (filters or {}).items())]
        if order_by:
            rows = sorted(rows, key=_sort_key(order_by))
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(r) for r in rows]

    async def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        async with self._lock:
            rows = self._tables.get(table, {})
            doomed = [k for k, r in rows.items() if all(r.get(f) == v for f, v in filters.items())]
            for k in doomed:
                del rows[k]
            return len(doomed)
