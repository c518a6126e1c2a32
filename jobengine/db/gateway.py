"""Table gateway: the narrow slice of the relational store the engine uses.

Two implementations share one interface:
  MemoryGateway:   dict-of-tables, for local development and tests
  SupabaseGateway: PostgREST tables through the service-role Supabase client

StoreGuard wraps either one so that store failures surface as
StoreUnavailable.

Filters are equality (``eq``) and membership (``in_``) only; anything richer
(time comparisons, null checks) is done by the caller on the returned rows.
"""

import asyncio
import copy
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from jobengine.jobs.errors import EngineError, StoreUnavailable


Row = Dict[str, Any]


class TableGateway(ABC):
    """Abstract row-level access to named tables."""

    @abstractmethod
    async def select(
        self,
        table: str,
        eq: Optional[Dict[str, Any]] = None,
        in_: Optional[Dict[str, List[Any]]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        ...

    @abstractmethod
    async def insert(self, table: str, row: Row) -> Row:
        """Insert a row (an ``id`` is generated when missing). Returns the stored row."""
        ...

    @abstractmethod
    async def update(
        self,
        table: str,
        values: Row,
        eq: Optional[Dict[str, Any]] = None,
        in_: Optional[Dict[str, List[Any]]] = None,
    ) -> List[Row]:
        """Update matching rows. Returns the updated rows."""
        ...

    @abstractmethod
    async def delete(
        self,
        table: str,
        eq: Optional[Dict[str, Any]] = None,
        in_: Optional[Dict[str, List[Any]]] = None,
    ) -> int:
        """Delete matching rows. Returns how many were removed."""
        ...

    async def get(self, table: str, row_id: str) -> Optional[Row]:
        rows = await self.select(table, eq={"id": row_id}, limit=1)
        return rows[0] if rows else None


class MemoryGateway(TableGateway):
    """In-process tables. Rows are deep-copied in and out like a real store."""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Row]] = {}

    def _table(self, name: str) -> Dict[str, Row]:
        return self._tables.setdefault(name, {})

    @staticmethod
    def _matches(row: Row, eq, in_) -> bool:
        for key, value in (eq or {}).items():
            if row.get(key) != value:
                return False
        for key, values in (in_ or {}).items():
            if row.get(key) not in values:
                return False
        return True

    async def select(self, table, eq=None, in_=None, order_by=None, limit=None):
        rows = [
            copy.deepcopy(r) for r in self._table(table).values()
            if self._matches(r, eq, in_)
        ]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by)))
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def insert(self, table, row):
        stored = copy.deepcopy(row)
        stored.setdefault("id", str(uuid.uuid4()))
        self._table(table)[stored["id"]] = stored
        return copy.deepcopy(stored)

    async def update(self, table, values, eq=None, in_=None):
        updated = []
        for row in self._table(table).values():
            if self._matches(row, eq, in_):
                row.update(copy.deepcopy(values))
                updated.append(copy.deepcopy(row))
        return updated

    async def delete(self, table, eq=None, in_=None):
        rows = self._table(table)
        doomed = [k for k, r in rows.items() if self._matches(r, eq, in_)]
        for key in doomed:
            del rows[key]
        return len(doomed)


class SupabaseGateway(TableGateway):
    """PostgREST-backed tables. The supabase client is synchronous, so each
    call runs in the default thread executor to keep the event loop free."""

    def __init__(self, client):
        self._client = client

    async def _run(self, fn):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except Exception as e:
            # postgrest APIError, httpx transport errors, bad credentials
            raise StoreUnavailable(f"Supabase request failed: {e}") from e

    @staticmethod
    def _filtered(query, eq, in_):
        for key, value in (eq or {}).items():
            query = query.eq(key, value)
        for key, values in (in_ or {}).items():
            query = query.in_(key, list(values))
        return query

    async def select(self, table, eq=None, in_=None, order_by=None, limit=None):
        def run():
            query = self._filtered(self._client.table(table).select("*"), eq, in_)
            if order_by:
                query = query.order(order_by)
            if limit is not None:
                query = query.limit(limit)
            return query.execute().data or []
        return await self._run(run)

    async def insert(self, table, row):
        payload = dict(row)
        payload.setdefault("id", str(uuid.uuid4()))

        def run():
            return self._client.table(table).insert(payload).execute().data
        data = await self._run(run)
        return data[0] if data else payload

    async def update(self, table, values, eq=None, in_=None):
        def run():
            query = self._filtered(self._client.table(table).update(values), eq, in_)
            return query.execute().data or []
        return await self._run(run)

    async def delete(self, table, eq=None, in_=None):
        def run():
            query = self._filtered(self._client.table(table).delete(), eq, in_)
            return query.execute().data or []
        return len(await self._run(run))


class StoreGuard(TableGateway):
    """Surfaces any driver or transport failure of the wrapped gateway as StoreUnavailable.

    Engine errors pass through untouched. The job service, the registry and
    the watchdog all hold a guarded gateway, so a dropped connection aborts
    an invocation instead of being taken for a handler bug.
    """

    def __init__(self, inner: TableGateway):
        self.inner = inner

    async def _call(self, action: str, table: str, pending):
        try:
            return await pending
        except EngineError:
            raise
        except Exception as e:
            raise StoreUnavailable(f"Could not {action} {table}: {e}") from e

    async def select(self, table, eq=None, in_=None, order_by=None, limit=None):
        return await self._call(
            "read", table,
            self.inner.select(table, eq=eq, in_=in_, order_by=order_by, limit=limit),
        )

    async def insert(self, table, row):
        return await self._call("insert into", table, self.inner.insert(table, row))

    async def update(self, table, values, eq=None, in_=None):
        return await self._call("update", table, self.inner.update(table, values, eq=eq, in_=in_))

    async def delete(self, table, eq=None, in_=None):
        return await self._call("delete from", table, self.inner.delete(table, eq=eq, in_=in_))


def guarded(gateway: TableGateway) -> TableGateway:
    """``gateway`` behind a StoreGuard, wrapping at most once."""
    return gateway if isinstance(gateway, StoreGuard) else StoreGuard(gateway)
