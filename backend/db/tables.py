"""Table gateway over reflected SQLAlchemy tables.

Storage steps address application tables by name. Tables are reflected
from the live database on first use and cached for the gateway's lifetime.
"""

import asyncio
from typing import Dict, List, Optional

from sqlalchemy import MetaData, Table, delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncEngine

from tasks.implementations.storage_task import Row, TableGateway


class SqlTableGateway(TableGateway):
    """TableGateway that executes Core statements on an async engine."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._metadata = MetaData()
        self._tables: Dict[str, Table] = {}
        self._lock = asyncio.Lock()

    async def _table(self, name: str) -> Table:
        table = self._tables.get(name)
        if table is not None:
            return table
        async with self._lock:
            if name not in self._tables:
                async with self.engine.connect() as conn:
                    self._tables[name] = await conn.run_sync(
                        lambda sync_conn: Table(name, self._metadata, autoload_with=sync_conn)
                    )
        return self._tables[name]

    @staticmethod
    def _conditions(table: Table, filters: Optional[Row]) -> list:
        # Unknown columns raise KeyError, which storage steps report as failures
        return [table.c[column] == value for column, value in (filters or {}).items()]

    async def select(self, table: str, filters: Optional[Row] = None) -> List[Row]:
        t = await self._table(table)
        stmt = select(t).where(*self._conditions(t, filters))
        async with self.engine.connect() as conn:
            result = await conn.execute(stmt)
            return [dict(row._mapping) for row in result]

    async def insert(self, table: str, rows: List[Row]) -> List[Row]:
        t = await self._table(table)
        stored = []
        async with self.engine.begin() as conn:
            for row in rows:
                result = await conn.execute(insert(t).values(**row).returning(*t.c))
                stored.append(dict(result.one()._mapping))
        return stored

    async def update(self, table: str, data: Row, filters: Optional[Row] = None) -> List[Row]:
        t = await self._table(table)
        stmt = update(t).where(*self._conditions(t, filters)).values(**data).returning(*t.c)
        async with self.engine.begin() as conn:
            result = await conn.execute(stmt)
            return [dict(row._mapping) for row in result]

    async def delete(self, table: str, filters: Optional[Row] = None) -> List[Row]:
        t = await self._table(table)
        stmt = delete(t).where(*self._conditions(t, filters)).returning(*t.c)
        async with self.engine.begin() as conn:
            result = await conn.execute(stmt)
            return [dict(row._mapping) for row in result]
