"""Storage step executors and the table gateway they write through.

- database:       select / insert / update / delete with equality filters
- storage_insert: insert one row and return it
- storage_update: update rows matching ``match`` and return them

Executors never talk to a database directly; they use a TableGateway.
InMemoryTableGateway serves tests and development, db.tables.SqlTableGateway
serves SQLAlchemy-backed deployments.
"""

import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog

from core.exceptions import ExecutorError
from tasks.base_task import BaseStepExecutor, StepContext

logger = structlog.get_logger(__name__)

Row = Dict[str, Any]

DATABASE_OPERATIONS = ("select", "insert", "update", "delete")


class TableGateway(ABC):
    """Row-level access to named tables."""

    @abstractmethod
    async def select(self, table: str, filters: Optional[Row] = None) -> List[Row]:
        ...

    @abstractmethod
    async def insert(self, table: str, rows: List[Row]) -> List[Row]:
        """Insert rows and return them as stored (including generated keys)."""
        ...

    @abstractmethod
    async def update(self, table: str, data: Row, filters: Optional[Row] = None) -> List[Row]:
        """Update matching rows and return them after the update."""
        ...

    @abstractmethod
    async def delete(self, table: str, filters: Optional[Row] = None) -> List[Row]:
        """Delete matching rows and return what was removed."""
        ...


def _matches(row: Row, filters: Optional[Row]) -> bool:
    return all(row.get(col) == val for col, val in (filters or {}).items())


class InMemoryTableGateway(TableGateway):
    """Tables as lists of dicts. Rows without an ``id`` get a UUID."""

    def __init__(self, tables: Optional[Dict[str, List[Row]]] = None):
        self.tables: Dict[str, List[Row]] = {
            name: [dict(r) for r in rows] for name, rows in (tables or {}).items()
        }

    async def select(self, table: str, filters: Optional[Row] = None) -> List[Row]:
        return [copy.deepcopy(r) for r in self.tables.get(table, []) if _matches(r, filters)]

    async def insert(self, table: str, rows: List[Row]) -> List[Row]:
        stored = []
        for row in rows:
            record = {"id": str(uuid4()), **copy.deepcopy(row)}
            self.tables.setdefault(table, []).append(record)
            stored.append(copy.deepcopy(record))
        return stored

    async def update(self, table: str, data: Row, filters: Optional[Row] = None) -> List[Row]:
        updated = []
        for row in self.tables.get(table, []):
            if _matches(row, filters):
                row.update(copy.deepcopy(data))
                updated.append(copy.deepcopy(row))
        return updated

    async def delete(self, table: str, filters: Optional[Row] = None) -> List[Row]:
        rows = self.tables.get(table, [])
        removed = [r for r in rows if _matches(r, filters)]
        self.tables[table] = [r for r in rows if not _matches(r, filters)]
        return removed


class StorageStepExecutor(BaseStepExecutor):
    """Shared plumbing for executors backed by a TableGateway."""

    def __init__(self, gateway: TableGateway):
        self.gateway = gateway

    @staticmethod
    def _require_table(config: Dict[str, Any]) -> str:
        table = config.get("table")
        if not table:
            raise ExecutorError("Missing required config: table")
        return table


class DatabaseExecutor(StorageStepExecutor):
    """Run a CRUD operation on a table.

    Config:
        table: Table name (required)
        operation: select | insert | update | delete (required)
        data: Row (or list of rows) to insert, or column values to update
        filters: Equality filters {column: value}
    """

    step_type = "database"
    display_name = "Database"
    description = "Select, insert, update or delete rows"

    async def execute(self, config: Dict[str, Any], context: StepContext) -> Any:
        table = self._require_table(config)
        operation = config.get("operation")
        if operation not in DATABASE_OPERATIONS:
            raise ExecutorError(f"Unknown database operation: {operation}")

        data = config.get("data") or {}
        filters = config.get("filters") or None
        try:
            if operation == "select":
                return await self.gateway.select(table, filters)
            if operation == "insert":
                return await self.gateway.insert(table, data if isinstance(data, list) else [data])
            if operation == "update":
                return await self.gateway.update(table, data, filters)
            return await self.gateway.delete(table, filters)
        except ExecutorError:
            raise
        except Exception as e:
            raise ExecutorError(f"Database {operation} on {table} failed: {e}") from e

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["table", "operation"],
            "properties": {
                "table": {"type": "string"},
                "operation": {"type": "string", "enum": list(DATABASE_OPERATIONS)},
                "data": {"description": "Row, list of rows, or column values"},
                "filters": {"type": "object", "description": "Equality filters"},
            },
        }


class StorageInsertExecutor(StorageStepExecutor):
    """Insert one row and return it as stored."""

    step_type = "storage_insert"
    display_name = "Insert Row"
    description = "Insert a row into a table"

    async def execute(self, config: Dict[str, Any], context: StepContext) -> Any:
        table = self._require_table(config)
        data = config.get("data")
        if not isinstance(data, dict):
            raise ExecutorError("storage_insert needs a 'data' object")
        try:
            rows = await self.gateway.insert(table, [data])
        except Exception as e:
            raise ExecutorError(f"Insert into {table} failed: {e}") from e
        return rows[0] if rows else None

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["table", "data"],
            "properties": {
                "table": {"type": "string"},
                "data": {"type": "object"},
            },
        }


class StorageUpdateExecutor(StorageStepExecutor):
    """Update rows matching ``match`` and return them."""

    step_type = "storage_update"
    display_name = "Update Rows"
    description = "Update rows in a table"

    async def execute(self, config: Dict[str, Any], context: StepContext) -> Any:
        table = self._require_table(config)
        data = config.get("data")
        match = config.get("match")
        if not isinstance(data, dict) or not data:
            raise ExecutorError("storage_update needs a non-empty 'data' object")
        if not isinstance(match, dict) or not match:
            # An empty match would update every row
            raise ExecutorError("storage_update needs a non-empty 'match' object")
        try:
            return await self.gateway.update(table, data, match)
        except Exception as e:
            raise ExecutorError(f"Update {table} failed: {e}") from e

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["table", "data", "match"],
            "properties": {
                "table": {"type": "string"},
                "data": {"type": "object"},
                "match": {"type": "object", "description": "Equality filters"},
            },
        }
