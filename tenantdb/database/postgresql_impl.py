"""
PostgreSQL adapter.

Clients are asyncpg connection pools. Row-level isolation is provided by
TenantScopedPool, which stamps the tenant column on inserts and filters it
on every read, update and delete. Each statement runs in a transaction with
``app.current_tenant_id`` set, so row-level-security policies keyed on
``current_setting('app.current_tenant_id')`` apply as well.
"""

from typing import Any, Dict, List, Optional, Sequence, Set, Tuple
import logging

import asyncpg

from .base import (
    AdapterType,
    BaseAdapter,
    ConfigurationError,
    ConnectionError,
    DatabaseConfig,
    DatabaseError,
    QueryError,
    TenantAlreadyExistsError,
    ValidationError,
    quote_identifier,
    validate_identifier,
)

logger = logging.getLogger(__name__)


SET_TENANT_SQL = "SELECT set_config('app.current_tenant_id', $1, true)"

TENANT_TABLES_SQL = """
    SELECT c.table_schema, c.table_name
    FROM information_schema.columns c
    JOIN information_schema.tables t
      ON t.table_schema = c.table_schema AND t.table_name = c.table_name
    WHERE c.column_name = $1
      AND t.table_type = 'BASE TABLE'
      AND c.table_schema NOT IN ('pg_catalog', 'information_schema')
    ORDER BY c.table_schema, c.table_name
"""

COMPARISON_OPERATORS = {"=", "!=", "<>", "<", "<=", ">", ">=", "LIKE", "ILIKE"}


def _affected_rows(status: str) -> int:
    """Parse the row count from a command status such as ``DELETE 3``."""
    if not status:
        return 0
    last = status.split()[-1]
    return int(last) if last.isdigit() else 0


def _qualified_table(schema: str, table: str) -> str:
    parts = (schema, table)
    return ".".join('"' + part.replace('"', '""') + '"' for part in parts)


class TenantScopedPool:
    """
    Tenant-confined view over a shared asyncpg pool.

    The wrapper never closes the underlying pool; close() only retires the
    wrapper itself.
    """

    def __init__(self, pool: Any, tenant_id: str, tenant_field: str = "tenant_id"):
        self._pool = pool
        self.tenant_id = tenant_id
        self.tenant_field = tenant_field
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise ConnectionError(
                f"Connection for tenant '{self.tenant_id}' has been closed",
                tenant_id=self.tenant_id
            )

    def _table(self, table: str) -> str:
        return quote_identifier(validate_identifier(table, "table name"))

    def _build_where_clause(
        self, where: Optional[Dict[str, Any]], start: int = 1
    ) -> Tuple[str, List[Any]]:
        """Build a WHERE clause whose first condition is always the tenant filter."""
        clauses = [f"{quote_identifier(self.tenant_field)} = ${start}"]
        values: List[Any] = [self.tenant_id]
        index = start + 1

        for column, value in (where or {}).items():
            # The tenant condition above is authoritative
            if column == self.tenant_field:
                continue
            quoted = quote_identifier(validate_identifier(column, "column name"))

            if isinstance(value, dict):
                # Operator filters like {">=": 10, "IN": [1, 2]}
                for operator, operand in value.items():
                    op = operator.upper()
                    if op in COMPARISON_OPERATORS:
                        clauses.append(f"{quoted} {op} ${index}")
                        values.append(operand)
                        index += 1
                    elif op == "IN":
                        clauses.append(f"{quoted} = ANY(${index})")
                        values.append(list(operand))
                        index += 1
                    else:
                        raise ValidationError(f"Unsupported filter operator '{operator}'")
            elif value is None:
                clauses.append(f"{quoted} IS NULL")
            else:
                clauses.append(f"{quoted} = ${index}")
                values.append(value)
                index += 1

        return " AND ".join(clauses), values

    async def _run(self, method: str, query: str, *args: Any) -> Any:
        self._ensure_open()
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(SET_TENANT_SQL, self.tenant_id)
                    return await getattr(conn, method)(query, *args)
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(f"Query failed for tenant '{self.tenant_id}': {e}")
            raise QueryError(
                f"Query failed for tenant '{self.tenant_id}': {e}",
                original_error=e,
                tenant_id=self.tenant_id
            ) from e

    async def insert(self, table: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert one row stamped with the tenant id.

        Returns:
            The inserted row as a dictionary
        """
        row = dict(data)
        row[self.tenant_field] = self.tenant_id
        columns = [quote_identifier(validate_identifier(c, "column name")) for c in row]
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))

        query = (
            f"INSERT INTO {self._table(table)} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) RETURNING *"
        )
        record = await self._run("fetchrow", query, *row.values())
        return dict(record) if record is not None else {}

    async def insert_many(self, table: str, rows: Sequence[Dict[str, Any]]) -> int:
        """Insert rows sharing the same columns; returns the number inserted."""
        if not rows:
            return 0

        names = [name for name in rows[0] if name != self.tenant_field]
        for row in rows:
            if set(row) - {self.tenant_field} != set(names):
                raise ValidationError("All rows passed to insert_many must have the same columns")

        names.append(self.tenant_field)
        columns = [quote_identifier(validate_identifier(c, "column name")) for c in names]
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        query = f"INSERT INTO {self._table(table)} ({', '.join(columns)}) VALUES ({placeholders})"

        args = [
            tuple(row[name] for name in names[:-1]) + (self.tenant_id,)
            for row in rows
        ]
        await self._run("executemany", query, args)
        return len(rows)

    async def find(
        self,
        table: str,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Select the tenant's rows.

        Args:
            table: Table name, optionally schema-qualified
            where: Column filters; values may be scalars, None or operator dicts
            order_by: Column name, prefix with '-' for descending order
            limit: Maximum number of rows
            offset: Number of rows to skip
        """
        clause, values = self._build_where_clause(where)
        query = f"SELECT * FROM {self._table(table)} WHERE {clause}"

        if order_by:
            direction = "DESC" if order_by.startswith("-") else "ASC"
            column = validate_identifier(order_by.lstrip("-"), "column name")
            query += f" ORDER BY {quote_identifier(column)} {direction}"
        if limit is not None:
            values.append(int(limit))
            query += f" LIMIT ${len(values)}"
        if offset is not None:
            values.append(int(offset))
            query += f" OFFSET ${len(values)}"

        records = await self._run("fetch", query, *values)
        return [dict(record) for record in records]

    async def find_one(self, table: str, where: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        rows = await self.find(table, where, limit=1)
        return rows[0] if rows else None

    async def update(
        self, table: str, values: Dict[str, Any], where: Optional[Dict[str, Any]] = None
    ) -> int:
        """Update the tenant's rows; the tenant column itself cannot be reassigned."""
        changes = {k: v for k, v in values.items() if k != self.tenant_field}
        if not changes:
            raise ValidationError("No columns to update")

        assignments = []
        args: List[Any] = []
        for index, (column, value) in enumerate(changes.items(), start=1):
            assignments.append(f"{quote_identifier(validate_identifier(column, 'column name'))} = ${index}")
            args.append(value)

        clause, where_values = self._build_where_clause(where, start=len(args) + 1)
        query = f"UPDATE {self._table(table)} SET {', '.join(assignments)} WHERE {clause}"
        status = await self._run("execute", query, *args, *where_values)
        return _affected_rows(status)

    async def delete(self, table: str, where: Optional[Dict[str, Any]] = None) -> int:
        clause, values = self._build_where_clause(where)
        status = await self._run("execute", f"DELETE FROM {self._table(table)} WHERE {clause}", *values)
        return _affected_rows(status)

    async def count(self, table: str, where: Optional[Dict[str, Any]] = None) -> int:
        clause, values = self._build_where_clause(where)
        result = await self._run("fetchval", f"SELECT COUNT(*) FROM {self._table(table)} WHERE {clause}", *values)
        return int(result or 0)

    # Raw statements run with the tenant setting applied but are not rewritten.

    async def fetch(self, query: str, *args: Any) -> List[Any]:
        return await self._run("fetch", query, *args)

    async def fetchrow(self, query: str, *args: Any) -> Any:
        return await self._run("fetchrow", query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        return await self._run("fetchval", query, *args)

    async def execute(self, query: str, *args: Any) -> str:
        return await self._run("execute", query, *args)


class PostgreSQLAdapter(BaseAdapter):
    """
    Relational adapter backed by asyncpg pools.

    Supports:
    - One pool per logical database target
    - CREATE/DROP DATABASE for database-per-tenant isolation
    - Tenant column discovery through information_schema for row isolation
    """

    adapter_type = AdapterType.RELATIONAL
    provider_schemes = {
        "postgres": "postgresql",
        "postgresql": "postgresql",
        "postgresql+asyncpg": "postgresql",
    }
    system_database = "postgres"
    system_databases = ("postgres", "template0", "template1")

    def __init__(self, config: DatabaseConfig):
        super().__init__(config)
        try:
            validate_identifier(config.tenant_field, "tenant column")
        except ValidationError as e:
            raise ConfigurationError(str(e), original_error=e) from e

    def _pool_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "min_size": 1,
            "max_size": 10,
            "command_timeout": 60,
            "server_settings": {"application_name": "tenantdb"},
        }
        options.update(self.config.options)
        return options

    async def _open(self, url: str) -> Any:
        # asyncpg only understands the plain postgres schemes
        dsn = url.replace("postgresql+asyncpg://", "postgresql://", 1)
        try:
            pool = await asyncpg.create_pool(dsn, **self._pool_options())
        except ValueError as e:
            raise ConfigurationError(f"Invalid PostgreSQL connection URL: {e}", original_error=e) from e

        try:
            await self._test_connection(pool)
        except Exception:
            await pool.close()
            raise
        return pool

    async def _test_connection(self, pool: Any) -> None:
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")

    async def close_client(self, client: Any) -> None:
        await client.close()

    async def ping(self, client: Any) -> None:
        await client.fetchval("SELECT 1")

    async def execute_query(self, query: Any, *params: Any) -> Any:
        pool = await self.connect()
        try:
            return await pool.fetch(query, *params)
        except asyncpg.PostgresError as e:
            raise QueryError(f"Query failed: {e}", original_error=e) from e

    async def _create_database(self, name: str) -> None:
        pool = await self.connect()
        try:
            await pool.execute(f"CREATE DATABASE {quote_identifier(name)}")
        except asyncpg.exceptions.DuplicateDatabaseError as e:
            raise TenantAlreadyExistsError(f"Database '{name}' already exists", original_error=e) from e
        except asyncpg.PostgresError as e:
            raise QueryError(f"Failed to create database '{name}': {e}", original_error=e) from e

    async def _drop_database(self, name: str) -> None:
        pool = await self.connect()
        try:
            # DROP DATABASE fails while other sessions are attached
            await pool.execute(
                "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                "WHERE datname = $1 AND pid <> pg_backend_pid()",
                name
            )
            await pool.execute(f"DROP DATABASE IF EXISTS {quote_identifier(name)}")
        except asyncpg.PostgresError as e:
            raise QueryError(f"Failed to drop database '{name}': {e}", original_error=e) from e

    async def list_databases(self) -> List[str]:
        pool = await self.connect()
        try:
            rows = await pool.fetch(
                "SELECT datname FROM pg_database WHERE datistemplate = false ORDER BY datname"
            )
        except asyncpg.PostgresError as e:
            raise QueryError(f"Failed to list databases: {e}", original_error=e) from e
        return [row["datname"] for row in rows if row["datname"] not in self.system_databases]

    def apply_tenant_middleware(self, client: Any, tenant_id: str) -> TenantScopedPool:
        return TenantScopedPool(client, tenant_id, self.tenant_field)

    async def _tenant_tables(self, pool: Any) -> List[str]:
        rows = await pool.fetch(TENANT_TABLES_SQL, self.tenant_field)
        return [_qualified_table(row["table_schema"], row["table_name"]) for row in rows]

    async def tenant_tables(self) -> List[str]:
        """Qualified names of every table carrying the tenant column."""
        pool = await self.connect()
        return await self._tenant_tables(pool)

    async def distinct_tenants(self) -> Set[str]:
        pool = await self.connect()
        column = quote_identifier(self.tenant_field)
        tenants: Set[str] = set()
        try:
            for table in await self._tenant_tables(pool):
                rows = await pool.fetch(
                    f"SELECT DISTINCT {column} AS tenant FROM {table} WHERE {column} IS NOT NULL"
                )
                tenants.update(str(row["tenant"]) for row in rows)
        except asyncpg.PostgresError as e:
            raise QueryError(f"Failed to scan tenant ids: {e}", original_error=e) from e
        return tenants

    async def tenant_has_data(self, tenant_id: str) -> bool:
        pool = await self.connect()
        column = quote_identifier(self.tenant_field)
        try:
            for table in await self._tenant_tables(pool):
                found = await pool.fetchval(
                    f"SELECT EXISTS (SELECT 1 FROM {table} WHERE {column} = $1)", tenant_id
                )
                if found:
                    return True
        except asyncpg.PostgresError as e:
            raise QueryError(f"Failed to look up tenant data: {e}", original_error=e, tenant_id=tenant_id) from e
        return False

    async def purge_tenant(self, tenant_id: str) -> int:
        pool = await self.connect()
        column = quote_identifier(self.tenant_field)
        removed = 0
        try:
            tables = await self._tenant_tables(pool)
            async with pool.acquire() as conn:
                async with conn.transaction():
                    for table in tables:
                        status = await conn.execute(f"DELETE FROM {table} WHERE {column} = $1", tenant_id)
                        removed += _affected_rows(status)
        except asyncpg.PostgresError as e:
            raise QueryError(f"Failed to purge tenant data: {e}", original_error=e, tenant_id=tenant_id) from e

        self.logger.info(f"Purged {removed} rows for tenant '{tenant_id}' from {len(tables)} tables")
        return removed
