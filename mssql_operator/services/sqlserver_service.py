"""
SQL Server Service - executes existence, metadata and DDL operations against a
remote SQL Server.

Every operation opens its own connection and closes it before returning, on
success and on failure alike. No connection is kept on the provider, so one
provider can serve concurrent calls.
"""
import asyncio
from typing import Any, Callable, List, Optional, TypeVar

import pyodbc
from tenacity import (
    AsyncRetrying,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from mssql_operator.config.logging import get_logger
from mssql_operator.config.settings import settings
from mssql_operator.exceptions import (
    DuplicateDatabaseError,
    PartialApplyError,
    SQLServerError,
)
from mssql_operator.models.sqlserver import (
    DatabaseParams,
    DriftReport,
    ExternalDatabaseConfig,
    ServerConnection,
)
from mssql_operator.services import metrics
from mssql_operator.services.external_state import ExternalStateProvider
from mssql_operator.services.statements import (
    build_alter_statements,
    build_create_statement,
    build_drop_statement,
)

logger = get_logger(__name__)

T = TypeVar("T")

# SQL Server error numbers
ERR_DATABASE_EXISTS = "1801"
ERR_DATABASE_MISSING = "3701"

_IDENTIFIER_BY_NAME_SQL = (
    "SELECT CAST(drs.recovery_fork_guid AS char(36)) "
    "FROM sys.database_recovery_status drs "
    "JOIN sys.databases dbs ON drs.database_id = dbs.database_id "
    "WHERE dbs.[name] = ?"
)

_NAME_BY_IDENTIFIER_SQL = (
    "SELECT dbs.[name] "
    "FROM sys.database_recovery_status drs "
    "JOIN sys.databases dbs ON drs.database_id = dbs.database_id "
    "WHERE drs.recovery_fork_guid = TRY_CONVERT(uniqueidentifier, ?)"
)

_READ_CONFIG_SQL = (
    "SELECT dbs.[name], "
    "CAST(drs.recovery_fork_guid AS char(36)), "
    "dbs.collation_name, "
    "dbs.compatibility_level, "
    "IIF(dbs.snapshot_isolation_state = 1 OR dbs.snapshot_isolation_state = 3, 1, 0), "
    "dbs.is_read_committed_snapshot_on, "
    "IIF(dbs.is_parameterization_forced = 0, 'simple', 'forced'), "
    "dbs.state_desc, "
    "dbs.is_read_only "
    "FROM sys.databases dbs "
    "JOIN sys.database_recovery_status drs ON drs.database_id = dbs.database_id "
    "WHERE dbs.[name] = ?"
)

_DATABASE_EXISTS_SQL = "SELECT DB_ID(?)"


class SQLServerProvider(ExternalStateProvider):
    """ExternalStateProvider over ODBC (pyodbc)."""

    def __init__(
        self,
        connection: ServerConnection,
        driver: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        trust_server_certificate: Optional[bool] = None,
        identifier_attempts: Optional[int] = None,
    ):
        self.host = connection.host
        self.port = connection.port
        self.timeout_seconds = timeout_seconds or settings.sql_timeout_seconds
        self.identifier_attempts = identifier_attempts or settings.sql_identifier_attempts
        self._connection_string = connection.odbc_connection_string(
            driver or settings.sql_driver,
            settings.sql_trust_server_certificate
            if trust_server_certificate is None
            else trust_server_certificate,
        )

    def _connect(self) -> Any:
        # DDL such as CREATE/DROP DATABASE cannot run inside a transaction
        conn = pyodbc.connect(
            self._connection_string,
            autocommit=True,
            timeout=self.timeout_seconds,
        )
        conn.timeout = self.timeout_seconds
        return conn

    async def _run(self, operation: str, work: Callable[[Any], T]) -> T:
        """
        Run ``work`` with a connection of its own, off the event loop.

        The connection is closed on every exit path. Timeouts and driver
        errors surface as SQLServerError; domain errors raised by ``work``
        pass through untouched.
        """

        def _call() -> T:
            conn = self._connect()
            try:
                return work(conn)
            finally:
                conn.close()

        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, _call),
                # Connect and statement timeouts are enforced by the driver too
                timeout=self.timeout_seconds * 2,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "sql_operation_timed_out",
                operation=operation,
                server=self.host,
                timeout_seconds=self.timeout_seconds,
            )
            raise SQLServerError(
                f"{operation} timed out after {self.timeout_seconds * 2}s",
                details={"operation": operation, "server": self.host},
            )
        except pyodbc.Error as e:
            logger.error(
                "sql_operation_failed",
                operation=operation,
                server=self.host,
                error=str(e),
            )
            raise SQLServerError(
                f"{operation} failed: {e}",
                details={"operation": operation, "server": self.host},
            )

    async def _fetch_one(self, operation: str, sql: str, *params: Any) -> Optional[Any]:
        def work(conn: Any) -> Optional[Any]:
            cursor = conn.cursor()
            try:
                cursor.execute(sql, *params)
                return cursor.fetchone()
            finally:
                cursor.close()

        return await self._run(operation, work)

    async def find_identifier_by_name(self, name: str) -> Optional[str]:
        logger.debug("finding_database_by_name", database_name=name)
        row = await self._fetch_one("find_identifier_by_name", _IDENTIFIER_BY_NAME_SQL, name)
        if row is None or row[0] is None:
            return None
        return str(row[0]).strip().upper()

    async def find_name_by_identifier(self, database_id: str) -> Optional[str]:
        logger.debug("finding_database_by_id", database_id=database_id)
        row = await self._fetch_one("find_name_by_identifier", _NAME_BY_IDENTIFIER_SQL, database_id)
        if row is None or row[0] is None:
            return None
        return str(row[0])

    async def read_config(self, name: str) -> Optional[ExternalDatabaseConfig]:
        row = await self._fetch_one("read_config", _READ_CONFIG_SQL, name)
        if row is None:
            return None
        return ExternalDatabaseConfig(
            name=row[0],
            database_id=str(row[1]).strip().upper(),
            collation=row[2],
            compatibility_level=int(row[3]),
            allow_snapshot_isolation=bool(row[4]),
            allow_read_committed_snapshot=bool(row[5]),
            parameterization=row[6],
            state=row[7],
            is_read_only=bool(row[8]),
        )

    async def create(self, name: str, params: DatabaseParams) -> str:
        existing_id = await self.find_identifier_by_name(name)
        if existing_id is not None:
            raise DuplicateDatabaseError(name, existing_id)

        sql = build_create_statement(name, params.collation)
        logger.info("creating_database", database_name=name, collation=params.collation)

        def work(conn: Any) -> None:
            cursor = conn.cursor()
            try:
                cursor.execute(sql)
            except pyodbc.Error as e:
                metrics.record_statement("create", False)
                if _is_sql_error(e, ERR_DATABASE_EXISTS):
                    # Lost a race with another creator between check and DDL
                    raise DuplicateDatabaseError(name)
                raise
            finally:
                cursor.close()
            metrics.record_statement("create", True)

        await self._run("create", work)

        database_id = await self._read_back_identifier(name)
        if database_id is None:
            raise SQLServerError(
                f"database '{name}' was created but its identifier could not be read back",
                details={"database_name": name},
            )

        initial = params.initial_options()
        if not initial.is_empty:
            try:
                await self.alter(name, initial)
            except PartialApplyError as e:
                e.database_id = database_id
                e.details["database_id"] = database_id
                raise

        logger.info("database_created", database_name=name, database_id=database_id)
        return database_id

    async def _read_back_identifier(self, name: str) -> Optional[str]:
        """Re-query the identifier; a new database may take a moment to show up."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.identifier_attempts),
            wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
            retry=retry_if_result(lambda result: result is None),
            retry_error_callback=lambda retry_state: None,
        )
        return await retrying(self.find_identifier_by_name, name)

    async def alter(self, name: str, changes: DriftReport) -> None:
        statements = build_alter_statements(name, changes)
        if not statements:
            logger.info("nothing_to_change_not_altering_database", database_name=name)
            return

        logger.info(
            "altering_database",
            database_name=name,
            fields=[s.field for s in statements],
        )

        def work(conn: Any) -> dict:
            failures = {}
            for statement in statements:
                cursor = conn.cursor()
                try:
                    cursor.execute(statement.sql)
                    metrics.record_statement(statement.field, True)
                except pyodbc.Error as e:
                    metrics.record_statement(statement.field, False)
                    failures[statement.field] = str(e)
                finally:
                    cursor.close()
            return failures

        failures = await self._run("alter", work)
        if failures:
            applied: List[str] = [s.field for s in statements if s.field not in failures]
            logger.error(
                "database_alter_partially_failed",
                database_name=name,
                failed_fields=sorted(failures),
                applied_fields=applied,
            )
            raise PartialApplyError(name, failures, applied)

        logger.info("database_altered", database_name=name)

    async def delete(self, name: str) -> bool:
        sql = build_drop_statement(name)

        def work(conn: Any) -> bool:
            cursor = conn.cursor()
            try:
                cursor.execute(_DATABASE_EXISTS_SQL, name)
                row = cursor.fetchone()
                if row is None or row[0] is None:
                    return False
                try:
                    cursor.execute(sql)
                except pyodbc.Error as e:
                    if _is_sql_error(e, ERR_DATABASE_MISSING):
                        return False
                    metrics.record_statement("drop", False)
                    raise
                metrics.record_statement("drop", True)
                return True
            finally:
                cursor.close()

        logger.info("deleting_database", database_name=name)
        dropped = await self._run("delete", work)
        if dropped:
            logger.info("database_deleted", database_name=name)
        else:
            logger.info("database_does_not_exist_nothing_to_delete", database_name=name)
        return dropped


def _is_sql_error(error: Exception, number: str) -> bool:
    """Match a SQL Server native error number in a pyodbc error message."""
    text = " ".join(str(arg) for arg in error.args)
    return f"({number})" in text or f"Msg {number}" in text


def provider_for(connection: ServerConnection) -> ExternalStateProvider:
    """Default provider factory used by the reconciler."""
    return SQLServerProvider(connection)


__all__ = [
    "SQLServerProvider",
    "provider_for",
]
