"""
One-shot sync job.

Runs out of process (for example as a Kubernetes Job on the SQL server's
network) and checks one database against the identifier the controller
expects, creating it when neither side knows it yet.

Environment:
    MS_SERVER    SQL server host
    DB_PORT      SQL server port
    DB_USER      Login
    DB_PASSWORD  Password
    DB_NAME      Database name
    DB_ID        Identifier recorded by the controller (optional)

Exit code is 0 when the database is in sync or was created, 1 otherwise.
"""
import asyncio
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mssql_operator.config.logging import configure_logging, get_logger
from mssql_operator.exceptions import (
    DatabaseMismatchError,
    DuplicateDatabaseError,
    OperatorError,
)
from mssql_operator.models.sqlserver import DatabaseParams, ServerConnection
from mssql_operator.services.external_state import ExternalStateProvider

logger = get_logger(__name__)


class SyncJobSettings(BaseSettings):
    """Job parameters read from the environment."""

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    ms_server: str = Field(..., min_length=1)
    db_port: int = Field(..., ge=1, le=65535)
    db_user: str = Field(..., min_length=1)
    db_password: SecretStr
    db_name: str = Field(..., min_length=1)
    db_id: Optional[str] = None

    @field_validator("db_id", mode="before")
    @classmethod
    def empty_id_is_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    def connection(self) -> ServerConnection:
        return ServerConnection(
            host=self.ms_server,
            port=self.db_port,
            username=self.db_user,
            password=self.db_password,
        )


class SyncOutcome(str, Enum):
    CREATED = "created"
    IN_SYNC = "in_sync"


@dataclass
class SyncResult:
    outcome: SyncOutcome
    database_id: Optional[str]


async def perform_sync(
    provider: ExternalStateProvider,
    database_name: str,
    database_id: Optional[str] = None,
) -> SyncResult:
    """
    Compare the server with the expected identifier.

    Raises:
        DuplicateDatabaseError: The name exists but no identifier was expected
        DatabaseMismatchError: The name belongs to a different identifier
    """

    async def name_for_expected_id() -> Optional[str]:
        if not database_id:
            return None
        return await provider.find_name_by_identifier(database_id)

    results = await asyncio.gather(
        provider.find_identifier_by_name(database_name),
        name_for_expected_id(),
        return_exceptions=True,
    )
    for result in results:
        if isinstance(result, BaseException):
            raise result
    found_id, found_name = results
    logger.debug("sync_lookup_results", found_id=found_id, found_name=found_name)

    if not database_id and found_id is None:
        new_id = await provider.create(database_name, DatabaseParams())
        return SyncResult(SyncOutcome.CREATED, new_id)

    if not database_id:
        raise DuplicateDatabaseError(database_name, found_id)

    if found_id is not None and found_id.upper() != database_id.upper():
        raise DatabaseMismatchError(database_id, database_name, actual_id=found_id)

    return SyncResult(SyncOutcome.IN_SYNC, database_id)


async def main() -> int:
    configure_logging()

    try:
        job_settings = SyncJobSettings()
    except ValidationError as e:
        logger.error(
            "sync_job_invalid_environment",
            errors=[".".join(str(p) for p in err["loc"]) + ": " + err["msg"] for err in e.errors()],
        )
        return 1

    # pyodbc is only needed once a real server is contacted
    from mssql_operator.services.sqlserver_service import SQLServerProvider

    provider = SQLServerProvider(job_settings.connection())
    logger.info(
        "sync_job_started",
        server=job_settings.ms_server,
        database_name=job_settings.db_name,
        database_id=job_settings.db_id,
    )

    try:
        result = await perform_sync(provider, job_settings.db_name, job_settings.db_id)
    except OperatorError as e:
        logger.error("sync_job_failed", reason=e.reason, error=e.message)
        return 1

    logger.info(
        "sync_job_completed",
        outcome=result.outcome.value,
        database_id=result.database_id,
    )
    if result.outcome == SyncOutcome.CREATED:
        print(result.database_id)
    return 0


def run() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
