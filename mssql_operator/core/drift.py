"""
Drift detection between a Database spec and the live database.
"""
import asyncio
from typing import Optional

from mssql_operator.config.logging import get_logger
from mssql_operator.config.settings import settings
from mssql_operator.exceptions import DatabaseMismatchError, DatabaseNotFoundError
from mssql_operator.models.database import DatabaseSpec
from mssql_operator.models.sqlserver import DriftReport, ExternalDatabaseConfig
from mssql_operator.services.external_state import ExternalStateProvider

logger = get_logger(__name__)


def compute_drift(
    desired: DatabaseSpec,
    live: ExternalDatabaseConfig,
    track_read_committed_snapshot: bool = True,
) -> DriftReport:
    """
    Compare tracked fields and report the desired value of every mismatch.

    Collation is fixed at creation and never compared. An unset compatibility
    level in the spec leaves the server's level alone.
    """
    report = DriftReport()

    if (
        desired.compatibility_level is not None
        and desired.compatibility_level != live.compatibility_level
    ):
        report.compatibility_level = desired.compatibility_level

    if desired.allow_snapshot_isolation != live.allow_snapshot_isolation:
        report.allow_snapshot_isolation = desired.allow_snapshot_isolation

    if (
        track_read_committed_snapshot
        and desired.allow_read_committed_snapshot != live.allow_read_committed_snapshot
    ):
        report.allow_read_committed_snapshot = desired.allow_read_committed_snapshot

    if desired.parameterization != live.parameterization:
        report.parameterization = desired.parameterization

    return report


class DriftDetector:
    """
    Reads the live database fresh on every call and diffs it against the spec.

    Before any field is compared, the recorded identifier and the desired
    name must still point at the same physical database.
    """

    def __init__(
        self,
        provider: ExternalStateProvider,
        track_read_committed_snapshot: Optional[bool] = None,
    ):
        self.provider = provider
        self.track_read_committed_snapshot = (
            settings.track_read_committed_snapshot
            if track_read_committed_snapshot is None
            else track_read_committed_snapshot
        )

    async def detect(self, desired: DatabaseSpec, database_id: str) -> DriftReport:
        """
        Raises:
            DatabaseNotFoundError: If the identifier or the name no longer resolves
            DatabaseMismatchError: If identifier and name disagree
        """
        # Both lookups run together; a failure on either side aborts the pass
        name_result, config_result = await asyncio.gather(
            self.provider.find_name_by_identifier(database_id),
            self.provider.read_config(desired.name),
            return_exceptions=True,
        )
        for result in (name_result, config_result):
            if isinstance(result, BaseException):
                raise result

        actual_name: Optional[str] = name_result
        live: Optional[ExternalDatabaseConfig] = config_result

        if actual_name is None:
            raise DatabaseNotFoundError(database_id, desired.name)
        if actual_name != desired.name:
            raise DatabaseMismatchError(database_id, desired.name, actual_name=actual_name)
        if live is None:
            raise DatabaseNotFoundError(database_id, desired.name)
        if live.database_id.upper() != database_id.upper():
            raise DatabaseMismatchError(database_id, desired.name, actual_id=live.database_id)

        report = compute_drift(desired, live, self.track_read_committed_snapshot)
        if report:
            logger.info(
                "database_drift_detected",
                database_name=desired.name,
                database_id=database_id,
                fields=list(report.changes()),
            )
        else:
            logger.debug("database_in_sync", database_name=desired.name, database_id=database_id)
        return report
