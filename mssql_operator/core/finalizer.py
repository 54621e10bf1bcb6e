"""
Finalization gate: the external database is dropped before its resource goes.

The finalizer is added before anything is created on the server and removed
only after the drop has been confirmed, so a restart at any point between the
two leaves the cleanup promise intact. Only a database whose identifier this
resource recorded is ever dropped.
"""
from mssql_operator.config.logging import get_logger
from mssql_operator.exceptions import DatabaseMismatchError
from mssql_operator.models.database import DatabaseResource
from mssql_operator.services.kubernetes_service import DesiredStateSource
from mssql_operator.services.external_state import ExternalStateProvider

logger = get_logger(__name__)


class FinalizationGate:
    def __init__(self, source: DesiredStateSource):
        self.source = source

    async def ensure(self, resource: DatabaseResource) -> bool:
        """Add the finalizer if missing. Returns True when it was added."""
        if resource.has_finalizer:
            return False
        await self.source.add_finalizer(resource)
        return True

    async def release(self, resource: DatabaseResource) -> None:
        """
        Remove the finalizer without touching the server.

        For resources that never recorded an identifier: whatever database
        carries their name was not created by them.
        """
        await self.source.remove_finalizer(resource)
        logger.info("database_finalized_without_drop", reason="no_recorded_identifier")

    async def finalize(
        self,
        resource: DatabaseResource,
        provider: ExternalStateProvider,
        database_name: str,
    ) -> bool:
        """
        Drop the database the resource recorded, then release the resource.

        When the name now belongs to a different database, nothing is dropped
        and DatabaseMismatchError is raised; the finalizer stays.

        Returns:
            True if a database was dropped, False if it was already gone
        """
        database_id = resource.database_id
        if not database_id:
            raise ValueError(f"{resource.key} has no recorded database identifier to finalize")

        current_id = await provider.find_identifier_by_name(database_name)
        if current_id is not None and current_id.upper() != database_id.upper():
            raise DatabaseMismatchError(database_id, database_name, actual_id=current_id)

        dropped = False
        if current_id is not None:
            dropped = await provider.delete(database_name)
        await self.source.remove_finalizer(resource)
        logger.info(
            "database_finalized",
            database_name=database_name,
            database_id=database_id,
            dropped=dropped,
        )
        return dropped
