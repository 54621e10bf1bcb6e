"""
External state provider contract: what the reconciler needs from a SQL server.
"""
from abc import ABC, abstractmethod
from typing import Optional

from mssql_operator.models.sqlserver import (
    DatabaseParams,
    DriftReport,
    ExternalDatabaseConfig,
)


class ExternalStateProvider(ABC):
    """
    Contract for reading and changing databases on a SQL server.

    Absence is reported as ``None``, never as an error.
    """

    @abstractmethod
    async def find_identifier_by_name(self, name: str) -> Optional[str]:
        """Identifier of the database called ``name``, or None."""
        ...

    @abstractmethod
    async def find_name_by_identifier(self, database_id: str) -> Optional[str]:
        """Name of the database with ``database_id``, or None."""
        ...

    @abstractmethod
    async def create(self, name: str, params: DatabaseParams) -> str:
        """
        Create a database and return its newly assigned identifier.

        Raises:
            DuplicateDatabaseError: If a database with that name already exists
        """
        ...

    @abstractmethod
    async def read_config(self, name: str) -> Optional[ExternalDatabaseConfig]:
        """Live configuration of ``name``, or None."""
        ...

    @abstractmethod
    async def alter(self, name: str, changes: DriftReport) -> None:
        """
        Apply only the supplied option changes.

        Raises:
            PartialApplyError: Listing every field whose statement failed
        """
        ...

    @abstractmethod
    async def delete(self, name: str) -> bool:
        """Drop ``name``; returns False when it did not exist."""
        ...

