"""
Pydantic models describing the SQL Server side of reconciliation.
"""
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator


# Compatibility levels accepted by ALTER DATABASE ... SET COMPATIBILITY_LEVEL
COMPATIBILITY_LEVELS = (100, 110, 120, 130, 140, 150, 160)

# Alterable options in the order their statements are applied
ALTERABLE_FIELDS = (
    "compatibility_level",
    "allow_snapshot_isolation",
    "allow_read_committed_snapshot",
    "parameterization",
)


class Parameterization(str, Enum):
    """Database PARAMETERIZATION option."""

    SIMPLE = "simple"
    FORCED = "forced"


class SQLCredentials(BaseModel):
    """Login resolved from the credentials secret."""

    username: str
    password: SecretStr


class ManagedServer(BaseModel):
    """Managed SQL server resolved from its custom resource."""

    name: str
    namespace: str
    ready: bool = False
    state: Optional[str] = None
    host: Optional[str] = None
    port: int = Field(default=1433, ge=1, le=65535)


class ServerConnection(BaseModel):
    """Everything needed to open a connection to a SQL server."""

    host: str
    port: int = Field(default=1433, ge=1, le=65535)
    username: str
    password: SecretStr

    def odbc_connection_string(self, driver: str, trust_server_certificate: bool = True) -> str:
        parts = [
            f"DRIVER={{{driver}}}",
            f"SERVER={self.host},{self.port}",
            f"UID={self.username}",
            f"PWD={{{_escape_braced(self.password.get_secret_value())}}}",
            "DATABASE=master",
        ]
        if trust_server_certificate:
            parts.append("TrustServerCertificate=yes")
        return ";".join(parts) + ";"


class DriftReport(BaseModel):
    """
    Sparse set of options that must be altered.

    A populated field carries the desired value; an unset field matches the
    live database and must be left alone.
    """

    compatibility_level: Optional[int] = None
    allow_snapshot_isolation: Optional[bool] = None
    allow_read_committed_snapshot: Optional[bool] = None
    parameterization: Optional[Parameterization] = None

    def changes(self) -> Dict[str, Any]:
        """Changed fields in application order."""
        return {
            field: getattr(self, field)
            for field in ALTERABLE_FIELDS
            if getattr(self, field) is not None
        }

    @property
    def is_empty(self) -> bool:
        return not self.changes()

    def __bool__(self) -> bool:
        return not self.is_empty


class DatabaseParams(BaseModel):
    """Full option set used when creating a database."""

    collation: Optional[str] = None
    compatibility_level: Optional[int] = None
    allow_snapshot_isolation: bool = False
    allow_read_committed_snapshot: bool = False
    parameterization: Parameterization = Parameterization.SIMPLE

    def initial_options(self) -> DriftReport:
        """Options that differ from a freshly created database's defaults."""
        return DriftReport(
            compatibility_level=self.compatibility_level,
            allow_snapshot_isolation=True if self.allow_snapshot_isolation else None,
            allow_read_committed_snapshot=True if self.allow_read_committed_snapshot else None,
            parameterization=(
                self.parameterization if self.parameterization != Parameterization.SIMPLE else None
            ),
        )


class ExternalDatabaseConfig(BaseModel):
    """Live configuration read back from sys.databases."""

    name: str
    database_id: str
    collation: Optional[str] = None
    compatibility_level: int
    allow_snapshot_isolation: bool = False
    allow_read_committed_snapshot: bool = False
    parameterization: Parameterization = Parameterization.SIMPLE
    state: Optional[str] = None
    is_read_only: bool = False

    @field_validator("parameterization", mode="before")
    @classmethod
    def normalize_parameterization(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


def _escape_braced(value: str) -> str:
    return value.replace("}", "}}")
