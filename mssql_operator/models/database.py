"""
Pydantic models for Database custom resources.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from mssql_operator.exceptions import InvalidSpecError
from mssql_operator.models.conditions import ConditionSet, ConditionType
from mssql_operator.models.sqlserver import (
    COMPATIBILITY_LEVELS,
    DatabaseParams,
    Parameterization,
)

FINALIZER = "actions.msft.isd.coe.io/finalizer"
DATABASE_ID_ANNOTATION = "mssql/db_id"


class DatabasePhase(str, Enum):
    """Lifecycle phase persisted in ``status.status``."""

    PENDING = "Pending"
    CREATING = "Creating"
    CREATED = "Created"
    SYNCING = "Syncing"
    SYNCED = "Synced"
    ERROR = "Error"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CredentialsRef(_CamelModel):
    """Reference to the secret holding the SQL login."""

    name: str = Field(..., min_length=1)
    username_key: str = Field(default="username", min_length=1)
    password_key: str = Field(default="password", min_length=1)


class ServerRef(_CamelModel):
    """Reference to the managed SQL server."""

    name: str = Field(..., min_length=1)
    namespace: Optional[str] = None


class DatabaseTarget(_CamelModel):
    """Where a database lives: its name, server and login. Enough to drop it."""

    name: str = Field(..., min_length=1, max_length=128, description="Database name on the server")
    credentials: CredentialsRef
    server: ServerRef
    port: Optional[int] = Field(default=None, ge=1, le=65535, description="Overrides the server port")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Reject names that cannot be bracket-quoted safely."""
        if v != v.strip():
            raise ValueError("Database name must not have leading or trailing whitespace")
        if any(ord(ch) < 32 for ch in v):
            raise ValueError("Database name must not contain control characters")
        return v


class DatabaseSpec(DatabaseTarget):
    """Desired state of a database."""

    collation: Optional[str] = Field(
        default=None, pattern=r"^[A-Za-z0-9_]+$", description="Collation, applied at creation only"
    )
    allow_snapshot_isolation: bool = False
    allow_read_committed_snapshot: bool = False
    parameterization: Parameterization = Parameterization.SIMPLE
    compatibility_level: Optional[int] = Field(
        default=None, description="Compatibility level; None leaves the server default untracked"
    )

    @field_validator("parameterization", mode="before")
    @classmethod
    def normalize_parameterization(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @field_validator("compatibility_level")
    @classmethod
    def validate_compatibility_level(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v not in COMPATIBILITY_LEVELS:
            raise ValueError(f"Compatibility level must be one of {list(COMPATIBILITY_LEVELS)}")
        return v

    def params(self) -> DatabaseParams:
        return DatabaseParams(
            collation=self.collation,
            compatibility_level=self.compatibility_level,
            allow_snapshot_isolation=self.allow_snapshot_isolation,
            allow_read_committed_snapshot=self.allow_read_committed_snapshot,
            parameterization=self.parameterization,
        )


_SpecT = TypeVar("_SpecT", bound=DatabaseTarget)


class DatabaseStatus(_CamelModel):
    """Observed state written through the status subresource."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, arbitrary_types_allowed=True
    )

    phase: Optional[DatabasePhase] = Field(default=None, alias="status")
    database_id: Optional[str] = None
    conditions: ConditionSet = Field(default_factory=ConditionSet)
    observed_generation: Optional[int] = None

    @field_validator("conditions", mode="before")
    @classmethod
    def parse_conditions(cls, v: Any) -> Any:
        if v is None or isinstance(v, list):
            return ConditionSet.from_k8s(v)
        return v

    def to_k8s(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"conditions": self.conditions.to_k8s()}
        if self.phase is not None:
            data["status"] = self.phase.value
        if self.database_id:
            data["databaseId"] = self.database_id
        if self.observed_generation is not None:
            data["observedGeneration"] = self.observed_generation
        return data


class ObjectMeta(_CamelModel):
    """Subset of Kubernetes object metadata the operator relies on."""

    name: str
    namespace: str = "default"
    uid: Optional[str] = None
    resource_version: Optional[str] = None
    generation: Optional[int] = None
    finalizers: List[str] = Field(default_factory=list)
    annotations: Dict[str, str] = Field(default_factory=dict)
    deletion_timestamp: Optional[datetime] = None

    @field_validator("finalizers", "annotations", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any, info: Any) -> Any:
        if v is None:
            return [] if info.field_name == "finalizers" else {}
        return v


class DatabaseResource(BaseModel):
    """
    A Database custom resource as read from the cluster.

    The spec is kept raw so a resource with an invalid spec can still be
    loaded, reported on, and finalized; ``desired()`` validates it.
    """

    metadata: ObjectMeta
    spec: Dict[str, Any] = Field(default_factory=dict)
    status: DatabaseStatus = Field(default_factory=DatabaseStatus)

    @classmethod
    def from_k8s(cls, obj: Dict[str, Any]) -> "DatabaseResource":
        return cls(
            metadata=ObjectMeta.model_validate(obj.get("metadata") or {}),
            spec=obj.get("spec") or {},
            status=DatabaseStatus.model_validate(obj.get("status") or {}),
        )

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def has_finalizer(self) -> bool:
        return FINALIZER in self.metadata.finalizers

    @property
    def database_id(self) -> Optional[str]:
        """External identifier from status, falling back to the annotation."""
        return self.status.database_id or self.metadata.annotations.get(DATABASE_ID_ANNOTATION) or None

    def desired(self) -> DatabaseSpec:
        """
        Validate and return the spec.

        Raises:
            InvalidSpecError: If the spec does not validate
        """
        return self._validate_spec(DatabaseSpec)

    def deletion_target(self) -> DatabaseTarget:
        """
        Validate only what dropping the database needs.

        Tracked options are not validated: a resource whose options became
        invalid can still be finalized.

        Raises:
            InvalidSpecError: If name, credentials or server do not validate
        """
        return self._validate_spec(DatabaseTarget)

    def _validate_spec(self, model: Type[_SpecT]) -> _SpecT:
        try:
            return model.model_validate(self.spec)
        except ValidationError as e:
            errors = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            raise InvalidSpecError(
                f"Invalid Database spec for {self.key}: {'; '.join(errors)}",
                details={"errors": errors},
            )

    def set_condition(self, type_: ConditionType, **kwargs: Any) -> bool:
        return self.status.conditions.set(
            type_, observed_generation=self.metadata.generation, **kwargs
        )
