from mssql_operator.models.conditions import Condition, ConditionSet, ConditionType
from mssql_operator.models.database import (
    DatabasePhase,
    DatabaseResource,
    DatabaseSpec,
    DatabaseStatus,
    DatabaseTarget,
)
from mssql_operator.models.sqlserver import (
    DatabaseParams,
    DriftReport,
    ExternalDatabaseConfig,
    Parameterization,
)

__all__ = [
    "Condition",
    "ConditionSet",
    "ConditionType",
    "DatabasePhase",
    "DatabaseResource",
    "DatabaseSpec",
    "DatabaseStatus",
    "DatabaseTarget",
    "DatabaseParams",
    "DriftReport",
    "ExternalDatabaseConfig",
    "Parameterization",
]
