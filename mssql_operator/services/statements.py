"""
T-SQL statement builder for database DDL.

Every alterable option becomes its own atomic ``FieldStatement`` so that an
ALTER can be applied, and fail, field by field.
"""
import re
from dataclasses import dataclass
from typing import Any, List, Optional

from mssql_operator.exceptions import InvalidSpecError
from mssql_operator.models.sqlserver import (
    ALTERABLE_FIELDS,
    COMPATIBILITY_LEVELS,
    DriftReport,
    Parameterization,
)

_COLLATION_RE = re.compile(r"^[A-Za-z0-9_]+$")


@dataclass(frozen=True)
class FieldStatement:
    """One DDL statement that changes exactly one database option."""

    field: str
    sql: str


def quote_name(name: str) -> str:
    """Bracket-quote an identifier, doubling closing brackets."""
    if not name or len(name) > 128:
        raise InvalidSpecError(f"Invalid database name: {name!r}")
    return "[" + name.replace("]", "]]") + "]"


def _on_off(value: bool) -> str:
    return "ON" if value else "OFF"


def build_field_statement(name: str, field: str, value: Any) -> FieldStatement:
    """
    Build the ALTER DATABASE statement for a single option.

    Raises:
        InvalidSpecError: If the field is unknown or the value is out of range
    """
    target = quote_name(name)

    if field == "compatibility_level":
        if value not in COMPATIBILITY_LEVELS:
            raise InvalidSpecError(f"Unsupported compatibility level: {value}")
        sql = f"ALTER DATABASE {target} SET COMPATIBILITY_LEVEL = {int(value)}"
    elif field == "allow_snapshot_isolation":
        sql = f"ALTER DATABASE {target} SET ALLOW_SNAPSHOT_ISOLATION {_on_off(bool(value))}"
    elif field == "allow_read_committed_snapshot":
        sql = (
            f"ALTER DATABASE {target} SET READ_COMMITTED_SNAPSHOT {_on_off(bool(value))} "
            "WITH ROLLBACK IMMEDIATE"
        )
    elif field == "parameterization":
        mode = Parameterization(value).value.upper()
        sql = f"ALTER DATABASE {target} SET PARAMETERIZATION {mode}"
    else:
        raise InvalidSpecError(f"Unknown database option: {field}")

    return FieldStatement(field=field, sql=sql)


def build_alter_statements(name: str, drift: DriftReport) -> List[FieldStatement]:
    """One statement per changed field, in ``ALTERABLE_FIELDS`` order."""
    return [
        build_field_statement(name, field, value)
        for field, value in drift.changes().items()
    ]


def build_create_statement(name: str, collation: Optional[str] = None) -> str:
    """CREATE DATABASE with an optional collation."""
    sql = f"CREATE DATABASE {quote_name(name)}"
    if collation:
        if not _COLLATION_RE.match(collation):
            raise InvalidSpecError(f"Invalid collation: {collation!r}")
        sql += f" COLLATE {collation}"
    return sql


def build_drop_statement(name: str) -> str:
    return f"DROP DATABASE {quote_name(name)}"


__all__ = [
    "ALTERABLE_FIELDS",
    "FieldStatement",
    "build_alter_statements",
    "build_create_statement",
    "build_drop_statement",
    "build_field_statement",
    "quote_name",
]
