"""
Tests for the T-SQL statement builder.
"""
import pytest

from mssql_operator.exceptions import InvalidSpecError
from mssql_operator.models.sqlserver import DriftReport, Parameterization
from mssql_operator.services.statements import (
    build_alter_statements,
    build_create_statement,
    build_drop_statement,
    build_field_statement,
    quote_name,
)


def test_quote_name_doubles_closing_brackets():
    assert quote_name("Orders") == "[Orders]"
    assert quote_name("odd]name") == "[odd]]name]"


@pytest.mark.parametrize("name", ["", "x" * 129])
def test_quote_name_rejects_invalid_length(name):
    with pytest.raises(InvalidSpecError):
        quote_name(name)


def test_alter_statements_one_per_field_in_stable_order():
    drift = DriftReport(
        parameterization=Parameterization.FORCED,
        allow_read_committed_snapshot=True,
        compatibility_level=150,
        allow_snapshot_isolation=False,
    )

    statements = build_alter_statements("OrdersDB", drift)

    assert [s.field for s in statements] == [
        "compatibility_level",
        "allow_snapshot_isolation",
        "allow_read_committed_snapshot",
        "parameterization",
    ]
    assert [s.sql for s in statements] == [
        "ALTER DATABASE [OrdersDB] SET COMPATIBILITY_LEVEL = 150",
        "ALTER DATABASE [OrdersDB] SET ALLOW_SNAPSHOT_ISOLATION OFF",
        "ALTER DATABASE [OrdersDB] SET READ_COMMITTED_SNAPSHOT ON WITH ROLLBACK IMMEDIATE",
        "ALTER DATABASE [OrdersDB] SET PARAMETERIZATION FORCED",
    ]


def test_empty_drift_builds_no_statements():
    assert build_alter_statements("OrdersDB", DriftReport()) == []


def test_unsupported_compatibility_level_rejected():
    with pytest.raises(InvalidSpecError):
        build_field_statement("OrdersDB", "compatibility_level", 90)


def test_unknown_field_rejected():
    with pytest.raises(InvalidSpecError):
        build_field_statement("OrdersDB", "recovery_model", "FULL")


def test_create_statement_with_collation():
    assert build_create_statement("OrdersDB") == "CREATE DATABASE [OrdersDB]"
    assert (
        build_create_statement("OrdersDB", "Latin1_General_100_CI_AS")
        == "CREATE DATABASE [OrdersDB] COLLATE Latin1_General_100_CI_AS"
    )


def test_create_statement_rejects_injected_collation():
    with pytest.raises(InvalidSpecError):
        build_create_statement("OrdersDB", "Latin1; DROP DATABASE master")


def test_drop_statement():
    assert build_drop_statement("OrdersDB") == "DROP DATABASE [OrdersDB]"
