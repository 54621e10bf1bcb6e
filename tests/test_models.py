"""
Tests for conditions and Database resource models.
"""
from datetime import datetime, timedelta, timezone

import pytest

from mssql_operator.exceptions import InvalidSpecError
from mssql_operator.models.conditions import ConditionSet, ConditionType
from mssql_operator.models.database import FINALIZER, DatabasePhase, DatabaseResource
from mssql_operator.models.sqlserver import (
    DatabaseParams,
    Parameterization,
    ServerConnection,
)

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class TestConditionSet:
    def test_upsert_keeps_one_condition_per_type(self):
        conditions = ConditionSet()
        conditions.set(ConditionType.ERRORED, reason="ServerNotReady", message="first", now=T0)
        conditions.set(ConditionType.ERRORED, reason="ServerNotReady", message="second", now=T0)
        conditions.set(ConditionType.CREATED, now=T0)

        assert conditions.types() == ["Errored", "Created"]
        assert len(conditions) == 2
        assert conditions.get(ConditionType.ERRORED).message == "second"

    def test_timestamp_moves_only_on_status_change(self):
        conditions = ConditionSet()
        assert conditions.set(ConditionType.SYNCED, now=T0) is True

        later = T0 + timedelta(minutes=5)
        assert conditions.set(ConditionType.SYNCED, now=later) is False
        assert conditions.get("Synced").last_transition_time == T0

        assert conditions.set(ConditionType.SYNCED, status=False, now=later) is True
        assert conditions.get("Synced").last_transition_time == later

    def test_defaults_from_template(self):
        conditions = ConditionSet()
        conditions.set(ConditionType.CREATED)

        condition = conditions.get(ConditionType.CREATED)
        assert condition.reason == "CreatedDatabase"
        assert condition.message == "Database successfully created"

    def test_clear_leaves_absent_conditions_absent(self):
        conditions = ConditionSet()
        assert conditions.clear(ConditionType.ERRORED) is False
        assert ConditionType.ERRORED not in conditions

        conditions.set(ConditionType.ERRORED, reason="Conflict", message="boom")
        assert conditions.clear(ConditionType.ERRORED) is True
        assert not conditions.is_true(ConditionType.ERRORED)
        assert conditions.get(ConditionType.ERRORED).reason == "Conflict"

    def test_k8s_round_trip_collapses_duplicates(self):
        raw = [
            {"type": "Errored", "status": "True", "reason": "A", "message": "", "lastTransitionTime": "2024-05-01T12:00:00Z"},
            {"type": "Errored", "status": "False", "reason": "B", "message": "", "lastTransitionTime": "2024-05-01T12:05:00Z"},
        ]

        conditions = ConditionSet.from_k8s(raw)

        assert len(conditions) == 1
        assert conditions.to_k8s()[0]["reason"] == "B"
        assert conditions.to_k8s()[0]["lastTransitionTime"] == "2024-05-01T12:05:00Z"


class TestDatabaseResource:
    def test_from_k8s(self, make_database):
        obj = make_database(database_id="ABC123", finalizers=[FINALIZER], deleting=True)

        resource = DatabaseResource.from_k8s(obj)

        assert resource.key == "default/orders"
        assert resource.is_deleting
        assert resource.has_finalizer
        assert resource.database_id == "ABC123"
        assert resource.status.phase == DatabasePhase.SYNCED

    def test_desired_parses_camel_case_spec(self, make_database):
        resource = DatabaseResource.from_k8s(
            make_database(
                allowSnapshotIsolation=True,
                allowReadCommittedSnapshot=True,
                parameterization="FORCED",
                compatibilityLevel=160,
                collation="Latin1_General_100_CI_AS",
            )
        )

        spec = resource.desired()

        assert spec.name == "OrdersDB"
        assert spec.allow_snapshot_isolation is True
        assert spec.allow_read_committed_snapshot is True
        assert spec.parameterization == Parameterization.FORCED
        assert spec.compatibility_level == 160
        assert spec.credentials.username_key == "username"

    @pytest.mark.parametrize(
        "override",
        [
            {"compatibilityLevel": 99},
            {"parameterization": "auto"},
            {"name": " padded "},
            {"collation": "bad collation"},
            {"server": None},
        ],
    )
    def test_invalid_spec(self, make_database, override):
        obj = make_database()
        obj["spec"].update(override)

        with pytest.raises(InvalidSpecError):
            DatabaseResource.from_k8s(obj).desired()

    def test_deletion_target_ignores_invalid_options(self, make_database):
        resource = DatabaseResource.from_k8s(make_database(compatibilityLevel=999, parameterization="auto"))

        with pytest.raises(InvalidSpecError):
            resource.desired()
        target = resource.deletion_target()
        assert target.name == "OrdersDB"
        assert target.server.name == "sqlmi"

    def test_deletion_target_still_needs_the_server(self, make_database):
        obj = make_database()
        obj["spec"]["server"] = None

        with pytest.raises(InvalidSpecError):
            DatabaseResource.from_k8s(obj).deletion_target()

    def test_status_serialization(self, make_database):
        resource = DatabaseResource.from_k8s(make_database())
        resource.status.phase = DatabasePhase.CREATED
        resource.status.database_id = "ABC123"
        resource.set_condition(ConditionType.CREATED)

        data = resource.status.to_k8s()

        assert data["status"] == "Created"
        assert data["databaseId"] == "ABC123"
        assert data["conditions"][0]["type"] == "Created"
        assert data["conditions"][0]["observedGeneration"] == 1


class TestSqlModels:
    def test_initial_options_only_non_defaults(self):
        params = DatabaseParams(allow_snapshot_isolation=True, parameterization=Parameterization.SIMPLE)

        assert params.initial_options().changes() == {"allow_snapshot_isolation": True}

    def test_connection_string_escapes_password(self):
        connection = ServerConnection(host="sqlmi.example", port=1433, username="sa", password="pa}ss;word")

        conn_str = connection.odbc_connection_string("ODBC Driver 18 for SQL Server")

        assert "DRIVER={ODBC Driver 18 for SQL Server}" in conn_str
        assert "SERVER=sqlmi.example,1433" in conn_str
        assert "PWD={pa}}ss;word}" in conn_str
        assert "TrustServerCertificate=yes" in conn_str
