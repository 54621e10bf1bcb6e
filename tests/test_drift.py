"""
Tests for drift detection.
"""
import itertools

import pytest

from mssql_operator.core.drift import DriftDetector, compute_drift
from mssql_operator.exceptions import DatabaseMismatchError, DatabaseNotFoundError, SQLServerError
from mssql_operator.models.database import DatabaseSpec
from mssql_operator.models.sqlserver import ExternalDatabaseConfig, Parameterization


def _spec(**kwargs) -> DatabaseSpec:
    return DatabaseSpec(
        name="OrdersDB",
        credentials={"name": "login"},
        server={"name": "sqlmi"},
        **kwargs,
    )


def _live(**kwargs) -> ExternalDatabaseConfig:
    values = dict(
        name="OrdersDB",
        database_id="ABC123",
        collation="SQL_Latin1_General_CP1_CI_AS",
        compatibility_level=150,
    )
    values.update(kwargs)
    return ExternalDatabaseConfig(**values)


class TestComputeDrift:
    def test_matching_configuration_has_no_drift(self):
        report = compute_drift(_spec(compatibilityLevel=150), _live())

        assert report.is_empty
        assert not report

    def test_mismatch_reports_desired_value(self):
        report = compute_drift(
            _spec(compatibilityLevel=150, allowSnapshotIsolation=True, parameterization="forced"),
            _live(compatibility_level=140),
        )

        assert report.changes() == {
            "compatibility_level": 150,
            "allow_snapshot_isolation": True,
            "parameterization": Parameterization.FORCED,
        }

    def test_collation_is_never_compared(self):
        report = compute_drift(_spec(collation="Latin1_General_100_CI_AS"), _live())

        assert report.is_empty

    def test_unset_compatibility_level_is_left_alone(self):
        report = compute_drift(_spec(), _live(compatibility_level=100))

        assert report.is_empty

    def test_read_committed_snapshot_tracking_toggle(self):
        spec = _spec(compatibilityLevel=150)
        live = _live(allow_read_committed_snapshot=True)

        assert compute_drift(spec, live).changes() == {"allow_read_committed_snapshot": False}
        assert compute_drift(spec, live, track_read_committed_snapshot=False).is_empty

    def test_empty_iff_every_tracked_field_matches(self):
        levels = (140, 150)
        flags = (False, True)
        modes = (Parameterization.SIMPLE, Parameterization.FORCED)
        for desired, live in itertools.product(
            itertools.product(levels, flags, flags, modes), repeat=2
        ):
            spec = _spec(
                compatibilityLevel=desired[0],
                allowSnapshotIsolation=desired[1],
                allowReadCommittedSnapshot=desired[2],
                parameterization=desired[3].value,
            )
            config = _live(
                compatibility_level=live[0],
                allow_snapshot_isolation=live[1],
                allow_read_committed_snapshot=live[2],
                parameterization=live[3],
            )

            report = compute_drift(spec, config)

            assert report.is_empty == (desired == live)
            for field, value in report.changes().items():
                assert getattr(spec, field) == value


class TestDriftDetector:
    @pytest.mark.asyncio
    async def test_reads_fresh_state_every_call(self, provider):
        provider.add_database("OrdersDB", "ABC123")
        detector = DriftDetector(provider)

        await detector.detect(_spec(), "ABC123")
        await detector.detect(_spec(), "ABC123")

        assert len(provider.calls_to("read_config")) == 2
        assert len(provider.calls_to("find_name_by_identifier")) == 2

    @pytest.mark.asyncio
    async def test_unknown_identifier_fails(self, provider):
        provider.add_database("OrdersDB", "OTHER")

        with pytest.raises(DatabaseNotFoundError):
            await DriftDetector(provider).detect(_spec(), "ABC123")

    @pytest.mark.asyncio
    async def test_renamed_database_fails(self, provider):
        provider.add_database("Renamed", "ABC123")

        with pytest.raises(DatabaseMismatchError) as exc_info:
            await DriftDetector(provider).detect(_spec(), "ABC123")

        assert exc_info.value.details["actual_name"] == "Renamed"

    @pytest.mark.asyncio
    async def test_either_lookup_failure_aborts(self, provider):
        provider.add_database("OrdersDB", "ABC123")
        provider.failures["find_name_by_identifier"] = SQLServerError("connection reset")

        with pytest.raises(SQLServerError):
            await DriftDetector(provider).detect(_spec(), "ABC123")

        # Both reads were issued before the failure was acted on
        assert provider.calls_to("read_config") == ["OrdersDB"]
