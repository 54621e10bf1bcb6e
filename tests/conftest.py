"""
Pytest configuration and fixtures.
"""
import copy
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from mssql_operator.config.settings import settings
from mssql_operator.exceptions import DuplicateDatabaseError, StaleResourceError
from mssql_operator.models.database import (
    DATABASE_ID_ANNOTATION,
    FINALIZER,
    CredentialsRef,
    DatabaseResource,
    ServerRef,
)
from mssql_operator.models.sqlserver import (
    DatabaseParams,
    DriftReport,
    ExternalDatabaseConfig,
    ManagedServer,
    SQLCredentials,
)
from mssql_operator.services.kubernetes_service import DesiredStateSource
from mssql_operator.services.external_state import ExternalStateProvider


class FakeProvider(ExternalStateProvider):
    """In-memory SQL server."""

    def __init__(self):
        self.databases: Dict[str, ExternalDatabaseConfig] = {}
        self.calls: List[Tuple[str, Any]] = []
        self.next_id = "ABC123"
        self.failures: Dict[str, Exception] = {}

    def add_database(self, name: str, database_id: str, **options: Any) -> ExternalDatabaseConfig:
        config = ExternalDatabaseConfig(
            name=name,
            database_id=database_id,
            collation="SQL_Latin1_General_CP1_CI_AS",
            compatibility_level=options.pop("compatibility_level", 150),
            state="ONLINE",
            **options,
        )
        self.databases[name] = config
        return config

    def calls_to(self, operation: str) -> List[Any]:
        return [args for op, args in self.calls if op == operation]

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failures:
            raise self.failures[operation]

    async def find_identifier_by_name(self, name: str) -> Optional[str]:
        self.calls.append(("find_identifier_by_name", name))
        self._maybe_fail("find_identifier_by_name")
        config = self.databases.get(name)
        return config.database_id if config else None

    async def find_name_by_identifier(self, database_id: str) -> Optional[str]:
        self.calls.append(("find_name_by_identifier", database_id))
        self._maybe_fail("find_name_by_identifier")
        for config in self.databases.values():
            if config.database_id.upper() == database_id.upper():
                return config.name
        return None

    async def create(self, name: str, params: DatabaseParams) -> str:
        self.calls.append(("create", (name, params)))
        self._maybe_fail("create")
        if name in self.databases:
            raise DuplicateDatabaseError(name, self.databases[name].database_id)
        self.add_database(
            name,
            self.next_id,
            compatibility_level=params.compatibility_level or 160,
            allow_snapshot_isolation=params.allow_snapshot_isolation,
            allow_read_committed_snapshot=params.allow_read_committed_snapshot,
            parameterization=params.parameterization,
        )
        return self.next_id

    async def read_config(self, name: str) -> Optional[ExternalDatabaseConfig]:
        self.calls.append(("read_config", name))
        self._maybe_fail("read_config")
        config = self.databases.get(name)
        return config.model_copy() if config else None

    async def alter(self, name: str, changes: DriftReport) -> None:
        self.calls.append(("alter", (name, changes.changes())))
        self._maybe_fail("alter")
        config = self.databases[name]
        for field, value in changes.changes().items():
            setattr(config, field, value)

    async def delete(self, name: str) -> bool:
        self.calls.append(("delete", name))
        self._maybe_fail("delete")
        return self.databases.pop(name, None) is not None


class FakeSource(DesiredStateSource):
    """In-memory Kubernetes API holding Database objects."""

    def __init__(self):
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.server = ManagedServer(
            name="sqlmi", namespace="default", ready=True, state="Ready", host="sqlmi.example", port=1433
        )
        self.status_writes: List[Dict[str, Any]] = []
        self.conflict_on_status = False
        self.status_write_error: Optional[Exception] = None

    def put(self, obj: Dict[str, Any]) -> str:
        metadata = obj["metadata"]
        metadata.setdefault("namespace", "default")
        metadata.setdefault("resourceVersion", "1")
        key = f"{metadata['namespace']}/{metadata['name']}"
        self.objects[key] = obj
        return key

    def stored(self, namespace: str = "default", name: str = "orders") -> Dict[str, Any]:
        return self.objects[f"{namespace}/{name}"]

    def _check_and_bump(self, resource: DatabaseResource, precondition: bool = True) -> Dict[str, Any]:
        obj = self.objects.get(resource.key)
        if obj is None:
            raise StaleResourceError(f"{resource.key} is gone")
        metadata = obj["metadata"]
        if precondition and metadata["resourceVersion"] != resource.metadata.resource_version:
            raise StaleResourceError(f"{resource.key} was modified concurrently")
        metadata["resourceVersion"] = str(int(metadata["resourceVersion"]) + 1)
        resource.metadata.resource_version = metadata["resourceVersion"]
        return obj

    async def get_database(self, namespace: str, name: str) -> Optional[DatabaseResource]:
        obj = self.objects.get(f"{namespace}/{name}")
        return DatabaseResource.from_k8s(copy.deepcopy(obj)) if obj else None

    async def update_status(self, resource: DatabaseResource) -> None:
        if self.conflict_on_status:
            raise StaleResourceError(f"{resource.key} was modified concurrently")
        if self.status_write_error is not None:
            raise self.status_write_error
        obj = self._check_and_bump(resource)
        obj["status"] = resource.status.to_k8s()
        self.status_writes.append(copy.deepcopy(obj["status"]))

    async def add_finalizer(self, resource: DatabaseResource) -> None:
        obj = self._check_and_bump(resource)
        obj["metadata"].setdefault("finalizers", []).append(FINALIZER)
        resource.metadata.finalizers.append(FINALIZER)

    async def remove_finalizer(self, resource: DatabaseResource) -> None:
        obj = self._check_and_bump(resource)
        finalizers = [f for f in obj["metadata"].get("finalizers", []) if f != FINALIZER]
        obj["metadata"]["finalizers"] = finalizers
        resource.metadata.finalizers = list(finalizers)
        if not finalizers and obj["metadata"].get("deletionTimestamp"):
            del self.objects[resource.key]

    async def set_database_id_annotation(self, resource: DatabaseResource, database_id: str) -> None:
        obj = self._check_and_bump(resource, precondition=False)
        obj["metadata"].setdefault("annotations", {})[DATABASE_ID_ANNOTATION] = database_id
        resource.metadata.annotations[DATABASE_ID_ANNOTATION] = database_id

    async def get_credentials(self, namespace: str, ref: CredentialsRef) -> SQLCredentials:
        return SQLCredentials(username="sa", password="P@ssw0rd}")

    async def get_managed_server(self, namespace: str, ref: ServerRef) -> ManagedServer:
        return self.server


def database_object(
    name: str = "orders",
    database_name: str = "OrdersDB",
    database_id: Optional[str] = None,
    finalizers: Optional[List[str]] = None,
    deleting: bool = False,
    **spec: Any,
) -> Dict[str, Any]:
    """Raw Database custom resource as returned by the API server."""
    obj: Dict[str, Any] = {
        "apiVersion": "actions.msft.isd.coe.io/v1alpha1",
        "kind": "Database",
        "metadata": {
            "name": name,
            "namespace": "default",
            "uid": f"uid-{name}",
            "resourceVersion": "1",
            "generation": 1,
            "finalizers": list(finalizers or []),
        },
        "spec": {
            "name": database_name,
            "credentials": {"name": "sqlmi-login"},
            "server": {"name": "sqlmi"},
            **spec,
        },
    }
    if database_id:
        obj["status"] = {"status": "Synced", "databaseId": database_id, "conditions": []}
    if deleting:
        obj["metadata"]["deletionTimestamp"] = "2024-05-01T12:00:00Z"
    return obj


@pytest.fixture(scope="session")
def test_settings():
    """Override settings for testing."""
    settings.environment = "testing"
    settings.debug = True
    return settings


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def make_database():
    """Factory for raw Database objects."""
    return database_object


@pytest_asyncio.fixture
async def test_client() -> AsyncGenerator[AsyncClient, None]:
    """Create test client (the lifespan, and so the controller, does not run)."""
    from mssql_operator.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
