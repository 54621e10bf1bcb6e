"""
Kubernetes Service - the desired-state source for Database resources.

Reads Database custom resources, writes their status subresource and
metadata (finalizer, identifier annotation), and resolves the collaborators
a reconciliation needs: the credentials secret and the managed SQL server.
"""
import base64
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from kubernetes_asyncio import client, config, watch
from kubernetes_asyncio.client.exceptions import ApiException

from mssql_operator.config.logging import get_logger
from mssql_operator.config.settings import settings
from mssql_operator.exceptions import (
    CredentialsError,
    DependencyNotReadyError,
    KubernetesError,
    StaleResourceError,
)
from mssql_operator.models.database import (
    DATABASE_ID_ANNOTATION,
    FINALIZER,
    CredentialsRef,
    DatabaseResource,
    ServerRef,
)
from mssql_operator.models.sqlserver import ManagedServer, SQLCredentials
from mssql_operator.utils.retry import is_retryable_k8s_error, retry_on_k8s_error

logger = get_logger(__name__)

MERGE_PATCH = "application/merge-patch+json"
DEFAULT_SQL_PORT = 1433


class DesiredStateSource(ABC):
    """
    Contract for the store that owns Database resources.

    Writes that carry a resourceVersion precondition raise
    StaleResourceError on conflict. Metadata writes update
    ``resource.metadata.resource_version`` in place so a later status write
    in the same pass does not conflict with the operator's own change.
    """

    @abstractmethod
    async def get_database(self, namespace: str, name: str) -> Optional[DatabaseResource]:
        ...

    @abstractmethod
    async def update_status(self, resource: DatabaseResource) -> None:
        ...

    @abstractmethod
    async def add_finalizer(self, resource: DatabaseResource) -> None:
        ...

    @abstractmethod
    async def remove_finalizer(self, resource: DatabaseResource) -> None:
        ...

    @abstractmethod
    async def set_database_id_annotation(self, resource: DatabaseResource, database_id: str) -> None:
        ...

    @abstractmethod
    async def get_credentials(self, namespace: str, ref: CredentialsRef) -> SQLCredentials:
        ...

    @abstractmethod
    async def get_managed_server(self, namespace: str, ref: ServerRef) -> ManagedServer:
        ...


class KubernetesClientSet:
    """Container for Kubernetes API clients."""

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.custom_api = client.CustomObjectsApi(api_client)
        self.core_api = client.CoreV1Api(api_client)

    async def close(self) -> None:
        """Close all API clients."""
        if self.api_client:
            await self.api_client.close()


async def create_client_set() -> KubernetesClientSet:
    """
    Load cluster configuration (in-cluster or kubeconfig) into an isolated
    client configuration.

    Raises:
        KubernetesError: If no configuration can be loaded
    """
    configuration = client.Configuration()
    try:
        if settings.k8s_in_cluster:
            config.load_incluster_config(client_configuration=configuration)
        else:
            await config.load_kube_config(
                config_file=settings.kubeconfig_path,
                client_configuration=configuration,
            )
    except Exception as e:
        raise KubernetesError(f"Failed to load Kubernetes configuration: {e}")

    logger.info(
        "kubernetes_configuration_loaded",
        host=configuration.host,
        in_cluster=settings.k8s_in_cluster,
    )
    return KubernetesClientSet(client.ApiClient(configuration=configuration))


class KubernetesService(DesiredStateSource):
    """DesiredStateSource backed by the Kubernetes API."""

    def __init__(self, client_set: KubernetesClientSet):
        self.client_set = client_set
        self.group = settings.crd_group
        self.version = settings.crd_version
        self.plural = settings.crd_plural
        self.timeout = settings.k8s_request_timeout_seconds

    @property
    def custom_api(self) -> client.CustomObjectsApi:
        return self.client_set.custom_api

    @retry_on_k8s_error()
    async def get_database(self, namespace: str, name: str) -> Optional[DatabaseResource]:
        """Get a Database resource; None when it no longer exists."""
        try:
            obj = await self.custom_api.get_namespaced_custom_object(
                group=self.group,
                version=self.version,
                namespace=namespace,
                plural=self.plural,
                name=name,
                _request_timeout=self.timeout,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            if is_retryable_k8s_error(e):
                raise
            raise KubernetesError(f"Failed to get database {namespace}/{name}: {e.reason}")
        return DatabaseResource.from_k8s(obj)

    @retry_on_k8s_error()
    async def list_databases(self) -> Tuple[List[DatabaseResource], Optional[str]]:
        """
        List Database resources in the watched scope.

        Returns:
            The resources and the list's resourceVersion (to start a watch from)
        """
        if settings.watch_namespace:
            result = await self.custom_api.list_namespaced_custom_object(
                group=self.group,
                version=self.version,
                namespace=settings.watch_namespace,
                plural=self.plural,
                _request_timeout=self.timeout,
            )
        else:
            result = await self.custom_api.list_cluster_custom_object(
                group=self.group,
                version=self.version,
                plural=self.plural,
                _request_timeout=self.timeout,
            )
        resources = []
        for item in result.get("items", []):
            try:
                resources.append(DatabaseResource.from_k8s(item))
            except ValueError as e:
                logger.warning(
                    "skipping_unparseable_database_resource",
                    name=item.get("metadata", {}).get("name"),
                    error=str(e),
                )
        return resources, result.get("metadata", {}).get("resourceVersion")

    async def watch_databases(
        self, resource_version: Optional[str] = None, timeout_seconds: int = 300
    ) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        """
        Stream raw watch events as ``(event_type, object)``.

        The stream ends when the server closes it; ERROR events (for example
        410 Gone) are yielded so the caller can relist.
        """
        kwargs: Dict[str, Any] = {
            "group": self.group,
            "version": self.version,
            "plural": self.plural,
            "timeout_seconds": timeout_seconds,
        }
        if resource_version:
            kwargs["resource_version"] = resource_version
        if settings.watch_namespace:
            func = self.custom_api.list_namespaced_custom_object
            kwargs["namespace"] = settings.watch_namespace
        else:
            func = self.custom_api.list_cluster_custom_object

        w = watch.Watch()
        async with w.stream(func, **kwargs) as stream:
            async for event in stream:
                yield event["type"], event["object"]

    async def update_status(self, resource: DatabaseResource) -> None:
        """Write the status subresource guarded by the resource's resourceVersion."""
        body = {
            "metadata": {"resourceVersion": resource.metadata.resource_version},
            "status": resource.status.to_k8s(),
        }
        response = await self._patch(resource, body, status=True)
        resource.metadata.resource_version = response["metadata"]["resourceVersion"]
        logger.debug(
            "database_status_updated",
            phase=resource.status.phase.value if resource.status.phase else None,
        )

    async def add_finalizer(self, resource: DatabaseResource) -> None:
        if FINALIZER in resource.metadata.finalizers:
            return
        finalizers = resource.metadata.finalizers + [FINALIZER]
        body = {
            "metadata": {
                "finalizers": finalizers,
                "resourceVersion": resource.metadata.resource_version,
            }
        }
        response = await self._patch(resource, body)
        resource.metadata.finalizers = finalizers
        resource.metadata.resource_version = response["metadata"]["resourceVersion"]
        logger.info("finalizer_added", finalizer=FINALIZER)

    async def remove_finalizer(self, resource: DatabaseResource) -> None:
        if FINALIZER not in resource.metadata.finalizers:
            return
        finalizers = [f for f in resource.metadata.finalizers if f != FINALIZER]
        body = {
            "metadata": {
                "finalizers": finalizers or None,
                "resourceVersion": resource.metadata.resource_version,
            }
        }
        try:
            response = await self._patch(resource, body)
        except KubernetesError as e:
            if e.details.get("status") == 404:
                logger.info("resource_gone_before_finalizer_removal")
                resource.metadata.finalizers = finalizers
                return
            raise
        resource.metadata.finalizers = finalizers
        resource.metadata.resource_version = (response.get("metadata") or {}).get(
            "resourceVersion", resource.metadata.resource_version
        )
        logger.info("finalizer_removed", finalizer=FINALIZER)

    @retry_on_k8s_error()
    async def set_database_id_annotation(self, resource: DatabaseResource, database_id: str) -> None:
        """Mirror the external identifier onto the resource's annotations."""
        # Annotations merge key by key, so this write needs no precondition
        body = {"metadata": {"annotations": {DATABASE_ID_ANNOTATION: database_id}}}
        response = await self._patch(resource, body)
        resource.metadata.annotations[DATABASE_ID_ANNOTATION] = database_id
        resource.metadata.resource_version = response["metadata"]["resourceVersion"]
        logger.info("database_id_annotation_set", database_id=database_id)

    async def _patch(self, resource: DatabaseResource, body: Dict[str, Any], status: bool = False) -> Dict[str, Any]:
        method = (
            self.custom_api.patch_namespaced_custom_object_status
            if status
            else self.custom_api.patch_namespaced_custom_object
        )
        try:
            return await method(
                group=self.group,
                version=self.version,
                namespace=resource.metadata.namespace,
                plural=self.plural,
                name=resource.metadata.name,
                body=body,
                _content_type=MERGE_PATCH,
                _request_timeout=self.timeout,
            )
        except ApiException as e:
            if e.status == 409:
                raise StaleResourceError(
                    f"Database {resource.key} was modified concurrently",
                    details={"resource_version": resource.metadata.resource_version},
                )
            if is_retryable_k8s_error(e):
                raise
            raise KubernetesError(
                f"Failed to patch database {resource.key}: {e.reason}",
                details={"status": e.status},
            )

    @retry_on_k8s_error()
    async def get_credentials(self, namespace: str, ref: CredentialsRef) -> SQLCredentials:
        """
        Resolve the SQL login from a secret.

        Raises:
            CredentialsError: If the secret or one of its keys is missing
        """
        try:
            secret = await self.client_set.core_api.read_namespaced_secret(
                name=ref.name, namespace=namespace, _request_timeout=self.timeout
            )
        except ApiException as e:
            if e.status == 404:
                raise CredentialsError(
                    f"Credentials secret '{namespace}/{ref.name}' not found",
                    details={"secret": ref.name},
                )
            if is_retryable_k8s_error(e):
                raise
            raise KubernetesError(f"Failed to read secret {namespace}/{ref.name}: {e.reason}")

        data = secret.data or {}
        missing = [key for key in (ref.username_key, ref.password_key) if key not in data]
        if missing:
            raise CredentialsError(
                f"Credentials secret '{namespace}/{ref.name}' is missing keys: {', '.join(missing)}",
                details={"secret": ref.name, "missing_keys": missing},
            )
        return SQLCredentials(
            username=base64.b64decode(data[ref.username_key]).decode("utf-8"),
            password=base64.b64decode(data[ref.password_key]).decode("utf-8"),
        )

    @retry_on_k8s_error()
    async def get_managed_server(self, namespace: str, ref: ServerRef) -> ManagedServer:
        """
        Resolve the managed SQL server and its endpoint.

        Raises:
            DependencyNotReadyError: If the server resource does not exist
        """
        server_namespace = ref.namespace or namespace
        try:
            obj = await self.custom_api.get_namespaced_custom_object(
                group=settings.server_crd_group,
                version=settings.server_crd_version,
                namespace=server_namespace,
                plural=settings.server_crd_plural,
                name=ref.name,
                _request_timeout=self.timeout,
            )
        except ApiException as e:
            if e.status == 404:
                raise DependencyNotReadyError(f"{server_namespace}/{ref.name}", state="NotFound")
            if is_retryable_k8s_error(e):
                raise
            raise KubernetesError(f"Failed to get managed server {server_namespace}/{ref.name}: {e.reason}")
        return parse_managed_server(obj, server_namespace)


def parse_managed_server(obj: Dict[str, Any], namespace: str) -> ManagedServer:
    """Build a ManagedServer from a sqlmanagedinstance object."""
    name = obj.get("metadata", {}).get("name", "")
    status = obj.get("status") or {}
    state = status.get("state")

    host: Optional[str] = None
    port = (
        ((obj.get("spec") or {}).get("services") or {}).get("primary", {}).get("port")
        or DEFAULT_SQL_PORT
    )
    endpoint = status.get("primaryEndpoint")
    if endpoint:
        # "host,port" as reported by the managed instance
        endpoint_host, _, endpoint_port = endpoint.partition(",")
        host = endpoint_host.strip() or None
        if endpoint_port.strip().isdigit():
            port = int(endpoint_port.strip())
    if host is None and name:
        host = f"{name}-external-svc.{namespace}.svc"

    return ManagedServer(
        name=name,
        namespace=namespace,
        ready=isinstance(state, str) and state.lower() == "ready",
        state=state,
        host=host,
        port=int(port),
    )
