"""
Lifecycle reconciler for Database resources.

One call to ``reconcile`` is one bounded pass for one resource: fetch it,
resolve the managed server and credentials, then create, sync, alter or
delete the external database, and finally write status once.

Status writes are guarded by the resource version read at the start of the
pass. A conflicting write raises StaleResourceError and the caller runs the
whole pass again; nothing is merged.
"""
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import structlog
from kubernetes_asyncio.client.exceptions import ApiException

from mssql_operator.config.logging import get_logger
from mssql_operator.config.settings import settings
from mssql_operator.core.drift import DriftDetector
from mssql_operator.core.finalizer import FinalizationGate
from mssql_operator.core.state_machine import DatabaseStateMachine, ReconcileAction
from mssql_operator.exceptions import (
    DependencyNotReadyError,
    OperatorError,
    PartialApplyError,
    StaleResourceError,
)
from mssql_operator.models.conditions import ConditionType
from mssql_operator.models.database import (
    DatabasePhase,
    DatabaseResource,
    DatabaseSpec,
    DatabaseTarget,
)
from mssql_operator.models.sqlserver import ServerConnection
from mssql_operator.services import metrics
from mssql_operator.services.kubernetes_service import DesiredStateSource
from mssql_operator.services.external_state import ExternalStateProvider

logger = get_logger(__name__)

ProviderFactory = Callable[[ServerConnection], ExternalStateProvider]


@dataclass
class ReconcileResult:
    """Outcome of a successful pass."""

    action: ReconcileAction
    requeue_after: Optional[float] = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


@dataclass
class _Pass:
    action: ReconcileAction = ReconcileAction.NONE


class LifecycleReconciler:
    """
    Drives one Database resource towards its spec.

    Example:
        >>> reconciler = LifecycleReconciler(KubernetesService(client_set))
        >>> result = await reconciler.reconcile("default", "orders")
        >>> result.requeue_after
        10
    """

    def __init__(
        self,
        source: DesiredStateSource,
        provider_factory: Optional[ProviderFactory] = None,
        poll_interval_seconds: Optional[float] = None,
        track_read_committed_snapshot: Optional[bool] = None,
    ):
        self.source = source
        if provider_factory is None:
            from mssql_operator.services.sqlserver_service import provider_for

            provider_factory = provider_for
        self.provider_factory = provider_factory
        self.poll_interval_seconds = (
            settings.sync_poll_interval_seconds
            if poll_interval_seconds is None
            else poll_interval_seconds
        )
        self.track_read_committed_snapshot = track_read_committed_snapshot
        self.gate = FinalizationGate(source)

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """
        Run one pass.

        Raises:
            StaleResourceError: A guarded write lost a race; rerun the pass
            OperatorError: Anything else; already recorded in status
        """
        started = time.monotonic()
        current = _Pass()
        with structlog.contextvars.bound_contextvars(namespace=namespace, name=name):
            try:
                resource = await self.source.get_database(namespace, name)
                if resource is None:
                    logger.info("database_resource_not_found_assuming_deleted")
                    result = ReconcileResult(ReconcileAction.NONE)
                else:
                    result = await self._reconcile_resource(resource, current)
            except StaleResourceError:
                metrics.record_reconcile(current.action.value, "conflict", time.monotonic() - started)
                logger.info("database_resource_stale_restarting_pass", action=current.action.value)
                raise
            except Exception as e:
                if isinstance(e, DependencyNotReadyError):
                    current.action = ReconcileAction.WAIT
                metrics.record_reconcile(current.action.value, "error", time.monotonic() - started)
                raise

            metrics.record_reconcile(result.action.value, "success", time.monotonic() - started)
            logger.info(
                "reconcile_completed",
                action=result.action.value,
                requeue_after=result.requeue_after,
            )
            return result

    async def _reconcile_resource(self, resource: DatabaseResource, current: _Pass) -> ReconcileResult:
        action = DatabaseStateMachine.decide(
            resource.is_deleting, resource.has_finalizer, resource.database_id
        )
        current.action = action
        if action == ReconcileAction.NONE:
            logger.info("database_resource_deleting_without_finalizer")
            return ReconcileResult(ReconcileAction.NONE)

        status_before = resource.status.to_k8s()
        try:
            if action == ReconcileAction.DELETE:
                await self._delete(resource)
                return ReconcileResult(ReconcileAction.DELETE)

            desired = resource.desired()
            provider = await self._resolve_provider(resource, desired)

            await self.gate.ensure(resource)

            if action == ReconcileAction.CREATE:
                await self._create(resource, desired, provider)
                await self._write_status(resource, status_before, DatabaseStateMachine.phase_for_result(action))
                # The status write itself triggers the first sync pass
                return ReconcileResult(ReconcileAction.CREATE)

            action = await self._sync(resource, desired, provider)
            current.action = action
            await self._write_status(resource, status_before, DatabaseStateMachine.phase_for_result(action))
            return ReconcileResult(action, requeue_after=self.poll_interval_seconds)

        except StaleResourceError:
            raise
        except Exception as e:
            await self._record_error(resource, status_before, e)
            raise

    async def _delete(self, resource: DatabaseResource) -> None:
        if not resource.database_id:
            await self.gate.release(resource)
            return
        target = resource.deletion_target()
        provider = await self._resolve_provider(resource, target)
        await self.gate.finalize(resource, provider, target.name)

    async def _resolve_provider(self, resource: DatabaseResource, target: DatabaseTarget) -> ExternalStateProvider:
        namespace = resource.metadata.namespace
        server = await self.source.get_managed_server(namespace, target.server)
        if not server.ready or not server.host:
            raise DependencyNotReadyError(f"{server.namespace}/{server.name}", state=server.state)

        credentials = await self.source.get_credentials(namespace, target.credentials)
        connection = ServerConnection(
            host=server.host,
            port=target.port or server.port,
            username=credentials.username,
            password=credentials.password,
        )
        logger.debug("managed_server_resolved", server=server.name, host=server.host, port=connection.port)
        return self.provider_factory(connection)

    async def _create(self, resource: DatabaseResource, desired: DatabaseSpec, provider: ExternalStateProvider) -> None:
        logger.info("database_has_no_identifier_creating", database_name=desired.name)
        try:
            database_id = await provider.create(desired.name, desired.params())
        except PartialApplyError as e:
            # The database exists even though some options failed; never create it twice
            if e.database_id:
                await self._record_identifier(resource, e.database_id)
            raise

        await self._record_identifier(resource, database_id)
        conditions = resource.status.conditions
        resource.set_condition(ConditionType.CREATED)
        conditions.clear(ConditionType.CREATING, resource.metadata.generation)
        conditions.clear(ConditionType.ERRORED, resource.metadata.generation)

    async def _record_identifier(self, resource: DatabaseResource, database_id: str) -> None:
        await self.source.set_database_id_annotation(resource, database_id)
        resource.status.database_id = database_id

    async def _sync(self, resource: DatabaseResource, desired: DatabaseSpec, provider: ExternalStateProvider) -> ReconcileAction:
        database_id = resource.database_id
        detector = DriftDetector(provider, self.track_read_committed_snapshot)
        report = await detector.detect(desired, database_id)

        action = ReconcileAction.SYNC
        if report:
            changes = report.changes()
            metrics.record_drift(changes)
            await provider.alter(desired.name, report)
            action = ReconcileAction.ALTER
            logger.info("database_drift_corrected", database_name=desired.name, fields=list(changes))

        # Recover an identifier that only survived on the annotation
        resource.status.database_id = database_id
        conditions = resource.status.conditions
        resource.set_condition(ConditionType.SYNCED)
        conditions.clear(ConditionType.SYNCING, resource.metadata.generation)
        conditions.clear(ConditionType.ERRORED, resource.metadata.generation)
        return action

    async def _record_error(self, resource: DatabaseResource, status_before: Dict[str, Any], error: Exception) -> None:
        reason = getattr(error, "reason", OperatorError.reason)
        message = getattr(error, "message", None) or str(error)
        logger.error(
            "reconcile_failed",
            reason=reason,
            error=message,
            error_type=type(error).__name__,
        )
        resource.set_condition(ConditionType.ERRORED, reason=reason, message=message)
        resource.status.conditions.clear(ConditionType.SYNCED, resource.metadata.generation)
        try:
            await self._write_status(resource, status_before, DatabasePhase.ERROR)
        except StaleResourceError:
            logger.info("error_status_not_written_resource_stale")
        except (OperatorError, ApiException) as write_error:
            # The pass still surfaces its own error
            logger.error("error_status_write_failed", error=str(write_error))

    async def _write_status(self, resource: DatabaseResource, status_before: Dict[str, Any], phase: DatabasePhase) -> None:
        """Single status write per pass, skipped when nothing changed."""
        if not DatabaseStateMachine.can_transition(resource.status.phase, phase):
            logger.warning(
                "unexpected_phase_transition",
                from_phase=resource.status.phase.value if resource.status.phase else None,
                to_phase=phase.value,
            )
        resource.status.phase = phase
        resource.status.observed_generation = resource.metadata.generation

        if resource.status.to_k8s() == status_before:
            logger.debug("database_status_unchanged", phase=phase.value)
            return
        await self.source.update_status(resource)
