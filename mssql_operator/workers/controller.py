"""
Database controller: worker pool driving the lifecycle reconciler.

Runs N workers that pull keys from the work queue, plus the event watcher
that fills it. A pass that asks to be requeued is scheduled again after the
requested delay; failed passes are retried with per-key exponential backoff.
"""
import asyncio
from typing import List, Optional

from mssql_operator.config.logging import get_logger
from mssql_operator.config.settings import settings
from mssql_operator.core.reconciler import LifecycleReconciler
from mssql_operator.exceptions import OperatorError, StaleResourceError
from mssql_operator.services.kubernetes_service import KubernetesService
from mssql_operator.workers.event_watcher import EventWatcher
from mssql_operator.workers.work_queue import ExponentialBackoff, WorkQueue

logger = get_logger(__name__)


class DatabaseController:
    """
    Reconciles Database resources concurrently.

    Features:
    - One in-flight pass per resource, any number of resources in parallel
    - Requeue after the interval a pass returns (the sync poll)
    - Immediate rerun of a pass that lost an optimistic-concurrency race
    - Exponential backoff per resource on errors, capped for conflicts
    - Graceful shutdown
    """

    def __init__(
        self,
        service: KubernetesService,
        reconciler: LifecycleReconciler,
        workers: Optional[int] = None,
        queue: Optional[WorkQueue] = None,
        watcher: Optional[EventWatcher] = None,
    ):
        self.service = service
        self.reconciler = reconciler
        self.workers = workers or settings.reconcile_workers
        self.queue = queue if queue is not None else WorkQueue()
        self.watcher = watcher or EventWatcher(service, self.queue)
        self.backoff = ExponentialBackoff(
            settings.error_backoff_base_seconds,
            settings.error_backoff_max_seconds,
        )
        self.running = False
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        """Start workers and the event watcher."""
        if self.running:
            return
        self.running = True
        if self.queue.is_shut_down:
            # Restarted after losing and regaining leadership
            self.queue = WorkQueue()
            self.watcher.queue = self.queue

        self._tasks = [
            asyncio.create_task(self._worker(worker_id), name=f"reconcile-worker-{worker_id}")
            for worker_id in range(1, self.workers + 1)
        ]
        self._tasks.append(asyncio.create_task(self.watcher.start(), name="database-event-watcher"))
        logger.info("database_controller_started", workers=self.workers)

    async def stop(self, timeout: float = 30.0):
        """Stop the watcher and workers, waiting for in-flight passes."""
        if not self.running:
            return
        logger.info("stopping_database_controller")
        self.running = False
        self.queue.shutdown()
        await self.watcher.stop()

        for task in self._tasks:
            task.cancel()
        try:
            await asyncio.wait_for(
                asyncio.gather(*self._tasks, return_exceptions=True),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("database_controller_shutdown_timeout")
        self._tasks = []
        logger.info("database_controller_stopped")

    async def _worker(self, worker_id: int):
        logger.info("reconcile_worker_started", worker_id=worker_id)
        while self.running:
            key = await self.queue.get()
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def process(self, key: str) -> None:
        """Run one pass for ``key`` and schedule what comes next."""
        namespace, _, name = key.partition("/")
        try:
            result = await self.reconciler.reconcile(namespace, name)
        except StaleResourceError:
            # Picked up again as soon as this worker releases the key
            self.queue.add(key)
            return
        except OperatorError as e:
            if e.retryable:
                delay = self.backoff.next_delay(key)
            else:
                self.backoff.next_delay(key)
                delay = self.backoff.max_seconds
            logger.warning(
                "reconcile_failed_requeueing",
                key=key,
                reason=e.reason,
                retryable=e.retryable,
                failures=self.backoff.failures(key),
                retry_in_seconds=delay,
            )
            self.queue.add_after(key, delay)
            return
        except Exception as e:
            delay = self.backoff.next_delay(key)
            logger.error(
                "reconcile_unexpected_error",
                key=key,
                error=str(e),
                retry_in_seconds=delay,
                exc_info=True,
            )
            self.queue.add_after(key, delay)
            return

        self.backoff.forget(key)
        if result.requeue_after is not None:
            self.queue.add_after(key, result.requeue_after)
