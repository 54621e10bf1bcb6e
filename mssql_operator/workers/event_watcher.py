"""
Kubernetes event watcher for Database resources.

Lists every Database, queues all of them, then follows the watch stream from
the list's resourceVersion and queues each changed resource. The stream is
reopened when the server closes it, and a fresh list is taken when the
resourceVersion expires (410 Gone) or the resync interval has passed.
"""
import asyncio
from typing import Optional

import structlog

from mssql_operator.config.settings import settings
from mssql_operator.exceptions import KubernetesError
from mssql_operator.services.kubernetes_service import KubernetesService
from mssql_operator.workers.work_queue import WorkQueue

logger = structlog.get_logger(__name__)

# Longest single watch request; the server may close it earlier
WATCH_TIMEOUT_SECONDS = 300
ERROR_RETRY_SECONDS = 5


class EventWatcher:
    """Feeds Database watch events into the work queue."""

    def __init__(
        self,
        service: KubernetesService,
        queue: WorkQueue,
        resync_interval: Optional[float] = None,
    ):
        self.service = service
        self.queue = queue
        self.resync_interval = resync_interval or settings.resync_interval_seconds
        self.running = False

    async def start(self):
        """Watch until stopped."""
        self.running = True
        logger.info("event_watcher_started", resync_interval_seconds=self.resync_interval)

        while self.running:
            try:
                resource_version = await self.resync()
                await self._follow(resource_version)
            except asyncio.CancelledError:
                logger.info("event_watcher_cancelled")
                raise
            except Exception as e:
                logger.error("event_watcher_error", error=str(e), error_type=type(e).__name__)
                if not self.running:
                    break
                await asyncio.sleep(ERROR_RETRY_SECONDS)

        logger.info("event_watcher_stopped")

    async def stop(self):
        """Stop watching events."""
        logger.info("event_watcher_stopping")
        self.running = False

    async def resync(self) -> Optional[str]:
        """Queue every Database; returns the resourceVersion to watch from."""
        resources, resource_version = await self.service.list_databases()
        for resource in resources:
            self.queue.add(resource.key)
        logger.info("database_resources_listed", count=len(resources), resource_version=resource_version)
        return resource_version

    async def _follow(self, resource_version: Optional[str]) -> None:
        loop = asyncio.get_running_loop()
        resync_at = loop.time() + self.resync_interval

        while self.running:
            remaining = resync_at - loop.time()
            if remaining <= 0:
                return
            timeout = max(1, int(min(WATCH_TIMEOUT_SECONDS, remaining)))

            async for event_type, obj in self.service.watch_databases(resource_version, timeout):
                if event_type == "ERROR":
                    code = obj.get("code")
                    if code == 410:
                        logger.info("watch_resource_version_expired", resource_version=resource_version)
                        return
                    raise KubernetesError(
                        f"Watch failed: {obj.get('message', 'unknown error')}",
                        details={"status": code},
                    )

                metadata = obj.get("metadata") or {}
                resource_version = metadata.get("resourceVersion", resource_version)
                if event_type == "BOOKMARK":
                    continue

                key = f"{metadata.get('namespace', 'default')}/{metadata.get('name')}"
                logger.debug("database_event_received", event_type=event_type, key=key)
                if event_type == "DELETED":
                    # Deletion completes only after the finalizer is gone
                    continue
                self.queue.add(key)
