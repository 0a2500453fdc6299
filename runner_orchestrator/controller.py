"""
Controller: decides when each runner set is reconciled.

Runner sets are enqueued when they or one of their runners change (watch), on a
periodic resync, and again with backoff after a failed reconcile. Several
workers drain the queue concurrently, but the work queue never hands the same
runner set to two workers at once.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from .config import OrchestratorConfig
from .models import EphemeralRunnerSet, object_key, owning_runner_set_name, split_key
from .reconciler import EphemeralRunnerSetReconciler
from .resource_store import DELETED, MODIFIED, ResourceStore, WatchEvent
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)


class RunnerSetController:
    """Feeds runner set keys to the reconciler."""

    def __init__(self, store: ResourceStore, reconciler: EphemeralRunnerSetReconciler, config: OrchestratorConfig):
        self.store = store
        self.reconciler = reconciler
        self.config = config
        self.queue = WorkQueue(
            backoff_initial_sec=config.backoff_initial_sec,
            backoff_max_sec=config.backoff_max_sec,
            backoff_factor=config.backoff_factor,
        )
        # Last resource version seen per (kind, key), to drop no-op updates
        self._seen_versions: Dict[Tuple[str, str], str] = {}

    # =========================================================================
    # MAIN LOOP
    # =========================================================================

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run until stop_event is set (or the task is cancelled)."""
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Starting controller with {self.config.max_concurrent_reconciles} workers")

        await self.resync()

        tasks: List[asyncio.Task] = [
            asyncio.create_task(self._worker(i), name=f"reconcile-worker-{i}")
            for i in range(self.config.max_concurrent_reconciles)
        ]
        tasks.append(asyncio.create_task(self._watch_loop(), name="watch"))
        tasks.append(asyncio.create_task(self._resync_loop(), name="resync"))

        try:
            await stop_event.wait()
        finally:
            logger.info("Stopping controller")
            self.queue.shut_down()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def process(self, key: str) -> bool:
        """Reconcile one key. Returns False (and schedules a retry) on failure."""
        namespace, name = split_key(key)
        try:
            await self.reconciler.reconcile(namespace, name)
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            logger.error(
                f"Reconcile of {key} failed (attempt {self.queue.num_requeues(key)}), "
                f"retrying in {delay:.1f}s: {e}"
            )
            return False

        self.queue.forget(key)
        return True

    # =========================================================================
    # EVENT SOURCES
    # =========================================================================

    def handle_event(self, event: WatchEvent) -> None:
        """Map a watch event to the runner set key it concerns and enqueue it."""
        obj = event.obj
        if isinstance(obj, EphemeralRunnerSet):
            key = obj.key
        else:
            owner = owning_runner_set_name(obj)
            if owner is None:
                return
            key = object_key(obj.metadata.namespace, owner)

        identity = (obj.kind, obj.key)
        version = obj.metadata.resource_version
        if event.type == DELETED:
            self._seen_versions.pop(identity, None)
        else:
            if event.type == MODIFIED and version and self._seen_versions.get(identity) == version:
                return
            self._seen_versions[identity] = version

        self.queue.add(key)

    async def resync(self) -> None:
        try:
            runner_sets = await self.store.list_runner_sets(self.config.watch_namespace)
        except Exception as e:
            logger.error(f"Resync failed to list runner sets: {e}")
            return
        logger.debug(f"Resync: enqueueing {len(runner_sets)} runner sets")
        for runner_set in runner_sets:
            self.queue.add(runner_set.key)

    async def _watch_loop(self) -> None:
        while True:
            # Seen versions are only valid within one watch stream
            self._seen_versions.clear()
            try:
                async for event in self.store.watch():
                    self.handle_event(event)
            except Exception as e:
                logger.error(f"Watch failed, restarting: {e}")
            await asyncio.sleep(self.config.backoff_initial_sec)

    async def _resync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.resync_interval_sec)
            await self.resync()

    async def _worker(self, worker_id: int) -> None:
        while True:
            key = await self.queue.get()
            logger.debug(f"Worker {worker_id} picked up {key}")
            try:
                await self.process(key)
            finally:
                self.queue.done(key)
