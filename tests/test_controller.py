"""
Tests for the controller: event mapping, retry scheduling, and end-to-end runs
against the in-memory store.
"""

import asyncio

import pytest

from runner_orchestrator.controller import RunnerSetController
from runner_orchestrator.errors import NotFoundError, ResourceStoreError
from runner_orchestrator.reconciler import EphemeralRunnerSetReconciler
from runner_orchestrator.resource_store import ADDED, DELETED, MODIFIED, InMemoryResourceStore, WatchEvent

from factories import NAMESPACE, SET_NAME, make_config, make_runner, make_runner_set

SET_KEY = f"{NAMESPACE}/{SET_NAME}"


class ScriptedReconciler:
    """Fails the first `failures` calls, then succeeds."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = []

    async def reconcile(self, namespace, name):
        self.calls.append(f"{namespace}/{name}")
        if self.failures > 0:
            self.failures -= 1
            raise ResourceStoreError("apiserver timeout")


class OverlapDetectingReconciler:
    def __init__(self):
        self.active = set()
        self.overlaps = 0
        self.calls = 0

    async def reconcile(self, namespace, name):
        key = f"{namespace}/{name}"
        if key in self.active:
            self.overlaps += 1
        self.active.add(key)
        self.calls += 1
        try:
            await asyncio.sleep(0.02)
        finally:
            self.active.discard(key)


async def wait_for(predicate, timeout=3.0, interval=0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if await predicate():
            return True
        await asyncio.sleep(interval)
    return False


def make_controller(store=None, reconciler=None, **config_overrides):
    store = store or InMemoryResourceStore()
    reconciler = reconciler or ScriptedReconciler()
    return RunnerSetController(store, reconciler, make_config(**config_overrides))


class TestHandleEvent:

    @pytest.mark.asyncio
    async def test_runner_set_event_enqueues_its_key(self):
        controller = make_controller()
        runner_set = make_runner_set()
        runner_set.metadata.resource_version = "1"

        controller.handle_event(WatchEvent(ADDED, runner_set))

        assert await controller.queue.get() == SET_KEY

    @pytest.mark.asyncio
    async def test_runner_event_enqueues_its_owner(self):
        controller = make_controller()

        controller.handle_event(WatchEvent(MODIFIED, make_runner("child-1")))

        assert await controller.queue.get() == SET_KEY

    @pytest.mark.asyncio
    async def test_unowned_runner_is_ignored(self):
        controller = make_controller()
        orphan = make_runner("orphan")
        orphan.metadata.owner_references = []

        controller.handle_event(WatchEvent(ADDED, orphan))

        assert len(controller.queue) == 0

    @pytest.mark.asyncio
    async def test_update_without_version_change_is_dropped(self):
        controller = make_controller()
        runner = make_runner("child-1")
        runner.metadata.resource_version = "5"

        controller.handle_event(WatchEvent(MODIFIED, runner))
        controller.queue.done(await controller.queue.get())

        controller.handle_event(WatchEvent(MODIFIED, runner))
        assert len(controller.queue) == 0

        runner.metadata.resource_version = "6"
        controller.handle_event(WatchEvent(MODIFIED, runner))
        assert len(controller.queue) == 1

    @pytest.mark.asyncio
    async def test_delete_always_enqueues(self):
        controller = make_controller()
        runner = make_runner("child-1")
        runner.metadata.resource_version = "5"

        controller.handle_event(WatchEvent(MODIFIED, runner))
        controller.queue.done(await controller.queue.get())
        controller.handle_event(WatchEvent(DELETED, runner))

        assert len(controller.queue) == 1


class TestProcess:

    @pytest.mark.asyncio
    async def test_failure_schedules_retry_with_backoff(self):
        reconciler = ScriptedReconciler(failures=2)
        controller = make_controller(reconciler=reconciler, backoff_initial_sec=0.01, backoff_max_sec=0.05)

        assert not await controller.process(SET_KEY)
        assert controller.queue.num_requeues(SET_KEY) == 1

        # The retry comes back on its own
        assert await asyncio.wait_for(controller.queue.get(), 1.0) == SET_KEY
        controller.queue.done(SET_KEY)

        assert not await controller.process(SET_KEY)
        assert controller.queue.num_requeues(SET_KEY) == 2
        controller.queue.shut_down()

    @pytest.mark.asyncio
    async def test_success_resets_backoff(self):
        reconciler = ScriptedReconciler(failures=1)
        controller = make_controller(reconciler=reconciler, backoff_initial_sec=60)

        await controller.process(SET_KEY)
        assert await controller.process(SET_KEY)

        assert controller.queue.num_requeues(SET_KEY) == 0
        assert reconciler.calls == [SET_KEY, SET_KEY]
        controller.queue.shut_down()


class TestRun:

    @pytest.mark.asyncio
    async def test_same_key_never_reconciled_concurrently(self):
        reconciler = OverlapDetectingReconciler()
        controller = make_controller(reconciler=reconciler, max_concurrent_reconciles=4)
        stop = asyncio.Event()
        task = asyncio.create_task(controller.run(stop))

        for _ in range(10):
            controller.queue.add(SET_KEY)
            controller.queue.add(f"{NAMESPACE}/other")
            await asyncio.sleep(0.01)

        stop.set()
        await asyncio.wait_for(task, 2.0)

        assert reconciler.calls >= 2
        assert reconciler.overlaps == 0

    @pytest.mark.asyncio
    async def test_converges_and_tears_down(self, store, actions_clients, actions_client):
        reconciler = EphemeralRunnerSetReconciler(store, actions_clients)
        controller = RunnerSetController(
            store, reconciler, make_config(resync_interval_sec=0.05, backoff_initial_sec=0.01, backoff_max_sec=0.1),
        )
        store.add_runner_set(make_runner_set(replicas=2, with_finalizer=False))
        stop = asyncio.Event()
        task = asyncio.create_task(controller.run(stop))

        async def scaled_up():
            runner_set = await store.get_runner_set(NAMESPACE, SET_NAME)
            return (
                len(store.runner_names(NAMESPACE, SET_NAME)) == 2
                and runner_set.status.current_replicas == 2
            )

        async def released():
            try:
                await store.get_runner_set(NAMESPACE, SET_NAME)
            except NotFoundError:
                return True
            return False

        try:
            assert await wait_for(scaled_up)

            await store.delete_runner_set(NAMESPACE, SET_NAME)

            assert await wait_for(released)
            assert store.runner_names(NAMESPACE, SET_NAME) == []
            assert len(actions_client.removed) == 2
        finally:
            stop.set()
            await asyncio.wait_for(task, 2.0)


class DroppingWatchStore(InMemoryResourceStore):
    """Watch stream that delivers one event, drops, then behaves normally."""

    def __init__(self, first_event):
        super().__init__()
        self.first_event = first_event
        self.watch_calls = 0

    async def watch(self):
        self.watch_calls += 1
        if self.watch_calls == 1:
            yield self.first_event
            raise ResourceStoreError("watch connection reset")
        async for event in super().watch():
            yield event


class TestWatchRestart:

    @pytest.mark.asyncio
    async def test_restart_forgets_seen_versions(self):
        runner = make_runner("child-1")
        runner.metadata.resource_version = "5"
        store = DroppingWatchStore(WatchEvent(MODIFIED, runner))
        controller = make_controller(store=store, backoff_initial_sec=0.01)
        task = asyncio.create_task(controller._watch_loop())

        async def restarted():
            return store.watch_calls >= 2

        try:
            assert await wait_for(restarted)
            controller.queue.done(await controller.queue.get())

            # The same version seen before the drop is handled again after it
            controller.handle_event(WatchEvent(MODIFIED, runner))
            assert len(controller.queue) == 1
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
