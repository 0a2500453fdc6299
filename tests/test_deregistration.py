"""
Tests for the runner deregistration gateway.

Each remote outcome maps to exactly one RemovalOutcome:
- 2xx, then delete             -> REMOVED
- 400 JobStillRunningException -> STILL_BUSY, runner untouched
- any other remote error       -> FAILED, runner untouched
- delete fails after deregister -> FAILED (already-gone counts as REMOVED)
"""

import pytest

from runner_orchestrator.deregistration import (
    RemovalOutcome,
    RemovalStatus,
    RunnerDeregistrationGateway,
    is_job_still_running,
)
from runner_orchestrator.errors import ActionsError, ResourceStoreError
from runner_orchestrator.resource_store import InMemoryResourceStore

from factories import NAMESPACE, SET_NAME, FakeActionsClient, make_runner


class BrokenDeleteStore(InMemoryResourceStore):
    async def delete_ephemeral_runner(self, runner):
        raise ResourceStoreError("connection refused")


class TestIsJobStillRunning:

    @pytest.mark.parametrize("error, expected", [
        (ActionsError(400, "GitHub.DistributedTask.WebApi.JobStillRunningException", "busy"), True),
        (ActionsError(400, "JobStillRunningException"), True),
        (ActionsError(409, "JobStillRunningException"), False),
        (ActionsError(400, "AgentNotFoundException"), False),
        (ActionsError(400, message="JobStillRunningException"), False),
        (ValueError("JobStillRunningException"), False),
    ])
    def test_classification(self, error, expected):
        assert is_job_still_running(error) is expected


class TestRemovalOutcome:

    def test_constructors(self):
        err = RuntimeError("boom")
        assert RemovalOutcome.success().removed
        assert RemovalOutcome.still_busy().status == RemovalStatus.STILL_BUSY
        assert not RemovalOutcome.still_busy().removed
        failed = RemovalOutcome.failed(err)
        assert failed.status == RemovalStatus.FAILED
        assert failed.error is err
        assert not failed.removed


class TestGateway:

    @pytest.mark.asyncio
    async def test_removed_runner_is_deleted(self, store):
        runner = store.add_runner(make_runner("idle", phase="Running", runner_id=42))
        actions_client = FakeActionsClient()

        outcome = await RunnerDeregistrationGateway(store, actions_client).remove(runner)

        assert outcome == RemovalOutcome.success()
        assert actions_client.calls == [42]
        assert store.runner_names(NAMESPACE, SET_NAME) == []

    @pytest.mark.asyncio
    async def test_busy_runner_is_kept(self, store):
        runner = store.add_runner(make_runner("busy", phase="Running", runner_id=42))
        actions_client = FakeActionsClient({42: ActionsError(400, "JobStillRunningException", "job is running")})

        outcome = await RunnerDeregistrationGateway(store, actions_client).remove(runner)

        assert outcome.status == RemovalStatus.STILL_BUSY
        assert outcome.error is None
        assert store.runner_names(NAMESPACE, SET_NAME) == ["busy"]

    @pytest.mark.asyncio
    async def test_remote_failure_is_returned(self, store):
        runner = store.add_runner(make_runner("idle", phase="Running", runner_id=42))
        error = ActionsError(401, message="bad credentials")
        actions_client = FakeActionsClient({42: error})

        outcome = await RunnerDeregistrationGateway(store, actions_client).remove(runner)

        assert outcome.status == RemovalStatus.FAILED
        assert outcome.error is error
        assert store.runner_names(NAMESPACE, SET_NAME) == ["idle"]

    @pytest.mark.asyncio
    async def test_already_deleted_runner_counts_as_removed(self, store):
        runner = make_runner("vanished", phase="Running", runner_id=42)

        outcome = await RunnerDeregistrationGateway(store, FakeActionsClient()).remove(runner)

        assert outcome.removed

    @pytest.mark.asyncio
    async def test_delete_failure_after_deregistration(self):
        store = BrokenDeleteStore()
        runner = store.add_runner(make_runner("idle", phase="Running", runner_id=42))
        actions_client = FakeActionsClient()

        outcome = await RunnerDeregistrationGateway(store, actions_client).remove(runner)

        assert outcome.status == RemovalStatus.FAILED
        assert isinstance(outcome.error, ResourceStoreError)
        assert actions_client.removed == [42]
