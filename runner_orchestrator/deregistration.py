"""
Graceful removal of a runner: deregister from the Actions service, then delete.

The Actions service is the authority on whether a runner is busy. A 400 carrying
JobStillRunningException means "not now" and is returned as STILL_BUSY rather
than as an error, so callers never inspect remote errors themselves.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import ActionsError, NotFoundError
from .logging_config import set_current_runner
from .models import EphemeralRunner
from .resource_store import ResourceStore

logger = logging.getLogger(__name__)

JOB_STILL_RUNNING_EXCEPTION = "JobStillRunningException"


class RemovalStatus(Enum):
    REMOVED = "removed"
    STILL_BUSY = "still_busy"
    FAILED = "failed"


@dataclass(frozen=True)
class RemovalOutcome:
    status: RemovalStatus
    error: Optional[BaseException] = None

    @property
    def removed(self) -> bool:
        return self.status == RemovalStatus.REMOVED

    @classmethod
    def success(cls) -> 'RemovalOutcome':
        return cls(RemovalStatus.REMOVED)

    @classmethod
    def still_busy(cls) -> 'RemovalOutcome':
        return cls(RemovalStatus.STILL_BUSY)

    @classmethod
    def failed(cls, error: BaseException) -> 'RemovalOutcome':
        return cls(RemovalStatus.FAILED, error)


def is_job_still_running(error: BaseException) -> bool:
    return (
        isinstance(error, ActionsError)
        and error.status_code == 400
        and JOB_STILL_RUNNING_EXCEPTION in error.exception_name
    )


class RunnerDeregistrationGateway:
    """Removes runners from the Actions service and then from the store."""

    def __init__(self, store: ResourceStore, actions_client):
        self.store = store
        self.actions_client = actions_client

    async def remove(self, runner: EphemeralRunner) -> RemovalOutcome:
        runner_id = runner.status.runner_id
        set_current_runner(runner.name)
        try:
            try:
                await self.actions_client.remove_runner(runner_id)
            except Exception as e:
                if is_job_still_running(e):
                    logger.info(f"RUNNER_LIFECYCLE [Runner {runner.name}] Still running a job, leaving it for a later pass")
                    return RemovalOutcome.still_busy()
                logger.error(f"RUNNER_LIFECYCLE [Runner {runner.name}] Failed to remove runner {runner_id} from the service: {e}")
                return RemovalOutcome.failed(e)

            logger.info(f"RUNNER_LIFECYCLE [Runner {runner.name}] Deleting runner after removing it from the service (runner id {runner_id})")
            try:
                await self.store.delete_ephemeral_runner(runner)
            except NotFoundError:
                pass
            except Exception as e:
                logger.error(f"RUNNER_LIFECYCLE [Runner {runner.name}] Failed to delete runner: {e}")
                return RemovalOutcome.failed(e)

            logger.info(f"RUNNER_LIFECYCLE [Runner {runner.name}] Deleted runner (runner id {runner_id})")
            return RemovalOutcome.success()
        finally:
            set_current_runner(None)
