"""
Reconciler for ephemeral runner sets.

Brings the number of ephemeral runners owned by a runner set to the desired
replica count, and drains every runner before a deleted runner set is released.

Each reconcile is idempotent and can be re-run from any point: it reads the
current state, takes the next safe steps, and leaves whatever could not be done
yet to a later invocation. It never sleeps or retries; errors are raised to the
caller (the controller), which requeues the runner set with backoff.
"""

import logging
from typing import Callable, List, Sequence, Tuple

from .actions_client import ActionsClientFactory
from .deregistration import RemovalStatus, RunnerDeregistrationGateway
from .errors import ActionsClientError, NotFoundError, combine_errors
from .logging_config import set_current_runner, set_current_runner_set
from .models import (
    EPHEMERAL_RUNNER_SET_FINALIZER,
    EphemeralRunner,
    EphemeralRunnerSet,
    object_key,
)
from .resource_store import ResourceStore
from .runner_factory import new_ephemeral_runner, set_controller_reference
from .runner_state import (
    ReconcileSummary,
    RunnerStates,
    categorize_ephemeral_runners,
    order_scale_down_candidates,
)

logger = logging.getLogger(__name__)


class EphemeralRunnerSetReconciler:
    """Converges one runner set at a time toward its desired replica count."""

    def __init__(
        self,
        store: ResourceStore,
        actions_clients: ActionsClientFactory,
        runner_builder: Callable[[EphemeralRunnerSet], EphemeralRunner] = new_ephemeral_runner,
    ):
        self.store = store
        self.actions_clients = actions_clients
        self.runner_builder = runner_builder

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def reconcile(self, namespace: str, name: str) -> ReconcileSummary:
        """
        Reconcile one runner set.

        Returns a summary of the actions taken. Raises on any store or Actions
        service failure; whatever was committed before the failure stays valid
        and is observed again on the next invocation.
        """
        key = object_key(namespace, name)
        set_current_runner_set(key)
        try:
            return await self._reconcile(namespace, name, ReconcileSummary(runner_set=key))
        finally:
            set_current_runner_set(None)

    async def _reconcile(self, namespace: str, name: str, summary: ReconcileSummary) -> ReconcileSummary:
        try:
            runner_set = await self.store.get_runner_set(namespace, name)
        except NotFoundError:
            logger.debug(f"Runner set {summary.runner_set} no longer exists, nothing to do")
            return summary

        summary.desired_replicas = runner_set.spec.replicas

        # Phase 1: Runner set requested for deletion
        if runner_set.metadata.is_being_deleted:
            if runner_set.metadata.has_finalizer(EPHEMERAL_RUNNER_SET_FINALIZER):
                await self._finalize(runner_set, summary)
            return summary

        # Phase 2: Guard the runner set before any runner exists
        if not runner_set.metadata.has_finalizer(EPHEMERAL_RUNNER_SET_FINALIZER):
            logger.info("Adding finalizer")
            try:
                await self.store.patch_runner_set(
                    runner_set,
                    lambda obj: obj.metadata.add_finalizer(EPHEMERAL_RUNNER_SET_FINALIZER),
                )
            except Exception as e:
                logger.error(f"Failed to update runner set with finalizer added: {e}")
                raise
            summary.finalizer_added = True
            logger.info("Successfully added finalizer")
            return summary

        # Phase 3: Classify child runners
        try:
            runners = await self.store.list_ephemeral_runners(namespace, name)
        except Exception as e:
            logger.error(f"Unable to list child ephemeral runners: {e}")
            raise
        states = categorize_ephemeral_runners(runners)
        self._log_runner_counts("Ephemeral runner counts", states)

        # Phase 4: Clean up finished runners
        deleted, errors = await self._delete_runners(states.finished, "finished")
        summary.finished_runners_deleted = deleted
        self._raise_combined(errors, "Failed to delete finished ephemeral runners")

        # Phase 5: Scale
        total = states.total
        desired = runner_set.spec.replicas
        logger.info(f"SCALING COMPARISON: current={total}, desired={desired}")

        if total < desired:
            count = desired - total
            logger.info(f"SCALING UP: Creating {count} new ephemeral runners")
            await self._create_ephemeral_runners(runner_set, count, summary)
        elif total > desired:
            count = total - desired
            logger.info(f"SCALING DOWN: Deleting {count} idle ephemeral runners")
            await self._delete_idle_ephemeral_runners(runner_set, states.pending, states.running, count, summary)

        # Phase 6: Report the count made durable by this pass, always last
        current = total + summary.runners_created - summary.runners_removed
        summary.current_replicas = current
        if runner_set.status.current_replicas != current:
            logger.info(f"Updating status with current runners count: {current}")

            def set_current_replicas(obj: EphemeralRunnerSet) -> None:
                obj.status.current_replicas = current

            try:
                await self.store.patch_runner_set_status(runner_set, set_current_replicas)
            except Exception as e:
                logger.error(f"Failed to update status with current runners count: {e}")
                raise
            summary.status_updated = True

        logger.info(f"Reconcile completed: {summary.to_dict()['actions']}")
        return summary

    # =========================================================================
    # TEARDOWN: Drain runners, then release the finalizer
    # =========================================================================

    async def _finalize(self, runner_set: EphemeralRunnerSet, summary: ReconcileSummary) -> None:
        logger.info("Deleting resources")
        try:
            done = await self._clean_up_ephemeral_runners(runner_set, summary)
        except Exception as e:
            logger.error(f"Failed to clean up ephemeral runners: {e}")
            raise

        if not done:
            logger.info("Waiting for resources to be deleted")
            return

        logger.info("Removing finalizer")
        try:
            await self.store.patch_runner_set(
                runner_set,
                lambda obj: obj.metadata.remove_finalizer(EPHEMERAL_RUNNER_SET_FINALIZER),
            )
        except NotFoundError:
            pass
        except Exception as e:
            logger.error(f"Failed to update runner set with removed finalizer: {e}")
            raise

        summary.finalizer_removed = True
        logger.info("Successfully removed finalizer after cleanup")

    async def _clean_up_ephemeral_runners(self, runner_set: EphemeralRunnerSet, summary: ReconcileSummary) -> bool:
        """
        One teardown pass. Returns True only when no runner is left.

        Any pass that had something to delete returns False, so completion is
        always confirmed by a fresh list on a later pass.
        """
        runners = await self.store.list_ephemeral_runners(runner_set.metadata.namespace, runner_set.metadata.name)
        if not runners:
            logger.info("All ephemeral runners are deleted")
            return True

        states = categorize_ephemeral_runners(runners)
        self._log_runner_counts("Clean up runner counts", states)

        logger.info("Cleanup finished or failed ephemeral runners")
        finished_deleted, finished_errors = await self._delete_runners(states.finished, "finished")
        failed_deleted, failed_errors = await self._delete_runners(states.failed, "failed")
        summary.finished_runners_deleted = finished_deleted
        summary.failed_runners_deleted = failed_deleted
        self._raise_combined(finished_errors + failed_errors, "Failed to delete ephemeral runners")

        if not states.has_active:
            return False

        gateway = await self._gateway_for(runner_set)

        logger.info("Cleanup pending or running ephemeral runners")
        errors: List[BaseException] = []
        for runner in states.pending + states.running:
            logger.info(f"Removing ephemeral runner {runner.name} from the service")
            outcome = await gateway.remove(runner)
            if outcome.error is not None:
                errors.append(outcome.error)
            elif outcome.removed:
                summary.runners_removed += 1
            else:
                summary.runners_skipped += 1

        self._raise_combined(errors, "Failed to remove ephemeral runners from the service")
        return False

    # =========================================================================
    # SCALE UP
    # =========================================================================

    async def _create_ephemeral_runners(
        self,
        runner_set: EphemeralRunnerSet,
        count: int,
        summary: ReconcileSummary,
    ) -> None:
        """Create count runners. Every unit is attempted; failures are raised together."""
        errors: List[BaseException] = []
        for i in range(count):
            try:
                runner = self.runner_builder(runner_set)
                # Make sure that we own the runner we create
                set_controller_reference(runner_set, runner)
            except Exception as e:
                logger.error(f"Failed to build ephemeral runner {i + 1}/{count}: {e}")
                errors.append(e)
                continue

            logger.info(f"Creating new ephemeral runner {i + 1}/{count}")
            try:
                created = await self.store.create_ephemeral_runner(runner)
            except Exception as e:
                logger.error(f"Failed to create ephemeral runner {i + 1}/{count}: {e}")
                errors.append(e)
                continue

            summary.runners_created += 1
            logger.info(f"Created new ephemeral runner {created.name}")

        self._raise_combined(errors, "Failed to create ephemeral runners")

    # =========================================================================
    # SCALE DOWN
    # =========================================================================

    async def _delete_idle_ephemeral_runners(
        self,
        runner_set: EphemeralRunnerSet,
        pending: Sequence[EphemeralRunner],
        running: Sequence[EphemeralRunner],
        count: int,
        summary: ReconcileSummary,
    ) -> None:
        """
        Remove up to count idle runners, oldest pending first, then oldest running.

        Only runners registered with the Actions service (non-zero runner id) and
        not assigned a job are candidates. Falling short of count is expected;
        the next reconcile, triggered by a runner status update, picks up the rest.
        """
        candidates = order_scale_down_candidates(pending, running)
        if not candidates:
            logger.info("No pending or running ephemeral runners at this time for scale down")
            return

        gateway = await self._gateway_for(runner_set)

        errors: List[BaseException] = []
        deleted_count = 0
        for runner in candidates:
            if runner.status.runner_id == 0:
                logger.info(f"[SCALE_DOWN] Skipping ephemeral runner {runner.name}: not registered yet")
                summary.runners_skipped += 1
                continue

            if runner.status.job_request_id > 0:
                logger.info(f"[SCALE_DOWN] Skipping ephemeral runner {runner.name}: running job {runner.status.job_request_id}")
                summary.runners_skipped += 1
                continue

            logger.info(f"[SCALE_DOWN] Removing idle ephemeral runner {runner.name}")
            outcome = await gateway.remove(runner)
            if outcome.error is not None:
                errors.append(outcome.error)
                continue
            if outcome.status == RemovalStatus.STILL_BUSY:
                summary.runners_skipped += 1
                continue

            deleted_count += 1
            summary.runners_removed += 1
            if deleted_count == count:
                break

        if deleted_count < count:
            logger.info(f"[SCALE_DOWN] Removed {deleted_count}/{count} runners, the rest are left for a later pass")

        self._raise_combined(errors, "Failed to delete idle runners")

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _delete_runners(
        self,
        runners: Sequence[EphemeralRunner],
        reason: str,
    ) -> Tuple[int, List[BaseException]]:
        """Delete runners directly (no Actions service call). Already-gone counts as deleted."""
        deleted = 0
        errors: List[BaseException] = []
        for runner in runners:
            set_current_runner(runner.name)
            try:
                logger.info(f"RUNNER_LIFECYCLE [Runner {runner.name}] Deleting {reason} ephemeral runner")
                await self.store.delete_ephemeral_runner(runner)
                deleted += 1
            except NotFoundError:
                deleted += 1
            except Exception as e:
                logger.error(f"RUNNER_LIFECYCLE [Runner {runner.name}] Failed to delete: {e}")
                errors.append(e)
            finally:
                set_current_runner(None)
        return deleted, errors

    async def _gateway_for(self, runner_set: EphemeralRunnerSet) -> RunnerDeregistrationGateway:
        """Resolve a fresh Actions client from the runner set's credential secret."""
        runner_spec = runner_set.spec.ephemeral_runner_spec
        try:
            secret_data = await self.store.get_secret(runner_set.metadata.namespace, runner_spec.github_config_secret)
        except Exception as e:
            raise ActionsClientError(f"failed to get secret {runner_spec.github_config_secret!r}: {e}") from e

        actions_client = await self.actions_clients.get_client(
            runner_spec.github_config_url,
            runner_set.metadata.namespace,
            secret_data,
        )
        return RunnerDeregistrationGateway(self.store, actions_client)

    def _raise_combined(self, errors: Sequence[BaseException], message: str) -> None:
        err = combine_errors(errors)
        if err is not None:
            logger.error(f"{message}: {err}")
            raise err

    def _log_runner_counts(self, title: str, states: RunnerStates) -> None:
        counts = states.counts()
        logger.info(
            f"{title}: pending={counts['pending']}, running={counts['running']}, "
            f"finished={counts['finished']}, failed={counts['failed']}, deleting={counts['deleting']}"
        )
