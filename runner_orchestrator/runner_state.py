"""
Runner state model for the runner set orchestrator.

Provides a single source of truth for runner state derivation:
- RunnerCategory enum: the five buckets a runner can fall into
- categorize_runner(): Pure function mapping one runner to its bucket
- categorize_ephemeral_runners(): Partitions a runner list into RunnerStates
- order_scale_down_candidates(): Deterministic oldest-first scale-down order

Nothing in here performs I/O; the reconciler pattern-matches on the results.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .models import EphemeralRunner, RunnerPhase


class RunnerCategory(Enum):
    """Derived bucket for an ephemeral runner."""

    PENDING = "pending"      # Pending or no phase reported yet
    RUNNING = "running"
    FINISHED = "finished"    # Succeeded
    FAILED = "failed"
    DELETING = "deleting"    # Deletion requested, not yet finalized


def categorize_runner(runner: EphemeralRunner) -> RunnerCategory:
    """Map a runner to its category. Deletion intent wins over any phase."""
    if runner.metadata.is_being_deleted:
        return RunnerCategory.DELETING

    phase = runner.status.phase
    if phase == RunnerPhase.RUNNING.value:
        return RunnerCategory.RUNNING
    if phase == RunnerPhase.SUCCEEDED.value:
        return RunnerCategory.FINISHED
    if phase == RunnerPhase.FAILED.value:
        return RunnerCategory.FAILED

    # Pending or no phase: the runner has not had a chance to report yet
    return RunnerCategory.PENDING


@dataclass
class RunnerStates:
    """Runners of one set partitioned by category, each in list order."""

    pending: List[EphemeralRunner] = field(default_factory=list)
    running: List[EphemeralRunner] = field(default_factory=list)
    finished: List[EphemeralRunner] = field(default_factory=list)
    failed: List[EphemeralRunner] = field(default_factory=list)
    deleting: List[EphemeralRunner] = field(default_factory=list)

    @property
    def total(self) -> int:
        """
        Runners counted against the desired replica count.

        Failed runners still count: they may hold state on the service side and
        are not proactively removed by steady-state reconciliation. Deleting
        runners never count.
        """
        return len(self.pending) + len(self.running) + len(self.failed)

    @property
    def has_active(self) -> bool:
        return bool(self.pending or self.running)

    def bucket(self, category: RunnerCategory) -> List[EphemeralRunner]:
        return {
            RunnerCategory.PENDING: self.pending,
            RunnerCategory.RUNNING: self.running,
            RunnerCategory.FINISHED: self.finished,
            RunnerCategory.FAILED: self.failed,
            RunnerCategory.DELETING: self.deleting,
        }[category]

    def counts(self) -> Dict[str, int]:
        return {category.value: len(self.bucket(category)) for category in RunnerCategory}


def categorize_ephemeral_runners(runners: Iterable[EphemeralRunner]) -> RunnerStates:
    """Partition runners into five disjoint, order-preserving groups."""
    states = RunnerStates()
    for runner in runners:
        states.bucket(categorize_runner(runner)).append(runner)
    return states


def order_scale_down_candidates(
    pending: Sequence[EphemeralRunner],
    running: Sequence[EphemeralRunner],
) -> Tuple[EphemeralRunner, ...]:
    """
    Order runners for scale-down: oldest pending first, then oldest running.

    Returns a new tuple; the input sequences are left untouched. Sorting is
    stable, so runners with equal creation times keep their list order.
    """
    return tuple(sorted(pending, key=_creation_time)) + tuple(sorted(running, key=_creation_time))


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _creation_time(runner: EphemeralRunner) -> datetime:
    return runner.metadata.creation_timestamp or _EPOCH


@dataclass
class ReconcileSummary:
    """Summary of actions taken by one reconcile invocation."""
    runner_set: str
    desired_replicas: int = 0
    current_replicas: Optional[int] = None
    runners_created: int = 0
    finished_runners_deleted: int = 0
    failed_runners_deleted: int = 0
    runners_removed: int = 0
    runners_skipped: int = 0
    finalizer_added: bool = False
    finalizer_removed: bool = False
    status_updated: bool = False

    @property
    def mutated(self) -> bool:
        """Whether this invocation changed anything in the store."""
        return any((
            self.runners_created,
            self.finished_runners_deleted,
            self.failed_runners_deleted,
            self.runners_removed,
            self.finalizer_added,
            self.finalizer_removed,
            self.status_updated,
        ))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runner_set": self.runner_set,
            "desired_replicas": self.desired_replicas,
            "current_replicas": self.current_replicas,
            "actions": {
                "runners_created": self.runners_created,
                "finished_runners_deleted": self.finished_runners_deleted,
                "failed_runners_deleted": self.failed_runners_deleted,
                "runners_removed": self.runners_removed,
                "runners_skipped": self.runners_skipped,
                "finalizer_added": self.finalizer_added,
                "finalizer_removed": self.finalizer_removed,
                "status_updated": self.status_updated,
            },
        }
