"""
Builds new ephemeral runners from a runner set's template.
"""

import copy

from .models import (
    EPHEMERAL_RUNNER_SET_KIND,
    GROUP_VERSION,
    SCALE_SET_NAME_LABEL,
    EphemeralRunner,
    EphemeralRunnerSet,
    ObjectMeta,
    OwnerReference,
)


def new_ephemeral_runner(runner_set: EphemeralRunnerSet) -> EphemeralRunner:
    """Runner skeleton for runner_set; the store completes the generated name."""
    labels = dict(runner_set.metadata.labels)
    labels[SCALE_SET_NAME_LABEL] = runner_set.metadata.name

    return EphemeralRunner(
        metadata=ObjectMeta(
            generate_name=f"{runner_set.metadata.name}-runner-",
            namespace=runner_set.metadata.namespace,
            labels=labels,
            annotations=dict(runner_set.metadata.annotations),
        ),
        spec=copy.deepcopy(runner_set.spec.ephemeral_runner_spec),
    )


def set_controller_reference(runner_set: EphemeralRunnerSet, runner: EphemeralRunner) -> None:
    """
    Make runner_set the controlling owner of runner.

    Raises ValueError if another object already controls the runner or the two
    live in different namespaces.
    """
    if runner.metadata.namespace != runner_set.metadata.namespace:
        raise ValueError(
            f"cross-namespace owner references are disallowed: runner namespace "
            f"{runner.metadata.namespace!r}, owner namespace {runner_set.metadata.namespace!r}"
        )

    existing = runner.metadata.controller_owner()
    if existing is not None and (existing.kind, existing.name) != (EPHEMERAL_RUNNER_SET_KIND, runner_set.metadata.name):
        raise ValueError(f"runner is already owned by {existing.kind} {existing.name!r}")

    owner = OwnerReference(
        api_version=GROUP_VERSION,
        kind=EPHEMERAL_RUNNER_SET_KIND,
        name=runner_set.metadata.name,
        uid=runner_set.metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )
    runner.metadata.owner_references = [
        ref for ref in runner.metadata.owner_references if not ref.controller
    ] + [owner]
