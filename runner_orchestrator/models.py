"""
Resource model for ephemeral runner sets and their ephemeral runners.

Both kinds mirror the shape of the actions.github.com/v1alpha1 custom resources:
- EphemeralRunnerSet: desired replica count + runner template (the parent)
- EphemeralRunner: one ephemeral runner owned by exactly one set (the child)

Objects convert to and from the camelCase JSON the resource store speaks.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

API_GROUP = "actions.github.com"
API_VERSION = "v1alpha1"
GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"

EPHEMERAL_RUNNER_SET_KIND = "EphemeralRunnerSet"
EPHEMERAL_RUNNER_KIND = "EphemeralRunner"

# Deletion guard held by every runner set until its runners are torn down
EPHEMERAL_RUNNER_SET_FINALIZER = "ephemeralrunner.actions.github.com/finalizer"

SCALE_SET_NAME_LABEL = "actions.github.com/scale-set-name"


class RunnerPhase(str, Enum):
    """Lifecycle phase reported on an ephemeral runner's status."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


@dataclass
class OwnerReference:
    api_version: str
    kind: str
    name: str
    uid: str = ""
    controller: bool = False
    block_owner_deletion: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OwnerReference':
        return cls(
            api_version=data.get("apiVersion", ""),
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            uid=data.get("uid", ""),
            controller=bool(data.get("controller", False)),
            block_owner_deletion=bool(data.get("blockOwnerDeletion", False)),
        )


@dataclass
class ObjectMeta:
    name: str = ""
    namespace: str = ""
    generate_name: str = ""
    uid: str = ""
    resource_version: str = ""
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    owner_references: List[OwnerReference] = field(default_factory=list)

    @property
    def is_being_deleted(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> None:
        if finalizer not in self.finalizers:
            self.finalizers.append(finalizer)

    def remove_finalizer(self, finalizer: str) -> None:
        self.finalizers = [f for f in self.finalizers if f != finalizer]

    def controller_owner(self) -> Optional[OwnerReference]:
        """Return the owner reference flagged as controller, if any."""
        for ref in self.owner_references:
            if ref.controller:
                return ref
        return None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.generate_name:
            data["generateName"] = self.generate_name
        if self.uid:
            data["uid"] = self.uid
        if self.resource_version:
            data["resourceVersion"] = self.resource_version
        if self.creation_timestamp:
            data["creationTimestamp"] = format_timestamp(self.creation_timestamp)
        if self.deletion_timestamp:
            data["deletionTimestamp"] = format_timestamp(self.deletion_timestamp)
        if self.labels:
            data["labels"] = dict(self.labels)
        if self.annotations:
            data["annotations"] = dict(self.annotations)
        if self.finalizers:
            data["finalizers"] = list(self.finalizers)
        if self.owner_references:
            data["ownerReferences"] = [ref.to_dict() for ref in self.owner_references]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ObjectMeta':
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            generate_name=data.get("generateName", ""),
            uid=data.get("uid", ""),
            resource_version=data.get("resourceVersion", ""),
            creation_timestamp=parse_timestamp(data.get("creationTimestamp")),
            deletion_timestamp=parse_timestamp(data.get("deletionTimestamp")),
            labels=dict(data.get("labels") or {}),
            annotations=dict(data.get("annotations") or {}),
            finalizers=list(data.get("finalizers") or []),
            owner_references=[OwnerReference.from_dict(r) for r in data.get("ownerReferences") or []],
        )


@dataclass
class EphemeralRunnerSpec:
    """Runner template shared by every runner of a set."""

    github_config_url: str = ""
    github_config_secret: str = ""
    runner_scale_set_id: int = 0
    # Opaque pod template, passed through to the runtime untouched
    template: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "githubConfigUrl": self.github_config_url,
            "githubConfigSecret": self.github_config_secret,
        }
        if self.runner_scale_set_id:
            data["runnerScaleSetId"] = self.runner_scale_set_id
        if self.template:
            data["spec"] = copy.deepcopy(self.template)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EphemeralRunnerSpec':
        return cls(
            github_config_url=data.get("githubConfigUrl", ""),
            github_config_secret=data.get("githubConfigSecret", ""),
            runner_scale_set_id=int(data.get("runnerScaleSetId") or 0),
            template=copy.deepcopy(data.get("spec") or {}),
        )


@dataclass
class EphemeralRunnerSetSpec:
    replicas: int = 0
    ephemeral_runner_spec: EphemeralRunnerSpec = field(default_factory=EphemeralRunnerSpec)


@dataclass
class EphemeralRunnerSetStatus:
    current_replicas: int = 0


@dataclass
class EphemeralRunnerSet:
    """Parent resource: declares how many ephemeral runners should exist."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: EphemeralRunnerSetSpec = field(default_factory=EphemeralRunnerSetSpec)
    status: EphemeralRunnerSetStatus = field(default_factory=EphemeralRunnerSetStatus)

    kind = EPHEMERAL_RUNNER_SET_KIND

    @property
    def key(self) -> str:
        return object_key(self.metadata.namespace, self.metadata.name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": GROUP_VERSION,
            "kind": self.kind,
            "metadata": self.metadata.to_dict(),
            "spec": {
                "replicas": self.spec.replicas,
                "ephemeralRunnerSpec": self.spec.ephemeral_runner_spec.to_dict(),
            },
            "status": {"currentReplicas": self.status.current_replicas},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EphemeralRunnerSet':
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata") or {}),
            spec=EphemeralRunnerSetSpec(
                replicas=int(spec.get("replicas") or 0),
                ephemeral_runner_spec=EphemeralRunnerSpec.from_dict(spec.get("ephemeralRunnerSpec") or {}),
            ),
            status=EphemeralRunnerSetStatus(current_replicas=int(status.get("currentReplicas") or 0)),
        )


@dataclass
class EphemeralRunnerStatus:
    phase: str = ""
    runner_id: int = 0          # Actions service id, 0 until registered
    runner_name: str = ""
    job_request_id: int = 0     # Non-zero while a job is assigned
    reason: str = ""
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.phase:
            data["phase"] = self.phase
        if self.runner_id:
            data["runnerId"] = self.runner_id
        if self.runner_name:
            data["runnerName"] = self.runner_name
        if self.job_request_id:
            data["jobRequestId"] = self.job_request_id
        if self.reason:
            data["reason"] = self.reason
        if self.message:
            data["message"] = self.message
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EphemeralRunnerStatus':
        return cls(
            phase=data.get("phase", ""),
            runner_id=int(data.get("runnerId") or 0),
            runner_name=data.get("runnerName", ""),
            job_request_id=int(data.get("jobRequestId") or 0),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
        )


@dataclass
class EphemeralRunner:
    """Child resource: one ephemeral runner tracked for its owning set."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: EphemeralRunnerSpec = field(default_factory=EphemeralRunnerSpec)
    status: EphemeralRunnerStatus = field(default_factory=EphemeralRunnerStatus)

    kind = EPHEMERAL_RUNNER_KIND

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def key(self) -> str:
        return object_key(self.metadata.namespace, self.metadata.name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": GROUP_VERSION,
            "kind": self.kind,
            "metadata": self.metadata.to_dict(),
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EphemeralRunner':
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata") or {}),
            spec=EphemeralRunnerSpec.from_dict(data.get("spec") or {}),
            status=EphemeralRunnerStatus.from_dict(data.get("status") or {}),
        )


def owning_runner_set_name(runner: EphemeralRunner) -> Optional[str]:
    """
    Owner index function: name of the runner set controlling this runner.

    Only a controller reference of this API group's EphemeralRunnerSet kind
    counts; anything else is not indexed.
    """
    owner = runner.metadata.controller_owner()
    if owner is None:
        return None
    if owner.api_version != GROUP_VERSION or owner.kind != EPHEMERAL_RUNNER_SET_KIND:
        return None
    return owner.name


def object_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def split_key(key: str) -> tuple:
    namespace, _, name = key.rpartition("/")
    return namespace, name


def format_timestamp(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(ts: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp (or pass through a datetime)."""
    if not ts:
        return None
    if isinstance(ts, datetime):
        dt = ts
    else:
        dt = datetime.fromisoformat(str(ts).replace('Z', '+00:00'))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
