"""
Resource store interface and an in-memory implementation.

The store persists runner sets and runners and lets the controller watch them.
Semantics follow the Kubernetes API:
- every write bumps the object's resource_version
- patches carry the caller's resource_version and fail on a stale one
- deleting an object that still has finalizers only marks it for deletion;
  the object disappears once its last finalizer is removed
- erasing a runner set garbage-collects the runners it controls
"""

import abc
import asyncio
import copy
import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, List, Optional, Union

from .errors import ConflictError, NotFoundError
from .models import (
    EphemeralRunner,
    EphemeralRunnerSet,
    object_key,
    owning_runner_set_name,
)

logger = logging.getLogger(__name__)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"

# Same alphabet the API server uses for generateName suffixes
_NAME_SUFFIX_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"
_NAME_SUFFIX_LENGTH = 5

StoredObject = Union[EphemeralRunnerSet, EphemeralRunner]


@dataclass
class WatchEvent:
    type: str
    obj: StoredObject


class ResourceStore(abc.ABC):
    """Everything the reconciler and controller need from the resource store."""

    @abc.abstractmethod
    async def get_runner_set(self, namespace: str, name: str) -> EphemeralRunnerSet:
        """Fetch one runner set. Raises NotFoundError."""

    @abc.abstractmethod
    async def list_runner_sets(self, namespace: str = "") -> List[EphemeralRunnerSet]:
        """List runner sets, optionally limited to one namespace."""

    @abc.abstractmethod
    async def list_ephemeral_runners(self, namespace: str, owner_name: str) -> List[EphemeralRunner]:
        """List runners in a namespace controlled by the named runner set."""

    @abc.abstractmethod
    async def create_ephemeral_runner(self, runner: EphemeralRunner) -> EphemeralRunner:
        """Create a runner; a generate_name prefix is completed by the store."""

    @abc.abstractmethod
    async def delete_ephemeral_runner(self, runner: EphemeralRunner) -> None:
        """Request deletion of a runner. Raises NotFoundError if already gone."""

    @abc.abstractmethod
    async def patch_runner_set(
        self,
        runner_set: EphemeralRunnerSet,
        mutate: Callable[[EphemeralRunnerSet], None],
    ) -> EphemeralRunnerSet:
        """Apply mutate to metadata/spec, conditioned on runner_set's resource_version."""

    @abc.abstractmethod
    async def patch_runner_set_status(
        self,
        runner_set: EphemeralRunnerSet,
        mutate: Callable[[EphemeralRunnerSet], None],
    ) -> EphemeralRunnerSet:
        """Apply mutate to status, conditioned on runner_set's resource_version."""

    @abc.abstractmethod
    async def get_secret(self, namespace: str, name: str) -> Dict[str, bytes]:
        """Read a credential secret's data. Raises NotFoundError."""

    @abc.abstractmethod
    def watch(self) -> AsyncIterator[WatchEvent]:
        """Stream changes to runner sets and runners."""


class InMemoryResourceStore(ResourceStore):
    """Process-local store with API-server-like semantics."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._runner_sets: Dict[str, EphemeralRunnerSet] = {}
        self._runners: Dict[str, EphemeralRunner] = {}
        self._secrets: Dict[str, Dict[str, bytes]] = {}
        self._version = 0
        self._subscribers: List[asyncio.Queue] = []

    # =========================================================================
    # Seeding helpers
    # =========================================================================

    def add_runner_set(self, runner_set: EphemeralRunnerSet) -> EphemeralRunnerSet:
        """Insert a runner set as-is (keeping its timestamps), bumping its version."""
        stored = copy.deepcopy(runner_set)
        self._prepare_new(stored)
        self._runner_sets[stored.key] = stored
        self._publish(ADDED, stored)
        return copy.deepcopy(stored)

    def add_runner(self, runner: EphemeralRunner) -> EphemeralRunner:
        """Insert a runner as-is (keeping its timestamps), bumping its version."""
        stored = copy.deepcopy(runner)
        self._prepare_new(stored)
        self._runners[stored.key] = stored
        self._publish(ADDED, stored)
        return copy.deepcopy(stored)

    def add_secret(self, namespace: str, name: str, data: Dict[str, bytes]) -> None:
        self._secrets[object_key(namespace, name)] = dict(data)

    def runner_names(self, namespace: str, owner_name: str) -> List[str]:
        return [
            r.metadata.name for r in self._runners.values()
            if r.metadata.namespace == namespace and owning_runner_set_name(r) == owner_name
        ]

    async def delete_runner_set(self, namespace: str, name: str) -> None:
        """Request deletion of a runner set (finalizers hold it until released)."""
        key = object_key(namespace, name)
        stored = self._runner_sets.get(key)
        if stored is None:
            raise NotFoundError(f"ephemeralrunnersets \"{name}\" not found")
        self._request_deletion(self._runner_sets, stored)

    # =========================================================================
    # ResourceStore
    # =========================================================================

    async def get_runner_set(self, namespace: str, name: str) -> EphemeralRunnerSet:
        stored = self._runner_sets.get(object_key(namespace, name))
        if stored is None:
            raise NotFoundError(f"ephemeralrunnersets \"{name}\" not found")
        return copy.deepcopy(stored)

    async def list_runner_sets(self, namespace: str = "") -> List[EphemeralRunnerSet]:
        return [
            copy.deepcopy(rs) for rs in self._runner_sets.values()
            if not namespace or rs.metadata.namespace == namespace
        ]

    async def list_ephemeral_runners(self, namespace: str, owner_name: str) -> List[EphemeralRunner]:
        return [
            copy.deepcopy(r) for r in self._runners.values()
            if r.metadata.namespace == namespace and owning_runner_set_name(r) == owner_name
        ]

    async def create_ephemeral_runner(self, runner: EphemeralRunner) -> EphemeralRunner:
        stored = copy.deepcopy(runner)
        if not stored.metadata.name:
            if not stored.metadata.generate_name:
                raise ConflictError("name or generateName is required")
            stored.metadata.name = self._generate_name(stored.metadata.namespace, stored.metadata.generate_name)
        if stored.key in self._runners:
            raise ConflictError(f"ephemeralrunners \"{stored.metadata.name}\" already exists")

        stored.metadata.creation_timestamp = self._clock()
        stored.metadata.deletion_timestamp = None
        self._prepare_new(stored)
        self._runners[stored.key] = stored
        self._publish(ADDED, stored)
        return copy.deepcopy(stored)

    async def delete_ephemeral_runner(self, runner: EphemeralRunner) -> None:
        stored = self._runners.get(runner.key)
        if stored is None:
            raise NotFoundError(f"ephemeralrunners \"{runner.metadata.name}\" not found")
        self._request_deletion(self._runners, stored)

    async def patch_runner_set(
        self,
        runner_set: EphemeralRunnerSet,
        mutate: Callable[[EphemeralRunnerSet], None],
    ) -> EphemeralRunnerSet:
        current = self._checked_runner_set(runner_set)
        updated = copy.deepcopy(current)
        mutate(updated)
        # Status belongs to its own subresource
        updated.status = copy.deepcopy(current.status)
        return self._store_runner_set(current, updated)

    async def patch_runner_set_status(
        self,
        runner_set: EphemeralRunnerSet,
        mutate: Callable[[EphemeralRunnerSet], None],
    ) -> EphemeralRunnerSet:
        current = self._checked_runner_set(runner_set)
        updated = copy.deepcopy(current)
        mutate(updated)
        updated.metadata = copy.deepcopy(current.metadata)
        updated.spec = copy.deepcopy(current.spec)
        return self._store_runner_set(current, updated)

    async def get_secret(self, namespace: str, name: str) -> Dict[str, bytes]:
        data = self._secrets.get(object_key(namespace, name))
        if data is None:
            raise NotFoundError(f"secrets \"{name}\" not found")
        return dict(data)

    async def watch(self) -> AsyncIterator[WatchEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.remove(queue)

    # =========================================================================
    # Internals
    # =========================================================================

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _prepare_new(self, obj: StoredObject) -> None:
        if not obj.metadata.uid:
            obj.metadata.uid = str(uuid.uuid4())
        if obj.metadata.creation_timestamp is None:
            obj.metadata.creation_timestamp = self._clock()
        obj.metadata.resource_version = self._next_version()

    def _generate_name(self, namespace: str, prefix: str) -> str:
        while True:
            suffix = "".join(random.choice(_NAME_SUFFIX_ALPHABET) for _ in range(_NAME_SUFFIX_LENGTH))
            name = f"{prefix}{suffix}"
            if object_key(namespace, name) not in self._runners:
                return name

    def _checked_runner_set(self, runner_set: EphemeralRunnerSet) -> EphemeralRunnerSet:
        current = self._runner_sets.get(runner_set.key)
        if current is None:
            raise NotFoundError(f"ephemeralrunnersets \"{runner_set.metadata.name}\" not found")
        expected = runner_set.metadata.resource_version
        if expected and expected != current.metadata.resource_version:
            raise ConflictError(
                f"Operation cannot be fulfilled on ephemeralrunnersets \"{runner_set.metadata.name}\": "
                f"the object has been modified; please apply your changes to the latest version and try again"
            )
        return current

    def _store_runner_set(self, current: EphemeralRunnerSet, updated: EphemeralRunnerSet) -> EphemeralRunnerSet:
        # Identity fields are immutable
        updated.metadata.name = current.metadata.name
        updated.metadata.namespace = current.metadata.namespace
        updated.metadata.uid = current.metadata.uid
        updated.metadata.creation_timestamp = current.metadata.creation_timestamp
        updated.metadata.deletion_timestamp = current.metadata.deletion_timestamp

        if updated == current:
            return copy.deepcopy(current)

        updated.metadata.resource_version = self._next_version()
        if updated.metadata.is_being_deleted and not updated.metadata.finalizers:
            self._erase(self._runner_sets, updated)
        else:
            self._runner_sets[updated.key] = updated
            self._publish(MODIFIED, updated)
        return copy.deepcopy(updated)

    def _request_deletion(self, table: Dict[str, StoredObject], stored: StoredObject) -> None:
        if not stored.metadata.finalizers:
            self._erase(table, stored)
            return
        if stored.metadata.is_being_deleted:
            return
        stored.metadata.deletion_timestamp = self._clock()
        stored.metadata.resource_version = self._next_version()
        self._publish(MODIFIED, stored)

    def _erase(self, table: Dict[str, StoredObject], stored: StoredObject) -> None:
        table.pop(stored.key, None)
        self._publish(DELETED, stored)

        if isinstance(stored, EphemeralRunnerSet):
            owned = [
                r for r in self._runners.values()
                if r.metadata.namespace == stored.metadata.namespace
                and owning_runner_set_name(r) == stored.metadata.name
            ]
            for runner in owned:
                logger.debug(f"Garbage collecting runner {runner.key} owned by {stored.key}")
                self._request_deletion(self._runners, runner)

    def _publish(self, event_type: str, obj: StoredObject) -> None:
        for queue in self._subscribers:
            queue.put_nowait(WatchEvent(type=event_type, obj=copy.deepcopy(obj)))
