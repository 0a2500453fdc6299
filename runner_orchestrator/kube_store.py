"""
Kubernetes-backed resource store.

Runner sets and runners are actions.github.com/v1alpha1 custom resources; the
credential secret is a core/v1 Secret. The kubernetes client is blocking, so
every call runs in a worker thread.
"""

import asyncio
import base64
import copy
import logging
import threading
from typing import Any, AsyncIterator, Callable, Dict, List

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from .errors import ConflictError, NotFoundError, ResourceStoreError
from .models import (
    API_GROUP,
    API_VERSION,
    EphemeralRunner,
    EphemeralRunnerSet,
    owning_runner_set_name,
)
from .resource_store import ADDED, DELETED, MODIFIED, ResourceStore, WatchEvent

logger = logging.getLogger(__name__)

RUNNER_SET_PLURAL = "ephemeralrunnersets"
RUNNER_PLURAL = "ephemeralrunners"


def load_kube_config(in_cluster: bool) -> None:
    if in_cluster:
        config.load_incluster_config()
    else:
        config.load_kube_config()


def _translate(e: ApiException, what: str) -> ResourceStoreError:
    if e.status == 404:
        return NotFoundError(f"{what} not found")
    if e.status == 409:
        return ConflictError(f"{what}: {e.reason}")
    return ResourceStoreError(f"{what}: {e.status} {e.reason}")


class KubernetesResourceStore(ResourceStore):
    """ResourceStore on top of the Kubernetes API."""

    def __init__(self, namespace: str = "", api_client: client.ApiClient = None):
        self.namespace = namespace
        self._api_client = api_client or client.ApiClient()
        self._custom = client.CustomObjectsApi(self._api_client)
        self._core = client.CoreV1Api(self._api_client)

    async def _call(self, what: str, fn: Callable, *args, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            raise _translate(e, what) from e

    async def get_runner_set(self, namespace: str, name: str) -> EphemeralRunnerSet:
        data = await self._call(
            f"{RUNNER_SET_PLURAL} \"{name}\"",
            self._custom.get_namespaced_custom_object,
            API_GROUP, API_VERSION, namespace, RUNNER_SET_PLURAL, name,
        )
        return EphemeralRunnerSet.from_dict(data)

    async def list_runner_sets(self, namespace: str = "") -> List[EphemeralRunnerSet]:
        if namespace:
            data = await self._call(
                RUNNER_SET_PLURAL,
                self._custom.list_namespaced_custom_object,
                API_GROUP, API_VERSION, namespace, RUNNER_SET_PLURAL,
            )
        else:
            data = await self._call(
                RUNNER_SET_PLURAL,
                self._custom.list_cluster_custom_object,
                API_GROUP, API_VERSION, RUNNER_SET_PLURAL,
            )
        return [EphemeralRunnerSet.from_dict(item) for item in data.get("items", [])]

    async def list_ephemeral_runners(self, namespace: str, owner_name: str) -> List[EphemeralRunner]:
        data = await self._call(
            RUNNER_PLURAL,
            self._custom.list_namespaced_custom_object,
            API_GROUP, API_VERSION, namespace, RUNNER_PLURAL,
        )
        runners = [EphemeralRunner.from_dict(item) for item in data.get("items", [])]
        # The API server has no owner field selector; apply the owner index here
        return [r for r in runners if owning_runner_set_name(r) == owner_name]

    async def create_ephemeral_runner(self, runner: EphemeralRunner) -> EphemeralRunner:
        body = runner.to_dict()
        body.pop("status", None)
        body["metadata"].pop("resourceVersion", None)
        name = runner.metadata.name or runner.metadata.generate_name
        data = await self._call(
            f"{RUNNER_PLURAL} \"{name}\"",
            self._custom.create_namespaced_custom_object,
            API_GROUP, API_VERSION, runner.metadata.namespace, RUNNER_PLURAL, body,
        )
        return EphemeralRunner.from_dict(data)

    async def delete_ephemeral_runner(self, runner: EphemeralRunner) -> None:
        await self._call(
            f"{RUNNER_PLURAL} \"{runner.metadata.name}\"",
            self._custom.delete_namespaced_custom_object,
            API_GROUP, API_VERSION, runner.metadata.namespace, RUNNER_PLURAL, runner.metadata.name,
        )

    async def patch_runner_set(
        self,
        runner_set: EphemeralRunnerSet,
        mutate: Callable[[EphemeralRunnerSet], None],
    ) -> EphemeralRunnerSet:
        updated = copy.deepcopy(runner_set)
        mutate(updated)
        # Finalizers are the only metadata this orchestrator writes
        body = {
            "metadata": {
                "resourceVersion": runner_set.metadata.resource_version,
                "finalizers": list(updated.metadata.finalizers),
            },
        }
        data = await self._call(
            f"{RUNNER_SET_PLURAL} \"{runner_set.metadata.name}\"",
            self._custom.patch_namespaced_custom_object,
            API_GROUP, API_VERSION, runner_set.metadata.namespace, RUNNER_SET_PLURAL,
            runner_set.metadata.name, body,
        )
        return EphemeralRunnerSet.from_dict(data)

    async def patch_runner_set_status(
        self,
        runner_set: EphemeralRunnerSet,
        mutate: Callable[[EphemeralRunnerSet], None],
    ) -> EphemeralRunnerSet:
        updated = copy.deepcopy(runner_set)
        mutate(updated)
        body = {
            "metadata": {"resourceVersion": runner_set.metadata.resource_version},
            "status": updated.to_dict()["status"],
        }
        data = await self._call(
            f"{RUNNER_SET_PLURAL} \"{runner_set.metadata.name}\" status",
            self._custom.patch_namespaced_custom_object_status,
            API_GROUP, API_VERSION, runner_set.metadata.namespace, RUNNER_SET_PLURAL,
            runner_set.metadata.name, body,
        )
        return EphemeralRunnerSet.from_dict(data)

    async def get_secret(self, namespace: str, name: str) -> Dict[str, bytes]:
        secret = await self._call(
            f"secrets \"{name}\"",
            self._core.read_namespaced_secret,
            name, namespace,
        )
        return {key: base64.b64decode(value) for key, value in (secret.data or {}).items()}

    async def watch(self) -> AsyncIterator[WatchEvent]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stop = threading.Event()
        watchers = []

        def stream(plural: str, parse: Callable[[Dict[str, Any]], Any]) -> None:
            w = watch.Watch()
            watchers.append(w)
            while not stop.is_set():
                try:
                    if self.namespace:
                        events = w.stream(
                            self._custom.list_namespaced_custom_object,
                            API_GROUP, API_VERSION, self.namespace, plural,
                        )
                    else:
                        events = w.stream(
                            self._custom.list_cluster_custom_object,
                            API_GROUP, API_VERSION, plural,
                        )
                    for event in events:
                        if event["type"] not in (ADDED, MODIFIED, DELETED):
                            continue
                        obj = parse(event["object"])
                        loop.call_soon_threadsafe(queue.put_nowait, WatchEvent(type=event["type"], obj=obj))
                except ApiException as e:
                    if stop.is_set():
                        return
                    logger.warning(f"Watch on {plural} ended ({e.status} {e.reason}), restarting")
                    stop.wait(1)
                except Exception as e:
                    if stop.is_set():
                        return
                    logger.warning(f"Watch on {plural} failed ({e}), restarting")
                    stop.wait(1)

        threads = [
            threading.Thread(target=stream, args=(RUNNER_SET_PLURAL, EphemeralRunnerSet.from_dict), daemon=True),
            threading.Thread(target=stream, args=(RUNNER_PLURAL, EphemeralRunner.from_dict), daemon=True),
        ]
        for t in threads:
            t.start()

        try:
            while True:
                yield await queue.get()
        finally:
            stop.set()
            for w in watchers:
                w.stop()
