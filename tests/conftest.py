import pytest

from runner_orchestrator.reconciler import EphemeralRunnerSetReconciler
from runner_orchestrator.resource_store import InMemoryResourceStore

from factories import (
    BASE_TIME,
    NAMESPACE,
    SECRET_NAME,
    FakeActionsClient,
    FakeActionsClientFactory,
)


@pytest.fixture
def store():
    store = InMemoryResourceStore(clock=lambda: BASE_TIME)
    store.add_secret(NAMESPACE, SECRET_NAME, {"github_token": b"ghs_test"})
    return store


@pytest.fixture
def actions_client():
    return FakeActionsClient()


@pytest.fixture
def actions_clients(actions_client):
    return FakeActionsClientFactory(actions_client)


@pytest.fixture
def reconciler(store, actions_clients):
    return EphemeralRunnerSetReconciler(store, actions_clients)
