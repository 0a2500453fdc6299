"""
Command line entry point for the runner set orchestrator.

    runner-orchestrator run                      # watch and reconcile until stopped
    runner-orchestrator reconcile <ns> <name>    # reconcile a single runner set once
    runner-orchestrator show-config
"""

import asyncio
import json
import logging
import signal

import typer
from dotenv import load_dotenv

from .actions_client import ActionsClientFactory
from .config import OrchestratorConfig
from .controller import RunnerSetController
from .kube_store import KubernetesResourceStore, load_kube_config
from .logging_config import setup_logging
from .reconciler import EphemeralRunnerSetReconciler

logger = logging.getLogger(__name__)

app = typer.Typer(help="Keeps ephemeral runner sets at their desired size.", no_args_is_help=True)


def _load_config() -> OrchestratorConfig:
    load_dotenv()
    config = OrchestratorConfig.from_env()
    setup_logging(config.log_level)
    return config


def _build(config: OrchestratorConfig):
    load_kube_config(config.kube_in_cluster)
    store = KubernetesResourceStore(namespace=config.watch_namespace)
    actions_clients = ActionsClientFactory(timeout_sec=config.actions_request_timeout_sec)
    reconciler = EphemeralRunnerSetReconciler(store, actions_clients)
    return store, actions_clients, reconciler


async def _run(config: OrchestratorConfig) -> None:
    store, actions_clients, reconciler = _build(config)
    controller = RunnerSetController(store, reconciler, config)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await controller.run(stop_event)
    finally:
        await actions_clients.aclose()


async def _reconcile_once(config: OrchestratorConfig, namespace: str, name: str) -> dict:
    _, actions_clients, reconciler = _build(config)
    try:
        summary = await reconciler.reconcile(namespace, name)
    finally:
        await actions_clients.aclose()
    return summary.to_dict()


@app.command()
def run() -> None:
    """Watch runner sets and keep reconciling them until interrupted."""
    config = _load_config()
    config.log_config()
    asyncio.run(_run(config))


@app.command()
def reconcile(
    namespace: str = typer.Argument(..., help="Namespace of the runner set"),
    name: str = typer.Argument(..., help="Name of the runner set"),
) -> None:
    """Reconcile a single runner set once and print what was done."""
    config = _load_config()
    try:
        result = asyncio.run(_reconcile_once(config, namespace, name))
    except Exception as e:
        logger.error(f"Reconcile of {namespace}/{name} failed: {e}")
        raise typer.Exit(code=1)
    typer.echo(json.dumps(result, indent=2))


@app.command("show-config")
def show_config() -> None:
    """Log the effective configuration."""
    _load_config().log_config()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
