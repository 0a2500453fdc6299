"""
Orchestrator configuration management.

All orchestrator configuration values in one place, loaded from environment variables
with sensible defaults. Call load_dotenv() before from_env() to pick up a local .env file.
"""

from dataclasses import dataclass
import os
import logging

logger = logging.getLogger(__name__)


@dataclass
class OrchestratorConfig:
    """All orchestrator configuration in one place."""

    # Scope
    watch_namespace: str

    # Scheduling
    max_concurrent_reconciles: int
    resync_interval_sec: float

    # Retry backoff for failed reconciles
    backoff_initial_sec: float
    backoff_max_sec: float
    backoff_factor: float

    # Actions service
    actions_request_timeout_sec: float

    # Resource store
    kube_in_cluster: bool

    # Logging
    log_level: str

    @classmethod
    def from_env(cls) -> 'OrchestratorConfig':
        """Load all config from environment with defaults."""
        max_concurrent = int(os.getenv("MAX_CONCURRENT_RECONCILES", "4"))
        if max_concurrent < 1:
            logger.warning("MAX_CONCURRENT_RECONCILES must be at least 1, setting to 1")
            max_concurrent = 1

        backoff_initial = float(os.getenv("BACKOFF_INITIAL_SEC", "0.5"))
        backoff_max = float(os.getenv("BACKOFF_MAX_SEC", "300"))
        if backoff_max < backoff_initial:
            logger.warning(
                f"BACKOFF_MAX_SEC ({backoff_max}) is below BACKOFF_INITIAL_SEC ({backoff_initial}), "
                f"clamping to {backoff_initial}"
            )
            backoff_max = backoff_initial

        backoff_factor = float(os.getenv("BACKOFF_FACTOR", "2.0"))
        if backoff_factor < 1.0:
            logger.warning("BACKOFF_FACTOR cannot be below 1.0, setting to 1.0")
            backoff_factor = 1.0

        return cls(
            watch_namespace=os.getenv("WATCH_NAMESPACE", ""),

            max_concurrent_reconciles=max_concurrent,
            resync_interval_sec=float(os.getenv("RESYNC_INTERVAL_SEC", "300")),

            backoff_initial_sec=backoff_initial,
            backoff_max_sec=backoff_max,
            backoff_factor=backoff_factor,

            actions_request_timeout_sec=float(os.getenv("ACTIONS_REQUEST_TIMEOUT_SEC", "30")),

            kube_in_cluster=os.getenv("KUBE_IN_CLUSTER", "false").lower() == "true",

            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def log_config(self):
        """Log all config values at startup for debugging."""
        logger.info("ORCHESTRATOR CONFIG:")
        logger.info(f"   Namespace: {self.watch_namespace or '<all>'}")
        logger.info(f"   Reconcilers: {self.max_concurrent_reconciles}, resync every {self.resync_interval_sec}s")
        logger.info(f"   Backoff: initial={self.backoff_initial_sec}s, max={self.backoff_max_sec}s, factor={self.backoff_factor}")
        logger.info(f"   Actions request timeout: {self.actions_request_timeout_sec}s")
        logger.info(f"   Kube config: {'in-cluster' if self.kube_in_cluster else 'kubeconfig'}")
        logger.info(f"   Log level: {self.log_level}")
