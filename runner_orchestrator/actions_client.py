"""
Client for the Actions service (the remote work-dispatch service runners register with).

Only the operation the orchestrator needs is implemented: removing a registered
runner by id. Non-2xx responses are decoded into ActionsError right here so
callers only ever see a status code and an exception name.
"""

import hashlib
import logging
from typing import Dict, Optional, Tuple

import httpx

from .errors import ActionsClientError, ActionsError

logger = logging.getLogger(__name__)

API_VERSION = "6.0-preview"
TOKEN_SECRET_KEY = "github_token"


def parse_actions_error(response: httpx.Response) -> ActionsError:
    """Build an ActionsError from a failed response."""
    activity_id = response.headers.get("ActivityId", "")
    content_type = response.headers.get("Content-Type", "")

    if "application/json" in content_type:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            return ActionsError(
                status_code=response.status_code,
                exception_name=body.get("typeName", "") or "",
                message=body.get("message", "") or "",
                activity_id=activity_id,
            )

    return ActionsError(
        status_code=response.status_code,
        message=response.text.strip(),
        activity_id=activity_id,
    )


class ActionsClient:
    """Thin async client for one Actions service endpoint."""

    def __init__(
        self,
        endpoint: str,
        token: str,
        timeout_sec: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self._http = httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "User-Agent": "runner-orchestrator",
            },
            timeout=timeout_sec,
            transport=transport,
        )

    async def remove_runner(self, runner_id: int) -> None:
        """Deregister a runner. Raises ActionsError on any non-2xx response."""
        url = f"{self.endpoint}/_apis/distributedtask/pools/0/agents/{runner_id}"
        response = await self._http.delete(url, params={"api-version": API_VERSION})
        if response.status_code >= 300:
            raise parse_actions_error(response)
        logger.debug(f"Removed runner {runner_id} from {self.endpoint}")

    @property
    def closed(self) -> bool:
        return self._http.is_closed

    async def aclose(self) -> None:
        await self._http.aclose()


class ActionsClientFactory:
    """
    Resolves an ActionsClient for an endpoint + namespace + credential secret.

    One client is cached per (endpoint, namespace) so a reconcile can ask for a
    client every time without opening a new connection pool. A rotated
    credential replaces (and closes) the cached client.
    """

    def __init__(self, timeout_sec: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout_sec = timeout_sec
        self._transport = transport
        # (endpoint, namespace) -> (token hash, client)
        self._clients: Dict[Tuple[str, str], Tuple[str, ActionsClient]] = {}

    async def get_client(self, endpoint: str, namespace: str, secret_data: Dict[str, bytes]) -> ActionsClient:
        if not endpoint:
            raise ActionsClientError("no Actions service endpoint configured")

        raw_token = secret_data.get(TOKEN_SECRET_KEY)
        if not raw_token:
            raise ActionsClientError(f"secret is missing required key '{TOKEN_SECRET_KEY}'")
        token = raw_token.decode() if isinstance(raw_token, bytes) else str(raw_token)

        cache_key = (endpoint, namespace)
        token_hash = hashlib.sha256(token.encode()).hexdigest()
        cached = self._clients.get(cache_key)
        if cached is not None:
            cached_hash, cached_client = cached
            if cached_hash == token_hash:
                return cached_client
            logger.info(f"Credential for {endpoint} (namespace {namespace}) changed, replacing Actions client")
            await cached_client.aclose()

        logger.info(f"Creating Actions client for {endpoint} (namespace {namespace})")
        actions_client = ActionsClient(endpoint, token, self.timeout_sec, transport=self._transport)
        self._clients[cache_key] = (token_hash, actions_client)
        return actions_client

    async def aclose(self) -> None:
        for _, actions_client in self._clients.values():
            await actions_client.aclose()
        self._clients.clear()
