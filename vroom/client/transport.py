"""HTTP transport for client-side writes.

Maps queued mutations to backend create endpoints and classifies
failures: unreachable server -> NetworkPartitionError, 5xx ->
RemoteUnavailableError, other refusals -> MutationRejectedError. A 409
DUPLICATE_RECORD answer means an earlier attempt already landed and is
reported as an acknowledgement.
"""

import json
import logging
import os
from typing import Any, Dict, Optional

import httpx

from ..errors import MutationRejectedError, NetworkPartitionError, RemoteUnavailableError
from ..types import OfflineMutation
from ..utils import get_vroom_home

logger = logging.getLogger(__name__)

# target_entity -> create endpoint (formatted with the payload)
ENTITY_ROUTES: Dict[str, str] = {
    "vehicles": "/vehicles",
    "expenses": "/vehicles/{vehicle_id}/expenses",
}


def load_credentials() -> Dict[str, Optional[str]]:
    """Load backend credentials.

    Priority:
    1. <VROOM_HOME>/credentials.json
    2. Environment variables (VROOM_BACKEND_URL, VROOM_AUTH_TOKEN)
    """
    backend_url = None
    auth_token = None

    credentials_path = get_vroom_home() / "credentials.json"
    if credentials_path.exists():
        try:
            with open(credentials_path) as f:
                creds = json.load(f)
                backend_url = creds.get("backend_url")
                auth_token = creds.get("auth_token") or creds.get("token")
        except (json.JSONDecodeError, OSError) as e:
            logger.debug(f"Failed to load credentials file: {e}")

    return {
        "backend_url": backend_url or os.environ.get("VROOM_BACKEND_URL"),
        "auth_token": auth_token or os.environ.get("VROOM_AUTH_TOKEN"),
    }


def endpoint_for(mutation: OfflineMutation) -> str:
    try:
        template = ENTITY_ROUTES[mutation.target_entity]
    except KeyError:
        raise ValueError(f"No endpoint for {mutation.target_entity!r}") from None
    try:
        return template.format(**mutation.payload)
    except KeyError as e:
        raise ValueError(f"{mutation.target_entity} payload is missing {e.args[0]!r}") from None


class HttpTransport:
    """Sends mutations to the backend with httpx."""

    def __init__(
        self,
        backend_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.backend_url = backend_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {auth_token}"} if auth_token else {}
        self._timeout = timeout
        self._client = client

    @classmethod
    def from_credentials(cls) -> "HttpTransport":
        creds = load_credentials()
        if not creds["backend_url"]:
            raise ValueError("Backend not configured: set VROOM_BACKEND_URL or write credentials.json")
        return cls(creds["backend_url"], creds["auth_token"])

    async def send(self, mutation: OfflineMutation) -> Dict[str, Any]:
        """Deliver one mutation.

        Raises:
            NetworkPartitionError: The server could not be reached
            RemoteUnavailableError: The server answered with a 5xx
            MutationRejectedError: The server refused the write
        """
        url = f"{self.backend_url}{endpoint_for(mutation)}"
        try:
            if self._client is not None:
                response = await self._client.post(url, json=mutation.payload, headers=self._headers, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=mutation.payload, headers=self._headers)
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout, httpx.NetworkError) as e:
            raise NetworkPartitionError(f"Cannot reach {self.backend_url}: {e}") from e
        except httpx.TimeoutException as e:
            raise NetworkPartitionError(f"Request to {self.backend_url} timed out: {e}") from e

        return _classify(response)


def _classify(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        body = {"raw": response.text}

    if response.is_success:
        return body if isinstance(body, dict) else {"data": body}
    if response.status_code == 409 and _error_code(body) == "DUPLICATE_RECORD":
        logger.info("Server already has this record; treating replay as acknowledged")
        return {"duplicate": True, **(body if isinstance(body, dict) else {})}
    if response.status_code >= 500:
        raise RemoteUnavailableError("server", f"HTTP {response.status_code}")
    raise MutationRejectedError(response.status_code, body)


def _error_code(body: Any) -> Optional[str]:
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"].get("code")
    return None
