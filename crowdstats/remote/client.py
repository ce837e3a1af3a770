"""
Remote Source Client.

Wraps the CRM-style REST API the dashboard reads from:
1. Query API        - GET /services/data/{version}/query?q=...
2. Continuation API - GET {nextRecordsUrl}
3. Describe API     - GET /services/data/{version}/sobjects/{entity}/describe

Credential acquisition is out of scope; an access token is supplied by the caller.
"""

from typing import Any, Dict, List, Optional, Protocol

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from crowdstats.core.constants import (
    REMOTE_ACCESS_TOKEN,
    REMOTE_API_URL,
    REMOTE_API_VERSION,
    REMOTE_CONNECT_RETRIES,
    REMOTE_TIMEOUT,
)
from crowdstats.domain import EntityCatalog, QueryPage
from crowdstats.remote.errors import RemoteQueryRejected, RemoteSourceError
from crowdstats.utils.log_utils import get_logger

logger = get_logger(__name__)

# Error codes the source returns when it refuses a query's shape rather than failing.
REJECTION_CODES = {
    "INVALID_FIELD",
    "MALFORMED_QUERY",
    "INVALID_TYPE",
    "INVALID_QUERY_FILTER_OPERATOR",
    "INVALID_RELATIONSHIP",
}


class RemoteSource(Protocol):
    """Interface every remote data source must offer the engine."""

    async def query(self, query_text: str) -> QueryPage:
        ...

    async def query_more(self, cursor: str) -> QueryPage:
        ...

    async def describe(self, entity_type: str) -> EntityCatalog:
        ...


def _strip_attributes(record: Any) -> Any:
    if isinstance(record, dict):
        return {
            k: _strip_attributes(v) for k, v in record.items() if k != "attributes"
        }
    return record


def parse_page(data: Dict[str, Any]) -> QueryPage:
    records = [_strip_attributes(r) for r in data.get("records") or []]
    done = bool(data.get("done", True))
    cursor = data.get("nextRecordsUrl")
    return QueryPage(
        records=records,
        done=done or not cursor,
        next_cursor=None if done else cursor,
        total_size=data.get("totalSize"),
    )


def _error_from_response(response: httpx.Response) -> RemoteSourceError:
    error_code = None
    message = f"HTTP {response.status_code}"
    try:
        body = response.json()
        first = body[0] if isinstance(body, list) and body else body
        if isinstance(first, dict):
            error_code = first.get("errorCode")
            message = first.get("message") or message
    except ValueError:
        pass

    if response.status_code == 400 and error_code in REJECTION_CODES:
        return RemoteQueryRejected(message, response.status_code, error_code)
    return RemoteSourceError(message, response.status_code, error_code)


class HttpRemoteSource:
    """Async httpx client for the remote query and describe endpoints."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        access_token: Optional[str] = None,
        api_version: str = REMOTE_API_VERSION,
        timeout: float = REMOTE_TIMEOUT,
        max_retries: int = REMOTE_CONNECT_RETRIES,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or REMOTE_API_URL).rstrip("/")
        self.access_token = access_token if access_token is not None else REMOTE_ACCESS_TOKEN
        self.api_version = api_version
        self.timeout = timeout
        self.max_retries = max_retries
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.access_token:
                headers["Authorization"] = f"Bearer {self.access_token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, headers=headers
            )
        return self._client

    @property
    def _data_path(self) -> str:
        return f"/services/data/{self.api_version}"

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await self._get_client().get(path, params=params)
        except httpx.TimeoutException as e:
            raise RemoteSourceError(f"Timeout calling {path}: {e}") from e
        except httpx.TransportError as e:
            raise RemoteSourceError(f"Transport error calling {path}: {e}") from e
        if response.status_code >= 400:
            raise _error_from_response(response)
        return response.json()

    async def _get_with_retry(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Initial calls retry only on connection-level failures. Continuations
        never retry: a cursor is consumed exactly once.
        """
        @retry(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            retry=retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout)),
            reraise=True,
            before_sleep=lambda retry_state: logger.warning(
                f"[RemoteSource] Connect failed for {path}, retrying "
                f"(attempt {retry_state.attempt_number}/{self.max_retries})"
            ),
        )
        async def _do_get():
            response = await self._get_client().get(path, params=params)
            if response.status_code >= 400:
                raise _error_from_response(response)
            return response.json()

        try:
            return await _do_get()
        except httpx.TimeoutException as e:
            raise RemoteSourceError(f"Timeout calling {path}: {e}") from e
        except httpx.TransportError as e:
            raise RemoteSourceError(f"Transport error calling {path}: {e}") from e

    async def query(self, query_text: str) -> QueryPage:
        logger.debug(f"[RemoteSource] query: {query_text}")
        data = await self._get_with_retry(f"{self._data_path}/query", params={"q": query_text})
        return parse_page(data)

    async def query_more(self, cursor: str) -> QueryPage:
        data = await self._get(cursor)
        return parse_page(data)

    async def describe(self, entity_type: str) -> EntityCatalog:
        logger.info(f"[RemoteSource] Describing {entity_type}")
        data = await self._get_with_retry(f"{self._data_path}/sobjects/{entity_type}/describe")
        fields: List[Dict[str, Any]] = data.get("fields") or []
        return EntityCatalog(name=data.get("name", entity_type), fields=fields)

    async def health_check(self) -> Dict[str, Any]:
        """Check the remote API is reachable."""
        try:
            await self._get(f"{self._data_path}/limits")
            return {"status": "healthy", "remote_url": self.base_url}
        except Exception as e:
            return {"status": "unhealthy", "remote_url": self.base_url, "error": str(e)}

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
