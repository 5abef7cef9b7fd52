"""Remote persistence collaborator

The engine only consumes the call contract below. ``RestRemoteStore`` speaks
it to a PostgREST-style HTTP endpoint; ``RetryingRemote`` adds bounded
exponential backoff around any implementation.
"""

import asyncio
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import aiohttp

from ..utils.errors import RemoteError, ReplisyncError, ErrorRecovery
from ..utils.logging import get_logger

logger = get_logger("replisync.remote")


@runtime_checkable
class RemoteStore(Protocol):
    """Call contract of the remote persistence collaborator"""

    async def select(self, filters: Optional[Dict[str, Any]] = None,
                     order: Optional[str] = None) -> List[Dict[str, Any]]:
        ...

    async def insert(self, record: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def update(self, record_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def delete(self, record_id: str) -> None:
        ...


class RestRemoteStore:
    """PostgREST-style HTTP client for one table"""

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        table: str = "records",
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = url.rstrip('/')
        self.table = table
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json"}
        if api_key:
            self.headers["apikey"] = api_key
            self.headers["Authorization"] = f"Bearer {api_key}"
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_config(cls, config) -> 'RestRemoteStore':
        if not config.url:
            raise RemoteError("Remote URL is not configured")
        return cls(config.url, api_key=config.api_key, table=config.table,
                   timeout=config.timeout_seconds)

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/rest/v1/{self.table}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._owns_session = True
        return self._session

    async def _request(self, method: str, params: Dict[str, str],
                       payload: Optional[Dict[str, Any]] = None,
                       prefer: Optional[str] = None) -> Any:
        headers = dict(self.headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            async with self._get_session().request(
                method, self.endpoint, params=params, json=payload, headers=headers
            ) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise RemoteError(f"HTTP {response.status}: {text}", status=response.status)
                if response.status == 204:
                    return None
                return await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise RemoteError(f"{method} {self.table} timed out", cause=e) from e
        except aiohttp.ClientError as e:
            raise RemoteError(f"{method} {self.table} failed: {e}", cause=e) from e

    async def select(self, filters: Optional[Dict[str, Any]] = None,
                     order: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"select": "*"}
        for column, value in (filters or {}).items():
            params[column] = f"eq.{value}"
        if order:
            params["order"] = order
        rows = await self._request("GET", params)
        return rows or []

    async def insert(self, record: Dict[str, Any]) -> Dict[str, Any]:
        rows = await self._request("POST", {}, payload=record, prefer="return=representation")
        return rows[0] if isinstance(rows, list) and rows else record

    async def update(self, record_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        rows = await self._request(
            "PATCH", {"id": f"eq.{record_id}"}, payload=patch, prefer="return=representation"
        )
        if isinstance(rows, list):
            if not rows:
                raise RemoteError(f"Record {record_id} not found remotely", status=404)
            return rows[0]
        return patch

    async def delete(self, record_id: str) -> None:
        await self._request("DELETE", {"id": f"eq.{record_id}"})

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


def is_transient(error: BaseException) -> bool:
    """Whether another attempt of the same call could succeed."""
    if isinstance(error, ReplisyncError):
        return error.is_retryable
    return isinstance(error, (OSError, asyncio.TimeoutError))


class RetryingRemote:
    """Wraps a RemoteStore with bounded exponential backoff plus jitter"""

    def __init__(
        self,
        remote: RemoteStore,
        max_attempts: int = 5,
        base_delay_ms: int = 100,
        max_delay_ms: int = 10000,
        jitter: float = 0.25,
        sleep=asyncio.sleep,
    ):
        self.remote = remote
        self.max_attempts = max_attempts
        self.base_delay = base_delay_ms / 1000
        self.max_delay = max_delay_ms / 1000
        self.jitter = jitter
        self.sleep = sleep

    @classmethod
    def from_config(cls, remote: RemoteStore, config) -> 'RetryingRemote':
        return cls(
            remote,
            max_attempts=config.max_attempts,
            base_delay_ms=config.base_delay_ms,
            max_delay_ms=config.max_delay_ms,
            jitter=config.jitter,
        )

    async def _call(self, operation: str, func) -> Any:
        try:
            return await ErrorRecovery.exponential_backoff(
                func,
                max_retries=self.max_attempts,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                jitter=self.jitter,
                exceptions=(Exception,),
                retry_if=is_transient,
                sleep=self.sleep,
            )
        except RemoteError:
            raise
        except Exception as e:
            raise RemoteError(f"Remote {operation} failed: {e}", cause=e) from e

    async def select(self, filters=None, order=None) -> List[Dict[str, Any]]:
        return await self._call("select", lambda: self.remote.select(filters, order))

    async def insert(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("insert", lambda: self.remote.insert(record))

    async def update(self, record_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("update", lambda: self.remote.update(record_id, patch))

    async def delete(self, record_id: str) -> None:
        return await self._call("delete", lambda: self.remote.delete(record_id))
