# roomsync/client/api_client.py
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class ApiClientError(RuntimeError):
    """
    Raised when a call to the meetings service fails.

    `status_code` is None for transport failures (timeout, refused
    connection); otherwise it is the HTTP status of the final attempt.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_transport_error(self) -> bool:
        return self.status_code is None


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 5.0) -> float:
    """Delay before retrying after failed `attempt` (1-based): 1s, 2s, 4s ... capped."""
    return min(base * (2 ** (attempt - 1)), cap)


class MeetingApiClient:
    """
    Async client for the meetings service.

    Responsibilities
    ----------------
    - Send every request with no-cache headers and, for reads, a `t`
      cache-busting query parameter.
    - Apply a per-request deadline and retry failed requests with
      exponential backoff. 4xx responses are never retried.
    - Remember the `ETag` of the last full-list read (or replacement) so a
      later replacement can be made conditional on it.

    Notes
    -----
    - `base_url` is mutable: the connection prober switches it when a
      fallback address answers.
    - `transport` lets tests route requests to an in-process app.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        max_attempts: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._max_attempts = max(1, max_attempts)
        self._transport = transport
        self._sleep = sleep

        self.last_etag: Optional[str] = None

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def url_for(self, path: str, base_url: Optional[str] = None) -> str:
        base = (base_url or self.base_url).rstrip("/")
        return f"{base}/{path.lstrip('/')}"

    async def _send_once(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]],
        json: Any,
        headers: Optional[Dict[str, str]],
        timeout: float,
    ) -> httpx.Response:
        request_headers = {"Accept": "application/json", **NO_CACHE_HEADERS}
        if headers:
            request_headers.update(headers)

        async with self._client(timeout) as client:
            return await client.request(
                method=method.upper(),
                url=url,
                params=params,
                json=json,
                headers=request_headers,
            )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Issue a request with retry and return the successful response.

        Raises ApiClientError once attempts are exhausted or on any 4xx.
        """
        url = self.url_for(path)
        last_error: Optional[ApiClientError] = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                resp = await self._send_once(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=headers,
                    timeout=self._timeout_seconds,
                )
            except httpx.HTTPError as exc:
                last_error = ApiClientError(f"{method} {url} failed: {exc!r}")
            else:
                if resp.status_code // 100 == 2:
                    return resp
                last_error = ApiClientError(
                    f"API error: {resp.status_code} - {_error_detail(resp)}",
                    status_code=resp.status_code,
                    detail=_error_detail(resp),
                )
                if last_error.is_client_error:
                    break

            logger.warning(
                "API request attempt %d/%d failed: %s", attempt, self._max_attempts, last_error
            )
            if attempt < self._max_attempts:
                await self._sleep(backoff_delay(attempt))

        assert last_error is not None
        raise last_error

    @staticmethod
    def _cache_buster() -> Dict[str, Any]:
        return {"t": int(time.time() * 1000)}

    # ------------------------------------------------------------------
    # Meetings
    # ------------------------------------------------------------------

    async def list_meetings(self) -> List[Dict[str, Any]]:
        resp = await self._request("GET", "/meetings", params=self._cache_buster())
        self.last_etag = resp.headers.get("ETag")
        payload = resp.json()
        if not isinstance(payload, list):
            raise ApiClientError("Meetings endpoint did not return a list", status_code=resp.status_code)
        return payload

    async def get_meeting(self, meeting_id: str) -> Dict[str, Any]:
        resp = await self._request("GET", f"/meetings/{meeting_id}", params=self._cache_buster())
        return resp.json()

    async def create_meeting(self, meeting: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self._request("POST", "/meetings", json=meeting)
        return resp.json()

    async def update_meeting(self, meeting_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """PUT a partial meeting; returns the merged meeting stored by the server."""
        resp = await self._request("PUT", f"/meetings/{meeting_id}", json=patch)
        return resp.json().get("meeting", {})

    async def delete_meeting(self, meeting_id: str) -> Dict[str, Any]:
        resp = await self._request("DELETE", f"/meetings/{meeting_id}")
        return resp.json()

    async def replace_all(
        self,
        meetings: List[Dict[str, Any]],
        if_match: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Replace the server list. With `if_match` the server answers 412 when
        its document changed since that version.
        """
        headers = {"If-Match": if_match} if if_match else None
        resp = await self._request("POST", "/meetings/batch", json=meetings, headers=headers)
        self.last_etag = resp.headers.get("ETag", self.last_etag)
        return resp.json()

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    async def probe(self, base_url: Optional[str] = None, timeout: float = 10.0) -> bool:
        """
        Single GET of the meeting list against `base_url` (default: current).

        No retry; any failure returns False.
        """
        url = self.url_for("/meetings", base_url)
        try:
            resp = await self._send_once(
                "GET", url, params=self._cache_buster(), json=None, headers=None, timeout=timeout
            )
        except httpx.HTTPError as exc:
            logger.debug("Probe of %s failed: %r", url, exc)
            return False
        return resp.status_code // 100 == 2


def _error_detail(resp: httpx.Response) -> Any:
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    if isinstance(body, dict):
        return body.get("detail") or body.get("error") or body
    return body
