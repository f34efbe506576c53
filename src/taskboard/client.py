"""
Async client for the task API that keeps CSRF out of the caller's way.

Unsafe requests carry the token from ``GET /csrf-token`` in the header the
server names. When the server rejects a request for a reason a fresh token can
fix, the token is dropped, fetched again and the request is retried once.
"""
import asyncio
import logging
from typing import Awaitable
from typing import Callable
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_HEADER = "x-csrf-token"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})
CSRF_CODES = frozenset({"INVALID_ORIGIN", "TOKEN_REQUIRED", "HEADER_MISSING", "TOKEN_MISMATCH"})
RETRYABLE_CODES = frozenset({"TOKEN_REQUIRED", "HEADER_MISSING", "TOKEN_MISMATCH"})


class ApiError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code} {message}")
        self.status_code = status_code
        self.message = message


class CsrfRejectedError(ApiError):
    """The server refused a mutating request even after the token was refreshed."""

    def __init__(self, code: str, message: str, attempts: int):
        super().__init__(403, message)
        self.code = code
        self.attempts = attempts


def origin_of(url: str) -> str:
    """``scheme://host[:port]`` of ``url``; path, query and credentials are dropped."""
    parsed = httpx.URL(url)
    host = f"[{parsed.host}]" if ":" in parsed.host else parsed.host
    # httpx reports no port when it is the scheme's default
    if parsed.port is None:
        return f"{parsed.scheme}://{host}"
    return f"{parsed.scheme}://{host}:{parsed.port}"


def rejection_code(response: httpx.Response) -> Optional[str]:
    """The CSRF code of a 403 rejection, or None for any other response."""
    if response.status_code != 403:
        return None
    try:
        data = response.json()
    except ValueError:
        return None
    code = data.get("code") if isinstance(data, dict) else None
    return code if code in CSRF_CODES else None


def user_message(code: str) -> str:
    if code == "INVALID_ORIGIN":
        return "This request was blocked because it did not come from the application."
    if code == "TOKEN_MISMATCH":
        return "Your request could not be verified. Make sure cookies are enabled and retry your action."
    return "Your request could not be verified. Please retry your action."


class CsrfTokenCache:
    """One cached token plus one shared refresh.

    ``get`` never starts a second fetch while one is running; every caller
    awaits the same task. The task belongs to the cache, so a caller that is
    cancelled does not cancel the fetch other callers are waiting on.
    """

    def __init__(self, fetch: Callable[[], Awaitable[tuple[str, str]]]):
        self._fetch = fetch
        self._token: Optional[str] = None
        self._inflight: Optional[asyncio.Task] = None
        self.header_name = DEFAULT_HEADER

    @property
    def token(self) -> Optional[str]:
        return self._token

    async def get(self) -> str:
        if self._token is not None:
            return self._token
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._refresh())
        return await asyncio.shield(self._inflight)

    async def _refresh(self) -> str:
        try:
            token, header = await self._fetch()
            self._token = token
            self.header_name = header
            return token
        finally:
            self._inflight = None

    def invalidate(self, stale: Optional[str] = None) -> None:
        # Only drop the token the caller was rejected with, not a newer one
        if stale is None or self._token == stale:
            self._token = None


class CsrfClient:
    def __init__(self, http: httpx.AsyncClient, token_path: str = "/csrf-token"):
        self.http = http
        self.token_path = token_path
        self.tokens = CsrfTokenCache(self._fetch_token)

    @classmethod
    def connect(
        cls,
        base_url: str,
        origin: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "CsrfClient":
        """Build a client with its own connection pool and cookie jar.

        ``origin`` is sent as the ``Origin`` header, the way a browser would;
        it defaults to the origin of ``base_url``.
        """
        http = httpx.AsyncClient(
            base_url=base_url,
            headers={"Origin": origin or origin_of(base_url)},
            timeout=timeout,
            transport=transport,
        )
        return cls(http)

    async def __aenter__(self) -> "CsrfClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http.aclose()

    async def ensure_token(self) -> str:
        return await self.tokens.get()

    async def _fetch_token(self) -> tuple[str, str]:
        response = await self.http.get(self.token_path)
        if response.status_code != 200:
            raise ApiError(response.status_code, "Failed to fetch CSRF token")
        data = response.json()
        return data["token"], data["header"]

    async def _send(self, method: str, path: str, token: str, **kwargs) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers[self.tokens.header_name] = token
        return await self.http.request(method, path, headers=headers, **kwargs)

    async def request(self, method: str, path: str, json=None, **kwargs) -> httpx.Response:
        """Send a request, handling CSRF for unsafe methods.

        Transport errors propagate unchanged. Non-CSRF error statuses are
        returned to the caller as-is.
        """
        method = method.upper()
        if json is not None:
            kwargs["json"] = json
        if method in SAFE_METHODS:
            return await self.http.request(method, path, **kwargs)

        token = await self.tokens.get()
        response = await self._send(method, path, token, **kwargs)
        code = rejection_code(response)
        if code is None:
            return response
        if code not in RETRYABLE_CODES:
            logger.warning(f"{method} {path} rejected with {code}; not retrying")
            raise CsrfRejectedError(code, user_message(code), attempts=1)

        logger.info(f"{method} {path} rejected with {code}; refreshing CSRF token and retrying")
        self.tokens.invalidate(token)
        token = await self.tokens.get()
        response = await self._send(method, path, token, **kwargs)
        code = rejection_code(response)
        if code is not None:
            logger.warning(f"{method} {path} rejected with {code} after a token refresh")
            raise CsrfRejectedError(code, user_message(code), attempts=2)
        return response


class TaskApi:
    """Task endpoints on top of a ``CsrfClient``."""

    def __init__(self, client: CsrfClient):
        self.client = client

    @staticmethod
    def _handle(response: httpx.Response):
        if response.is_success:
            return response.json() if response.content else None
        try:
            message = response.json().get("error")
        except (ValueError, AttributeError):
            message = None
        raise ApiError(response.status_code, message or response.reason_phrase or "Request failed")

    async def list_tasks(self, page: int = 1, limit: int = 10) -> dict:
        response = await self.client.request(
            "GET", "/api/tasks", params={"page": page, "limit": limit}
        )
        return self._handle(response)

    async def get_task(self, task_id: int) -> dict:
        return self._handle(await self.client.request("GET", f"/api/tasks/{task_id}"))

    async def create_task(self, title: str, description: str = "") -> dict:
        response = await self.client.request(
            "POST", "/api/tasks", json={"title": title, "description": description}
        )
        return self._handle(response)

    async def update_task(self, task_id: int, **fields) -> dict:
        return self._handle(await self.client.request("PUT", f"/api/tasks/{task_id}", json=fields))

    async def toggle_task(self, task_id: int) -> dict:
        return self._handle(await self.client.request("POST", f"/api/tasks/{task_id}/toggle"))

    async def delete_task(self, task_id: int) -> None:
        self._handle(await self.client.request("DELETE", f"/api/tasks/{task_id}"))
