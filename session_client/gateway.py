"""
HTTP gateway for the marketplace API.

Every outbound call goes through HttpGateway.request(): it attaches a valid
access token from the token manager, bounds the call with a timeout, normalizes
responses and errors, and turns an authenticated 401 into the session-expired
cascade (clear everything, tell the app shell) at most once per grace window.
"""
import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from session_client.config import API_BASE_URL, DEFAULT_HEADERS, REQUEST_TIMEOUT, SESSION_EXPIRED_GRACE_SECONDS
from session_client.errors import ApiError, AuthorizationError, NetworkError, RenewalError, RequestTimeoutError
from session_client.token_manager import SessionEndReason, TokenManager

logger = logging.getLogger(__name__)

SessionExpiredCallback = Callable[[], Awaitable[None] | None]


@dataclass(frozen=True)
class RequestOptions:
    require_auth: bool = False
    # For lookups keyed by ids that may be cached from another user's session
    skip_auto_logout_on_401: bool = False
    timeout: float | None = None


@dataclass
class ApiResponse:
    status_code: int
    message: str
    is_success: bool
    data: Any = None
    reason: str | None = None

    @classmethod
    def from_body(cls, status_code: int, body: Any) -> "ApiResponse":
        """Pass {is_success, ...} envelopes through; wrap anything else as a success."""
        if isinstance(body, dict) and "is_success" in body:
            return cls(
                status_code=body.get("status_code") or status_code,
                message=body.get("message") or "",
                is_success=bool(body.get("is_success")),
                data=body.get("data"),
                reason=body.get("reason"),
            )
        return cls(status_code=status_code, message="Success", is_success=True, data=body)


class HttpGateway:
    def __init__(
        self,
        token_manager: TokenManager,
        http_client: httpx.AsyncClient,
        *,
        base_url: str = API_BASE_URL,
        timeout_seconds: float = REQUEST_TIMEOUT,
        grace_seconds: float = SESSION_EXPIRED_GRACE_SECONDS,
    ):
        self._tokens = token_manager
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._grace_seconds = grace_seconds
        self._on_session_expired: SessionExpiredCallback | None = None
        self._session_expired_handling = False
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._cascades: set[asyncio.Task] = set()
        self.last_expiry_reason: SessionEndReason | None = None

    @property
    def session_expired_handling(self) -> bool:
        return self._session_expired_handling

    def set_on_session_expired(self, callback: SessionExpiredCallback | None) -> None:
        """Register the single app-shell callback; replaces any earlier one."""
        if self._on_session_expired is not None and callback is not None:
            logger.info("Replacing session expired callback")
        self._on_session_expired = callback

    def _build_url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self._base_url}/{path.lstrip('/')}"

    async def _auth_headers(self) -> dict[str, str]:
        try:
            credential = await self._tokens.get_valid_credential()
        except RenewalError as e:
            # A failed renewal is a forced logout, whatever the caller's suppression flags say
            self.trigger_session_expired(SessionEndReason.RENEWAL_FAILED)
            raise AuthorizationError(e.message, reason="renewal_failed") from e
        if credential is None:
            logger.debug("No auth token available for request")
            return {}
        return {"Authorization": f"Bearer {credential.raw_value}"}

    async def request(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        options: RequestOptions | None = None,
    ) -> ApiResponse:
        """
        Send one API request. Returns the normalized response or raises ApiError:
        AuthorizationError for 401, RequestTimeoutError / NetworkError when no response arrived.
        """
        opts = options or RequestOptions()
        method = method.upper()

        # Session is already being torn down; don't send a request that can only 401
        if opts.require_auth and self._session_expired_handling:
            raise AuthorizationError("Session expired", reason="session_expired")

        request_headers = {**DEFAULT_HEADERS, **(headers or {})}
        if opts.require_auth:
            request_headers.update(await self._auth_headers())

        query = {k: v for k, v in (params or {}).items() if v is not None}
        timeout = opts.timeout if opts.timeout is not None else self._timeout
        url = self._build_url(path)
        logger.debug("API %s %s", method, url)

        try:
            # wait_for cancels the transport call itself on timeout
            response = await asyncio.wait_for(
                self._http.request(
                    method,
                    url,
                    json=body if body is not None and method != "GET" else None,
                    params=query or None,
                    headers=request_headers,
                    timeout=httpx.Timeout(timeout),
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.warning("API %s %s timed out after %ss", method, path, timeout)
            raise RequestTimeoutError() from e
        except httpx.HTTPError as e:
            logger.warning("API %s %s failed: %s", method, path, e)
            raise NetworkError(str(e) or "Network error") from e

        return self._handle_response(response, opts)

    def _handle_response(self, response: httpx.Response, opts: RequestOptions) -> ApiResponse:
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                data = response.json()
            except ValueError:
                data = response.text
        else:
            data = response.text

        if response.status_code == 401:
            error = ApiError.from_response_body(401, data)
            if opts.require_auth and not opts.skip_auto_logout_on_401:
                self.trigger_session_expired(SessionEndReason.UNAUTHORIZED)
            else:
                logger.info("401 without auto-logout (require_auth=%s)", opts.require_auth)
            raise AuthorizationError(error.message, reason=error.reason, data=error.data)

        if not response.is_success:
            raise ApiError.from_response_body(response.status_code, data)

        return ApiResponse.from_body(response.status_code, data)

    # --- session-expired cascade ---

    def trigger_session_expired(self, reason: SessionEndReason = SessionEndReason.UNAUTHORIZED) -> asyncio.Task | None:
        """Run the cascade in the background; the returned task is the join point. None when debounced."""
        if self._session_expired_handling:
            return None
        task = asyncio.create_task(self.handle_session_expired(reason), name="session-expired-cascade")
        self._cascades.add(task)
        task.add_done_callback(self._cascades.discard)
        return task

    async def handle_session_expired(self, reason: SessionEndReason = SessionEndReason.UNAUTHORIZED) -> None:
        """Clear credentials and profile, notify the shell. At most once per grace window."""
        if self._session_expired_handling:
            logger.debug("Session expiry already being handled")
            return
        self._session_expired_handling = True
        self.last_expiry_reason = reason
        logger.warning("Session expired (%s) - forcing logout", reason.value)
        try:
            try:
                await self._tokens.clear_credentials()
            except Exception:
                logger.exception("Error clearing tokens")

            callback = self._on_session_expired
            if callback is not None:
                try:
                    result = callback()
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception("Session expired callback failed")
        finally:
            self._schedule_debounce_reset()

    def _schedule_debounce_reset(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(self._grace_seconds, self._reset_debounce)

    def _reset_debounce(self) -> None:
        self._session_expired_handling = False
        self._debounce_handle = None

    async def wait_for_cascades(self) -> None:
        while self._cascades:
            await asyncio.gather(*list(self._cascades), return_exceptions=True)

    # --- verbs ---

    async def get(self, path: str, params: dict[str, Any] | None = None, options: RequestOptions | None = None) -> ApiResponse:
        return await self.request("GET", path, params=params, options=options)

    async def post(self, path: str, body: Any = None, options: RequestOptions | None = None) -> ApiResponse:
        return await self.request("POST", path, body=body, options=options)

    async def put(self, path: str, body: Any = None, options: RequestOptions | None = None) -> ApiResponse:
        return await self.request("PUT", path, body=body, options=options)

    async def patch(self, path: str, body: Any = None, options: RequestOptions | None = None) -> ApiResponse:
        return await self.request("PATCH", path, body=body, options=options)

    async def delete(self, path: str, options: RequestOptions | None = None) -> ApiResponse:
        return await self.request("DELETE", path, options=options)

    async def aclose(self) -> None:
        await self.wait_for_cascades()
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        self._reset_debounce()
