"""
Token lifecycle manager.

Caches the access and refresh tokens with their expiry, renews the access token
before it expires (single-flight: concurrent callers share one renewal call),
and re-checks on a timer so renewal does not wait for a request to discover
the expiry.

The credential store is the source of truth; the in-memory cache is always
reloadable from it. This is the only component that writes to the store.
"""
import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from session_client.claims import mask_token, parse_expiry
from session_client.config import (
    API_BASE_URL,
    DEFAULT_HEADERS,
    PROACTIVE_REFRESH_INTERVAL,
    REFRESH_BUFFER_SECONDS,
    REFRESH_TOKEN_PATH,
    RENEWAL_FALLBACK_TTL_SECONDS,
    REQUEST_TIMEOUT,
    SESSION_KEYS,
    StorageKeys,
)
from session_client.credential_store import CredentialStore
from session_client.errors import RenewalError, StorageError

logger = logging.getLogger(__name__)


class SessionEndReason(str, Enum):
    UNAUTHORIZED = "unauthorized"
    RENEWAL_FAILED = "renewal_failed"
    RENEWAL_CREDENTIAL_MISSING = "renewal_credential_missing"


class SessionClearedDuringRenewal(RenewalError):
    def __init__(self) -> None:
        super().__init__("Session cleared during renewal")


@dataclass(frozen=True)
class Credential:
    raw_value: str
    expires_at: int  # unix seconds

    def __repr__(self) -> str:
        return f"Credential(raw_value={mask_token(self.raw_value)!r}, expires_at={self.expires_at})"


class LifecycleState:
    """
    Cached credentials and the in-flight renewal.
    `refreshing` and `renewal_task` only change together, through begin/finish/reset.
    """

    def __init__(self) -> None:
        self.access: Credential | None = None
        self.refresh: Credential | None = None
        self.refreshing = False
        self.renewal_task: asyncio.Task | None = None
        # Bumped by every reset so a renewal that outlives a logout can tell
        self.generation = 0

    def begin_renewal(self, task: asyncio.Task) -> None:
        self.refreshing = True
        self.renewal_task = task

    def finish_renewal(self, task: asyncio.Task | None) -> None:
        # A reset may already have dropped this task
        if task is not None and self.renewal_task is task:
            self.refreshing = False
            self.renewal_task = None

    def reset(self) -> None:
        self.access = None
        self.refresh = None
        self.refreshing = False
        self.renewal_task = None
        self.generation += 1


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


def _mark_retrieved(task: asyncio.Task) -> None:
    # Waiters may all be gone (e.g. the timer was cancelled mid-renewal)
    if not task.cancelled():
        task.exception()


class TokenManager:
    def __init__(
        self,
        store: CredentialStore,
        http_client: httpx.AsyncClient,
        *,
        base_url: str = API_BASE_URL,
        refresh_buffer_seconds: int = REFRESH_BUFFER_SECONDS,
        proactive_interval_seconds: float = PROACTIVE_REFRESH_INTERVAL,
        renewal_timeout_seconds: float = REQUEST_TIMEOUT,
        renewal_fallback_ttl_seconds: int = RENEWAL_FALLBACK_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        on_session_lapsed: Callable[[SessionEndReason], Any] | None = None,
    ):
        self._store = store
        self._http = http_client
        self._refresh_url = f"{base_url.rstrip('/')}{REFRESH_TOKEN_PATH}"
        self.refresh_buffer_seconds = refresh_buffer_seconds
        self.proactive_interval_seconds = proactive_interval_seconds
        self.renewal_timeout_seconds = renewal_timeout_seconds
        self.renewal_fallback_ttl_seconds = renewal_fallback_ttl_seconds
        self._clock = clock
        # Called (synchronously) when the session ends without a 401: renewal failure or lapsed refresh token
        self.on_session_lapsed = on_session_lapsed
        self._state = LifecycleState()
        self._refresh_timer: asyncio.Task | None = None

    # --- cached state ---

    @property
    def access_credential(self) -> Credential | None:
        return self._state.access

    @property
    def refresh_credential(self) -> Credential | None:
        return self._state.refresh

    @property
    def renewal_in_flight(self) -> bool:
        return self._state.refreshing

    @property
    def proactive_refresh_running(self) -> bool:
        return self._refresh_timer is not None and not self._refresh_timer.done()

    def _now(self, now: float | None = None) -> float:
        return self._clock() if now is None else now

    # --- loading ---

    async def _read(self, key: str) -> str | None:
        """Store read; a storage failure counts as "not stored"."""
        try:
            return await self._store.get(key)
        except StorageError as e:
            logger.error("Error reading %s from credential store: %s", key, e)
            return None

    async def load_access_credential(self) -> Credential | None:
        """Read the access token from the store and cache it with its exp claim. Last read wins."""
        token = await self._read(StorageKeys.ACCESS_TOKEN)
        if not token:
            self._state.access = None
            return None

        expires_at = parse_expiry(token)
        if expires_at is None:
            logger.warning("Invalid access token - missing expiry")
            self._state.access = None
            return None

        self._state.access = Credential(raw_value=token, expires_at=expires_at)
        logger.debug("Access token %s expires at %d", mask_token(token), expires_at)
        return self._state.access

    async def load_refresh_credential(self) -> Credential | None:
        """
        Read the refresh token. Opaque (non-JWT) refresh tokens are normal; they get a
        manufactured far-future expiry and stay valid until the renewal call rejects them.
        """
        token = await self._read(StorageKeys.REFRESH_TOKEN)
        if not token:
            self._state.refresh = None
            return None

        expires_at = parse_expiry(token)
        if expires_at is None:
            expires_at = int(self._now()) + self.renewal_fallback_ttl_seconds
            logger.debug("Refresh token has no exp claim; assuming valid until %d", expires_at)

        self._state.refresh = Credential(raw_value=token, expires_at=expires_at)
        return self._state.refresh

    # --- expiry ---

    def is_access_expired(self, now: float | None = None) -> bool:
        """True if no access token is cached or it expires within the refresh buffer."""
        access = self._state.access
        if access is None:
            return True

        time_until_expiry = access.expires_at - self._now(now)
        if time_until_expiry <= 0:
            logger.debug("Access token has expired")
            return True
        if time_until_expiry <= self.refresh_buffer_seconds:
            logger.debug("Access token will expire in %ds - needs refresh", int(time_until_expiry))
            return True
        return False

    def time_until_expiry(self, now: float | None = None) -> int | None:
        """Seconds left on the cached access token (negative once expired), None if none cached."""
        access = self._state.access
        if access is None:
            return None
        return int(access.expires_at - self._now(now))

    async def get_valid_credential(self) -> Credential | None:
        """
        Access token that is safe to send now, renewing it first if it is inside the buffer.
        None means the user is not logged in. Raises RenewalError if renewal fails.
        """
        if self._state.access is None:
            await self.load_access_credential()
        if self._state.refresh is None:
            await self.load_refresh_credential()

        access = self._state.access
        if access is None:
            logger.debug("No token available - user not authenticated")
            return None

        if not self.is_access_expired():
            return access

        logger.info("Token expired or expiring soon - refreshing")
        return await self.renew_access_credential()

    # --- renewal ---

    async def renew_access_credential(self) -> Credential | None:
        """Single-flight renewal: joins the in-flight renewal if there is one."""
        task = self._state.renewal_task
        if self._state.refreshing and task is not None:
            logger.info("Already refreshing - waiting for existing refresh")
            return await asyncio.shield(task)

        task = asyncio.create_task(self._run_renewal(), name="session-token-renewal")
        task.add_done_callback(_mark_retrieved)
        self._state.begin_renewal(task)
        return await asyncio.shield(task)

    async def _run_renewal(self) -> Credential | None:
        try:
            return await self._perform_renewal()
        finally:
            # Before the task's result is published, so a late caller starts fresh instead of joining a finished renewal
            self._state.finish_renewal(_current_task())

    async def _perform_renewal(self) -> Credential | None:
        generation = self._state.generation
        try:
            credential = await self._call_refresh_endpoint()
        except Exception as e:
            if self._state.generation != generation:
                logger.info("Session was cleared during renewal; ignoring renewal failure")
                return None
            if isinstance(e, RenewalError):
                logger.error("Refresh token failed: %s", e.message)
            else:
                logger.exception("Unexpected error during token refresh")
            await self.clear_credentials()
            self._notify_lapsed(SessionEndReason.RENEWAL_FAILED)
            if isinstance(e, RenewalError):
                raise
            raise RenewalError(f"Refresh token failed: {e}") from e
        if self._state.generation != generation:
            logger.info("Session was cleared during renewal; discarding renewed token")
            return None
        return credential

    async def _call_refresh_endpoint(self) -> Credential:
        """POST the refresh token straight to the API (not through the gateway: a 401 here must not recurse)."""
        generation = self._state.generation
        refresh_token = await self._read(StorageKeys.REFRESH_TOKEN)
        if not refresh_token:
            raise RenewalError("No refresh token available")

        logger.info("Calling refresh token API")
        try:
            response = await self._http.post(
                self._refresh_url,
                json={"refreshToken": refresh_token},
                headers=DEFAULT_HEADERS,
                timeout=httpx.Timeout(self.renewal_timeout_seconds),
            )
        except httpx.TimeoutException as e:
            raise RenewalError("Refresh token request timed out", status_code=408) from e
        except httpx.HTTPError as e:
            raise RenewalError(f"Refresh token request failed: {e}") from e

        if not response.is_success:
            logger.error("Refresh token API failed: %s - %s", response.status_code, response.text[:200])
            raise RenewalError(f"Refresh token failed: {response.status_code}", status_code=response.status_code)

        try:
            body = response.json()
        except ValueError as e:
            raise RenewalError("Invalid refresh token response", status_code=response.status_code) from e

        data = body.get("data") if isinstance(body, dict) else None
        if not (isinstance(data, dict) and body.get("is_success") and data.get("accessToken")):
            raise RenewalError("Invalid refresh token response", status_code=response.status_code)

        if self._state.generation != generation:
            # Logged out while the call was outstanding; do not resurrect the session in the store
            raise SessionClearedDuringRenewal()

        new_access_token = data["accessToken"]
        new_refresh_token = data.get("refreshToken")
        try:
            await self._store.set(StorageKeys.ACCESS_TOKEN, new_access_token)
            if new_refresh_token:
                await self._store.set(StorageKeys.REFRESH_TOKEN, new_refresh_token)
        except StorageError as e:
            raise RenewalError(f"Could not persist renewed token: {e}") from e

        credential = await self.load_access_credential()
        if credential is None:
            raise RenewalError("Renewed access token carries no expiry")
        if new_refresh_token:
            await self.load_refresh_credential()
            logger.info("Both access token and refresh token updated")
        else:
            logger.info("Access token updated")
        return credential

    def _notify_lapsed(self, reason: SessionEndReason) -> None:
        if self.on_session_lapsed is None:
            return
        try:
            self.on_session_lapsed(reason)
        except Exception:
            logger.exception("Session lapsed hook failed")

    # --- login / logout ---

    async def save_session(
        self,
        access_token: str,
        refresh_token: str,
        *,
        user_data: dict | None = None,
        user_type: str | None = None,
    ) -> Credential | None:
        """Persist login output and prime the cache. Raises StorageError if the store rejects it."""
        self._state.reset()
        await self._store.set(StorageKeys.ACCESS_TOKEN, access_token)
        await self._store.set(StorageKeys.REFRESH_TOKEN, refresh_token)
        if user_data is not None:
            await self._store.set(StorageKeys.USER_DATA, json.dumps(user_data))
        if user_type is not None:
            await self._store.set(StorageKeys.USER_TYPE, user_type)
        await self.load_refresh_credential()
        return await self.load_access_credential()

    async def update_access_credential(self, token: str) -> Credential | None:
        try:
            await self._store.set(StorageKeys.ACCESS_TOKEN, token)
        except StorageError as e:
            logger.error("Error updating access token: %s", e)
            return None
        credential = await self.load_access_credential()
        logger.info("Access token updated in token manager")
        return credential

    async def get_user_data(self) -> dict | None:
        raw = await self._read(StorageKeys.USER_DATA)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Stored user data is not valid JSON")
            return None
        return data if isinstance(data, dict) else None

    async def get_user_type(self) -> str | None:
        return await self._read(StorageKeys.USER_TYPE)

    async def has_stored_access_token(self) -> bool:
        return bool(await self._read(StorageKeys.ACCESS_TOKEN))

    async def clear_credentials(self) -> None:
        """
        Idempotent. Memory first, then timer, then store; a store failure is logged only,
        so the in-memory session is gone either way.
        """
        if self._state.refreshing:
            logger.info("Dropping in-flight token refresh")
        self._state.reset()
        self.stop_proactive_refresh()
        try:
            await self._store.remove(SESSION_KEYS)
        except StorageError as e:
            logger.error("Error clearing tokens: %s", e)
            return
        logger.info("All tokens and user data cleared")

    # --- proactive refresh ---

    def start_proactive_refresh(self) -> None:
        """(Re)start the periodic expiry check. Needs a running event loop."""
        self.stop_proactive_refresh()
        self._refresh_timer = asyncio.create_task(self._proactive_loop(), name="session-proactive-refresh")
        logger.info("Proactive token refresh every %ss", self.proactive_interval_seconds)

    def stop_proactive_refresh(self) -> None:
        timer = self._refresh_timer
        self._refresh_timer = None
        if timer is None or timer.done():
            return
        # Called from inside a tick: the loop sees the dropped reference and exits by itself
        if timer is _current_task():
            return
        timer.cancel()

    async def _proactive_loop(self) -> None:
        me = _current_task()
        while self._refresh_timer is me:
            await asyncio.sleep(self.proactive_interval_seconds)
            if self._refresh_timer is not me:
                break
            try:
                await self._proactive_tick()
            except RenewalError:
                # Already cleared and reported by the renewal
                logger.info("Proactive refresh ended the session")
            except Exception:
                logger.exception("Proactive refresh check failed")

    async def _proactive_tick(self) -> None:
        await self.load_access_credential()
        refresh = await self.load_refresh_credential()
        if refresh is None or refresh.expires_at <= self._now():
            logger.warning("No usable refresh token at proactive check - ending session")
            self.stop_proactive_refresh()
            await self.clear_credentials()
            self._notify_lapsed(SessionEndReason.RENEWAL_CREDENTIAL_MISSING)
            return

        if self.is_access_expired():
            await self.renew_access_credential()

    async def aclose(self) -> None:
        timer = self._refresh_timer
        self.stop_proactive_refresh()
        if timer is not None and timer is not _current_task():
            await asyncio.gather(timer, return_exceptions=True)
