"""
Session context: one explicit object that owns the credential store, the HTTP
client, the token manager and the gateway. Built once at process start and
passed to whatever needs it; tests build their own with fake stores and clocks.
"""
import logging
import re

import httpx

from session_client.claims import try_decode_claims
from session_client.config import (
    API_BASE_URL,
    DATABASE_URL,
    LOGIN_PATH,
    LOGOUT_PATH,
    PROACTIVE_REFRESH_INTERVAL,
    REFRESH_BUFFER_SECONDS,
    REQUEST_TIMEOUT,
    SESSION_EXPIRED_GRACE_SECONDS,
    USER_TYPES,
)
from session_client.credential_store import CredentialStore, SqlCredentialStore
from session_client.errors import ApiError, StorageError
from session_client.gateway import HttpGateway, RequestOptions, SessionExpiredCallback
from session_client.token_manager import TokenManager

logger = logging.getLogger(__name__)

_CAMEL_SPLIT = re.compile(r"^([A-Z][a-z]+)([A-Z][a-z]+.*)$")


def split_full_name(full_name: str) -> tuple[str, str]:
    """(first, last). Single camel-cased words like 'NguyenVan' are split at the case change."""
    parts = (full_name or "").split()
    if not parts:
        return "", ""
    if len(parts) > 1:
        return parts[0], " ".join(parts[1:])
    match = _CAMEL_SPLIT.match(parts[0])
    if match:
        return match.group(1), match.group(2)
    return parts[0], ""


def build_user_data(login_data: dict, user_type: str) -> dict:
    """Profile stored next to the tokens. Login response fields win over (unverified) token claims."""
    claims = try_decode_claims(login_data.get("accessToken")) or {}

    def pick(key: str, default=""):
        value = login_data.get(key)
        if value:
            return value
        value = claims.get(key)
        return value if value else default

    full_name = pick("fullName")
    first_name, last_name = split_full_name(full_name)
    return {
        "id": str(pick("id")),
        "email": pick("email"),
        "fullName": full_name,
        "firstName": first_name,
        "lastName": last_name,
        "avatarLink": pick("avatarLink", None),
        "phoneNumber": pick("phoneNumber"),
        "isVerify": bool(claims.get("isVerify", False)),
        "userType": user_type,
    }


class SessionContext:
    def __init__(
        self,
        store: CredentialStore,
        http_client: httpx.AsyncClient,
        token_manager: TokenManager,
        gateway: HttpGateway,
        *,
        owns_http_client: bool = False,
    ):
        self.store = store
        self.http_client = http_client
        self.tokens = token_manager
        self.gateway = gateway
        self._owns_http_client = owns_http_client
        # Renewal failures and lapsed refresh tokens go through the same debounced cascade as a 401
        self.tokens.on_session_lapsed = self.gateway.trigger_session_expired

    @classmethod
    def create(
        cls,
        store: CredentialStore,
        http_client: httpx.AsyncClient | None = None,
        *,
        base_url: str = API_BASE_URL,
        timeout_seconds: float = REQUEST_TIMEOUT,
        refresh_buffer_seconds: int = REFRESH_BUFFER_SECONDS,
        proactive_interval_seconds: float = PROACTIVE_REFRESH_INTERVAL,
        grace_seconds: float = SESSION_EXPIRED_GRACE_SECONDS,
        **token_manager_kwargs,
    ) -> "SessionContext":
        owns_client = http_client is None
        if http_client is None:
            http_client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        tokens = TokenManager(
            store,
            http_client,
            base_url=base_url,
            refresh_buffer_seconds=refresh_buffer_seconds,
            proactive_interval_seconds=proactive_interval_seconds,
            renewal_timeout_seconds=timeout_seconds,
            **token_manager_kwargs,
        )
        gateway = HttpGateway(
            tokens,
            http_client,
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            grace_seconds=grace_seconds,
        )
        return cls(store, http_client, tokens, gateway, owns_http_client=owns_client)

    def set_on_session_expired(self, callback: SessionExpiredCallback | None) -> None:
        self.gateway.set_on_session_expired(callback)

    async def login(self, email: str, password: str, user_type: str) -> dict:
        """Log in, persist tokens and profile, start proactive refresh. Returns the stored profile."""
        if user_type not in USER_TYPES:
            raise ValueError(f"user_type must be one of {sorted(USER_TYPES)}")

        response = await self.gateway.post(LOGIN_PATH, {"email": email, "password": password})
        data = response.data if isinstance(response.data, dict) else None
        if not response.is_success or not data or not data.get("accessToken") or not data.get("refreshToken"):
            raise ApiError(response.status_code, response.message or "Login failed", reason=response.reason)

        user_data = build_user_data(data, user_type)
        try:
            credential = await self.tokens.save_session(
                data["accessToken"],
                data["refreshToken"],
                user_data=user_data,
                user_type=user_type,
            )
        except StorageError as e:
            logger.error("Error storing auth data: %s", e)
            raise ApiError(0, "Failed to store authentication data", reason="storage") from e

        if credential is None:
            logger.warning("Login returned an access token without expiry; it will be renewed on first use")
        self.tokens.start_proactive_refresh()
        logger.info("Login successful for %s user", user_type)
        return user_data

    async def logout(self) -> None:
        """Best-effort server logout, then always clear local state."""
        try:
            if await self.tokens.has_stored_access_token():
                await self.gateway.post(
                    LOGOUT_PATH,
                    {},
                    options=RequestOptions(require_auth=True, skip_auto_logout_on_401=True),
                )
        except ApiError as e:
            logger.warning("Server logout failed: %s", e.message)
        finally:
            await self.tokens.clear_credentials()
        logger.info("Logout successful")

    async def is_authenticated(self) -> bool:
        return await self.tokens.has_stored_access_token()

    async def check_auth_status(self) -> bool:
        """Load stored credentials (e.g. at app start) and resume proactive refresh if logged in."""
        if not await self.is_authenticated():
            return False
        await self.tokens.load_refresh_credential()
        await self.tokens.load_access_credential()
        self.tokens.start_proactive_refresh()
        logger.info("Auth status checked - token loaded into manager")
        return True

    async def get_user_data(self) -> dict | None:
        return await self.tokens.get_user_data()

    async def aclose(self) -> None:
        await self.gateway.aclose()
        await self.tokens.aclose()
        if self._owns_http_client:
            await self.http_client.aclose()


def build_session(database_url: str = DATABASE_URL, **kwargs) -> SessionContext:
    """Session wired from config: SQL-backed store, shared httpx client."""
    return SessionContext.create(SqlCredentialStore.from_url(database_url), **kwargs)
