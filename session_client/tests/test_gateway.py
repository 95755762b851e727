"""Tests for the HTTP gateway: auth headers, response normalization, timeouts, the session-expired cascade."""
import asyncio

import httpx
import pytest

from session_client.config import StorageKeys
from session_client.errors import ApiError, AuthorizationError, NetworkError, RequestTimeoutError
from session_client.gateway import ApiResponse, RequestOptions
from session_client.token_manager import SessionEndReason

AUTH = RequestOptions(require_auth=True)
AUTH_NO_LOGOUT = RequestOptions(require_auth=True, skip_auto_logout_on_401=True)


def unauthorized(request):
    return httpx.Response(401, json={"message": "Token expired", "reason": "token_expired"})


@pytest.fixture
def expired_calls(session):
    calls = []
    session.set_on_session_expired(lambda: calls.append(session.gateway.last_expiry_reason))
    return calls


# --- headers and normalization ---


@pytest.mark.asyncio
async def test_authorization_header_attached(session, backend, logged_in_tokens):
    access, refresh = logged_in_tokens
    await session.tokens.save_session(access, refresh)
    backend.route("GET", "/api/v1/bookings", lambda r: httpx.Response(200, json={"is_success": True, "data": []}))

    await session.gateway.get("/api/v1/bookings", options=AUTH)

    sent = backend.calls_to("/api/v1/bookings")[0]
    assert sent.headers["Authorization"] == f"Bearer {access}"
    assert sent.headers["Accept"] == "application/json"


@pytest.mark.asyncio
async def test_public_request_has_no_authorization(session, backend, logged_in_tokens):
    await session.tokens.save_session(*logged_in_tokens)
    backend.route("GET", "/api/v1/services", lambda r: httpx.Response(200, json=[]))

    await session.gateway.get("/api/v1/services")

    assert "Authorization" not in backend.calls_to("/api/v1/services")[0].headers


@pytest.mark.asyncio
async def test_auth_request_without_token_is_sent_unauthenticated(session, backend):
    backend.route("GET", "/api/v1/services", lambda r: httpx.Response(200, json=[]))

    response = await session.gateway.get("/api/v1/services", options=AUTH)

    assert response.is_success
    assert "Authorization" not in backend.calls_to("/api/v1/services")[0].headers


@pytest.mark.asyncio
async def test_none_query_params_are_dropped(session, backend):
    backend.route("GET", "/api/v1/services", lambda r: httpx.Response(200, json=[]))

    await session.gateway.get("/api/v1/services", params={"page": 1, "keyword": None})

    sent = backend.calls_to("/api/v1/services")[0]
    assert sent.url.params.get("page") == "1"
    assert "keyword" not in sent.url.params


@pytest.mark.asyncio
async def test_envelope_passes_through(session, backend):
    backend.route(
        "POST",
        "/api/v1/bookings",
        lambda r: httpx.Response(
            200, json={"is_success": False, "status_code": 422, "message": "Slot taken", "reason": "conflict", "data": None}
        ),
    )

    response = await session.gateway.post("/api/v1/bookings", {"slot": "09:00"})

    assert response == ApiResponse(status_code=422, message="Slot taken", is_success=False, data=None, reason="conflict")


@pytest.mark.asyncio
async def test_bare_body_is_wrapped_as_success(session, backend):
    backend.route("GET", "/api/v1/categories", lambda r: httpx.Response(200, json=[{"id": 1}]))

    response = await session.gateway.get("/api/v1/categories")

    assert response.is_success is True
    assert response.message == "Success"
    assert response.data == [{"id": 1}]


@pytest.mark.asyncio
async def test_error_status_raises_api_error(session, backend):
    backend.route("DELETE", "/api/v1/bookings/7", lambda r: httpx.Response(500, json={"message": "Boom", "reason": "db"}))

    with pytest.raises(ApiError) as exc_info:
        await session.gateway.delete("/api/v1/bookings/7")

    assert exc_info.value.status_code == 500
    assert exc_info.value.message == "Boom"
    assert exc_info.value.reason == "db"


@pytest.mark.asyncio
async def test_error_status_with_text_body(session, backend):
    backend.route("GET", "/api/v1/down", lambda r: httpx.Response(503, text="Service Unavailable"))

    with pytest.raises(ApiError) as exc_info:
        await session.gateway.get("/api/v1/down")
    assert exc_info.value.status_code == 503


# --- 401 and the session-expired cascade ---


@pytest.mark.asyncio
async def test_concurrent_401s_fire_callback_once(session, backend, store, logged_in_tokens, expired_calls):
    await session.tokens.save_session(*logged_in_tokens, user_data={"id": "user-1"}, user_type="customer")
    backend.route("GET", "/api/v1/bookings", unauthorized)

    results = await asyncio.gather(
        *(session.gateway.get("/api/v1/bookings", options=AUTH) for _ in range(5)),
        return_exceptions=True,
    )
    await session.gateway.wait_for_cascades()

    assert all(isinstance(r, AuthorizationError) for r in results)
    assert results[0].status_code == 401
    assert results[0].message == "Token expired"
    assert expired_calls == [SessionEndReason.UNAUTHORIZED]
    assert store.snapshot() == {}
    assert session.gateway.session_expired_handling is True
    await session.aclose()


@pytest.mark.asyncio
async def test_cascade_fires_again_after_grace_window(session, backend, logged_in_tokens, expired_calls):
    backend.route("GET", "/api/v1/bookings", unauthorized)

    await session.tokens.save_session(*logged_in_tokens)
    with pytest.raises(AuthorizationError):
        await session.gateway.get("/api/v1/bookings", options=AUTH)
    await session.gateway.wait_for_cascades()

    await asyncio.sleep(0.1)
    assert session.gateway.session_expired_handling is False

    await session.tokens.save_session(*logged_in_tokens)
    with pytest.raises(AuthorizationError):
        await session.gateway.get("/api/v1/bookings", options=AUTH)
    await session.gateway.wait_for_cascades()

    assert len(expired_calls) == 2
    await session.aclose()


@pytest.mark.asyncio
async def test_skip_auto_logout_keeps_session(session, backend, store, logged_in_tokens, expired_calls):
    access, _ = logged_in_tokens
    await session.tokens.save_session(*logged_in_tokens)
    backend.route("GET", "/api/v1/technicians/other-user", unauthorized)

    with pytest.raises(AuthorizationError):
        await session.gateway.get("/api/v1/technicians/other-user", options=AUTH_NO_LOGOUT)
    await session.gateway.wait_for_cascades()

    assert expired_calls == []
    assert await store.get(StorageKeys.ACCESS_TOKEN) == access
    assert session.gateway.session_expired_handling is False


@pytest.mark.asyncio
async def test_401_on_public_request_does_not_cascade(session, backend, logged_in_tokens, expired_calls):
    await session.tokens.save_session(*logged_in_tokens)
    backend.route("POST", "/api/v1/auth/check", unauthorized)

    with pytest.raises(AuthorizationError):
        await session.gateway.post("/api/v1/auth/check", {})
    await session.gateway.wait_for_cascades()

    assert expired_calls == []


@pytest.mark.asyncio
async def test_requests_short_circuit_while_session_is_ending(session, backend, logged_in_tokens, expired_calls):
    await session.tokens.save_session(*logged_in_tokens)
    backend.route("GET", "/api/v1/bookings", lambda r: httpx.Response(200, json=[]))
    backend.route("GET", "/api/v1/services", lambda r: httpx.Response(200, json=[]))

    await session.gateway.trigger_session_expired()

    with pytest.raises(AuthorizationError) as exc_info:
        await session.gateway.get("/api/v1/bookings", options=AUTH)
    assert exc_info.value.reason == "session_expired"
    assert backend.calls_to("/api/v1/bookings") == []

    # Public requests still go out
    await session.gateway.get("/api/v1/services")
    assert len(backend.calls_to("/api/v1/services")) == 1
    await session.aclose()


@pytest.mark.asyncio
async def test_failing_callback_still_resets_debounce(session):
    def explode():
        raise RuntimeError("navigation failed")

    session.set_on_session_expired(explode)

    await session.gateway.trigger_session_expired()
    assert session.gateway.session_expired_handling is True

    await asyncio.sleep(0.1)
    assert session.gateway.session_expired_handling is False


@pytest.mark.asyncio
async def test_async_callback_is_awaited(session):
    seen = []

    async def on_expired():
        await asyncio.sleep(0)
        seen.append("navigated")

    session.set_on_session_expired(on_expired)
    await session.gateway.trigger_session_expired()

    assert seen == ["navigated"]
    await session.aclose()


@pytest.mark.asyncio
async def test_trigger_is_debounced(session, expired_calls):
    first = session.gateway.trigger_session_expired()
    await first
    assert session.gateway.trigger_session_expired() is None
    assert len(expired_calls) == 1
    await session.aclose()


@pytest.mark.asyncio
async def test_renewal_failure_cascades_despite_skip_flag(session, backend, store, clock, token_factory, expired_calls):
    await session.tokens.save_session(token_factory(int(clock()) + 30), "revoked-refresh")
    backend.refresh_status = 401
    backend.route("GET", "/api/v1/technicians/other-user", lambda r: httpx.Response(200, json={}))

    with pytest.raises(AuthorizationError) as exc_info:
        await session.gateway.get("/api/v1/technicians/other-user", options=AUTH_NO_LOGOUT)
    await session.gateway.wait_for_cascades()

    assert exc_info.value.reason == "renewal_failed"
    assert backend.calls_to("/api/v1/technicians/other-user") == []
    assert expired_calls == [SessionEndReason.RENEWAL_FAILED]
    assert store.snapshot() == {}
    await session.aclose()


# --- timeouts and transport failures ---


@pytest.mark.asyncio
async def test_timeout_raises_408_without_cascade(session, backend, store, logged_in_tokens, expired_calls):
    access, _ = logged_in_tokens
    await session.tokens.save_session(*logged_in_tokens)

    async def slow(request):
        await asyncio.sleep(1)
        return httpx.Response(200, json={})

    backend.route("GET", "/api/v1/slow", slow)

    with pytest.raises(RequestTimeoutError) as exc_info:
        await session.gateway.get("/api/v1/slow", options=RequestOptions(require_auth=True, timeout=0.05))
    await session.gateway.wait_for_cascades()

    assert exc_info.value.status_code == 408
    assert expired_calls == []
    assert await store.get(StorageKeys.ACCESS_TOKEN) == access


@pytest.mark.asyncio
async def test_connect_error_raises_network_error(session, backend, logged_in_tokens, expired_calls):
    await session.tokens.save_session(*logged_in_tokens)

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    backend.route("GET", "/api/v1/bookings", refuse)

    with pytest.raises(NetworkError) as exc_info:
        await session.gateway.get("/api/v1/bookings", options=AUTH)

    assert not isinstance(exc_info.value, RequestTimeoutError)
    assert exc_info.value.status_code == 0
    assert expired_calls == []


@pytest.mark.asyncio
async def test_malformed_renewed_token_cascades(session, backend, store, clock, token_factory, raw_token_factory, expired_calls):
    await session.tokens.save_session(token_factory(int(clock()) + 30), "opaque-refresh")
    backend.refresh_body = {"is_success": True, "data": {"accessToken": raw_token_factory('{"exp": NaN}')}}
    backend.route("GET", "/api/v1/bookings", lambda r: httpx.Response(200, json=[]))

    with pytest.raises(AuthorizationError) as exc_info:
        await session.gateway.get("/api/v1/bookings", options=AUTH)
    await session.gateway.wait_for_cascades()

    assert exc_info.value.reason == "renewal_failed"
    assert backend.calls_to("/api/v1/bookings") == []
    assert expired_calls == [SessionEndReason.RENEWAL_FAILED]
    assert store.snapshot() == {}
    await session.aclose()
