"""
Session shell: local HTTP surface for the session layer.
Stands in for the presentation layer: owns the session context, receives the
session-expired callback and exposes login, logout and session status as JSON.
Port 8000.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from session_client.errors import ApiError
from session_client.session import SessionContext, build_session

logger = logging.getLogger(__name__)

SESSION_EXPIRED_MESSAGE = "Your session has expired. Please log in again."


class LoginBody(BaseModel):
    email: str
    password: str
    user_type: str


class ShellState:
    """What the presentation layer would render: a pending 'session expired' notice."""

    def __init__(self) -> None:
        self.session_expired_notice: str | None = None
        self.expired_reason: str | None = None

    def clear_notice(self) -> None:
        self.session_expired_notice = None
        self.expired_reason = None


def create_app(session: SessionContext | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the session, register the expiry callback, resume a stored login."""
        ctx = session or build_session()
        shell = ShellState()

        def on_session_expired() -> None:
            reason = ctx.gateway.last_expiry_reason
            shell.session_expired_notice = SESSION_EXPIRED_MESSAGE
            shell.expired_reason = reason.value if reason else None
            logger.warning("Session expired; shell switched to logged-out state")

        ctx.set_on_session_expired(on_session_expired)
        app.state.session = ctx
        app.state.shell = shell
        await ctx.check_auth_status()
        try:
            yield
        finally:
            await ctx.aclose()

    app = FastAPI(title="Session Shell", version="0.1.0", lifespan=lifespan)

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "session_client"}

    @app.get("/session")
    async def session_status(request: Request):
        """Current login state plus any pending session-expired notice."""
        ctx: SessionContext = request.app.state.session
        shell: ShellState = request.app.state.shell
        return {
            "authenticated": await ctx.is_authenticated(),
            "user": await ctx.get_user_data(),
            "expires_in": ctx.tokens.time_until_expiry(),
            "session_expired_notice": shell.session_expired_notice,
            "expired_reason": shell.expired_reason,
        }

    @app.post("/login")
    async def login(body: LoginBody, request: Request):
        ctx: SessionContext = request.app.state.session
        try:
            user = await ctx.login(body.email, body.password, body.user_type)
        except ValueError as e:
            raise HTTPException(status_code=400, detail={"message": str(e)})
        except ApiError as e:
            # No HTTP status (network failure) surfaces as a bad gateway
            status = e.status_code if e.status_code >= 400 else 502
            raise HTTPException(status_code=status, detail=e.to_dict())
        request.app.state.shell.clear_notice()
        return {"user": user}

    @app.post("/logout")
    async def logout(request: Request):
        await request.app.state.session.logout()
        return {"status": "logged_out"}

    @app.post("/session/notice/ack")
    def acknowledge_notice(request: Request):
        """Presentation layer has shown the notice (navigated to login)."""
        request.app.state.shell.clear_notice()
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "session_client.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
