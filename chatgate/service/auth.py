from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from chatgate.logging import get_logger
from chatgate.service.errors import ForbiddenError, LoginError, TokenExchangeError
from chatgate.service.oidc import OIDCClient
from chatgate.service.sessions import IssuedSession, SessionManager
from chatgate.storage.memory import MemoryStore
from chatgate.storage.models import AuthSession, OIDCState
from chatgate.storage.oidc_state import OIDCStateStore

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: str
    email: str
    display_name: str
    session: AuthSession


class AuthService:
    """Login handshake and per-request authentication."""

    def __init__(
        self,
        store: MemoryStore,
        oidc: OIDCClient,
        states: OIDCStateStore,
        sessions: SessionManager,
    ) -> None:
        self.store = store
        self.oidc = oidc
        self.states = states
        self.sessions = sessions
        self.logger = logger

    async def begin_login(self) -> str:
        """Start a login and return the provider URL to redirect the browser to."""
        request = await self.oidc.build_authorization_request()
        try:
            await self.states.put(
                OIDCState(
                    state=request.state,
                    nonce=request.nonce,
                    code_verifier=request.code_verifier,
                    redirect_uri=request.redirect_uri,
                )
            )
        except Exception as exc:
            self.logger.error("oidc_state_store_failed", error=str(exc))
            raise LoginError("authentication_failed") from exc
        self.logger.info("login_started", state=request.state[:8])
        return request.url

    async def complete_login(
        self,
        code: Optional[str],
        state: Optional[str],
        *,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> IssuedSession:
        """Finish the callback leg; raises LoginError carrying the reason code."""
        if error:
            self.logger.warning(
                "login_provider_error", error=error, description=error_description
            )
            if state:
                try:
                    await self.states.consume(state)
                except Exception as exc:
                    self.logger.error("oidc_state_consume_failed", error=str(exc))
                    raise LoginError("authentication_failed") from exc
            raise LoginError("access_denied" if error == "access_denied" else "authentication_failed")
        if not code or not state:
            self.logger.warning("login_invalid_callback", has_code=bool(code), has_state=bool(state))
            raise LoginError("invalid_callback")

        try:
            record = await self.states.consume(state)
        except Exception as exc:
            # Fail closed rather than risk replaying a state we could not consume
            self.logger.error("oidc_state_consume_failed", error=str(exc))
            raise LoginError("authentication_failed") from exc
        if record is None:
            self.logger.warning("oidc_state_unknown_or_replayed", state=state)
            raise LoginError("invalid_state")

        try:
            identity = await self.oidc.exchange_code(
                code,
                code_verifier=record.code_verifier,
                redirect_uri=record.redirect_uri,
                expected_nonce=record.nonce,
                state=state,
                expected_state=record.state,
            )
        except TokenExchangeError as exc:
            log_fn = self.logger.warning if exc.reason in {"invalid_nonce", "invalid_state"} else self.logger.error
            log_fn("login_token_exchange_failed", reason=exc.reason, error=exc.message)
            raise LoginError(exc.reason) from exc

        try:
            user = self.store.create_or_update_user(
                identity.subject, identity.email, identity.display_name
            )
        except Exception as exc:
            # ConstraintViolation for a reused email, or a persistence failure
            self.logger.error(
                "login_user_upsert_failed", subject=identity.subject, error=str(exc)
            )
            raise LoginError("authentication_failed") from exc
        if not user.is_active:
            self.logger.warning("login_inactive_user", user_id=user.id)
            raise LoginError("access_denied")

        try:
            issued = await self.sessions.create_session(
                user.id, user.subject, user.email, user.display_name, user.role
            )
        except Exception as exc:
            self.logger.error("login_session_creation_failed", user_id=user.id, error=str(exc))
            raise LoginError("session_creation_failed") from exc
        self.logger.info("login_completed", user_id=user.id, session_id=issued.session.id)
        return issued

    async def authenticate(
        self, token: Optional[str], *, touch: bool = True
    ) -> Optional[AuthContext]:
        """Resolve a bearer token to the caller, re-reading role from the user store."""
        if not token:
            return None
        if touch:
            session = await self.sessions.verify_session(token)
        else:
            session = await self.sessions.get_session(token)
        if session is None:
            return None
        user = self.store.get_user(session.user_id)
        if user is not None and not user.is_active:
            await self.sessions.destroy_session(session.id)
            self.logger.warning("session_revoked_inactive_user", user_id=user.id)
            return None
        return AuthContext(
            user_id=session.user_id,
            role=user.role if user else session.role,
            session_id=session.id,
            email=user.email if user else session.email,
            display_name=user.display_name if user else session.display_name,
            session=session,
        )

    @staticmethod
    def role_allows(role: str, required: str) -> bool:
        if role == required:
            return True
        return role == "admin"

    def require_role(self, ctx: AuthContext, required: str) -> AuthContext:
        if not self.role_allows(ctx.role, required):
            self.logger.warning(
                "authorization_denied", user_id=ctx.user_id, role=ctx.role, required=required
            )
            raise ForbiddenError("Insufficient permissions")
        return ctx

    async def refresh(self, token: Optional[str]) -> Optional[IssuedSession]:
        if not token:
            return None
        return await self.sessions.refresh_session(token)

    async def logout(self, token: Optional[str]) -> bool:
        if not token:
            return False
        session = await self.sessions.get_session(token)
        if session is None:
            return False
        await self.sessions.destroy_session(session.id)
        self.logger.info("logout_completed", user_id=session.user_id)
        return True
