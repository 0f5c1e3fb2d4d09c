from __future__ import annotations

import contextlib
from typing import Optional
from urllib.parse import urlencode

from fastapi import (
    APIRouter,
    Depends,
    Header,
    Path,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.responses import JSONResponse, RedirectResponse

from chatgate.api.schemas import (
    ActionResponse,
    ChatMessageListResponse,
    ChatMessageResponse,
    ChatSessionCreateRequest,
    ChatSessionResponse,
    ConnectionStatsResponse,
    Envelope,
    OIDCConfigRequest,
    OIDCConfigResponse,
    RefreshResponse,
    SessionInfo,
    SessionStatusResponse,
    SessionUser,
)
from chatgate.config import Settings, get_settings
from chatgate.logging import get_logger
from chatgate.service.auth import AuthContext
from chatgate.service.crypto import mask_secret
from chatgate.service.errors import (
    ForbiddenError,
    InvalidSessionError,
    LoginError,
    NotFoundError,
    TokenExchangeError,
)
from chatgate.service.runtime import get_runtime
from chatgate.service.sessions import IssuedSession

logger = get_logger(__name__)

router = APIRouter()

WS_POLICY_VIOLATION = 1008
WS_INTERNAL_ERROR = 1011


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def _session_token(request: Request, authorization: Optional[str] = None) -> Optional[str]:
    settings = get_settings()
    return request.cookies.get(settings.session_cookie_name) or _bearer_token(
        authorization
    )


def apply_session_cookie(
    response: Response, issued: IssuedSession, settings: Settings
) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        issued.token,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
        max_age=settings.session_timeout_seconds,
        path="/",
    )


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        "",
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
        max_age=0,
        path="/",
    )


def _login_failure_redirect(settings: Settings, reason: str) -> RedirectResponse:
    query = urlencode({"error": reason})
    return RedirectResponse(f"{settings.login_page_path}?{query}", status_code=302)


async def get_current_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(_session_token(request, authorization))
    if not ctx:
        raise InvalidSessionError()
    return ctx


def require_role(role: str):
    """Dependency factory guarding a route behind ``role`` (admin passes all)."""

    async def _guard(principal: AuthContext = Depends(get_current_user)) -> AuthContext:
        return get_runtime().auth.require_role(principal, role)

    return _guard


require_admin = require_role("admin")


@router.get("/login", tags=["auth"])
async def login(error: Optional[str] = Query(None)):
    """Redirect to the identity provider, or report a failed login attempt."""
    settings = get_settings()
    if error:
        return JSONResponse(
            status_code=401,
            content=ActionResponse(success=False, error=error).model_dump(
                exclude_none=True
            ),
        )
    runtime = get_runtime()
    try:
        url = await runtime.auth.begin_login()
    except TokenExchangeError as exc:
        logger.error("login_start_failed", reason=exc.reason, error=exc.message)
        return _login_failure_redirect(settings, "authentication_failed")
    except LoginError as exc:
        return _login_failure_redirect(settings, exc.reason)
    return RedirectResponse(url, status_code=302)


@router.get("/callback", tags=["auth"])
async def callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
):
    settings = get_settings()
    runtime = get_runtime()
    try:
        issued = await runtime.auth.complete_login(
            code, state, error=error, error_description=error_description
        )
    except LoginError as exc:
        return _login_failure_redirect(settings, exc.reason)
    response = RedirectResponse(settings.post_login_redirect, status_code=302)
    apply_session_cookie(response, issued, settings)
    return response


@router.post("/logout", response_model=ActionResponse, tags=["auth"])
async def logout(
    request: Request, response: Response, authorization: Optional[str] = Header(None)
):
    settings = get_settings()
    runtime = get_runtime()
    await runtime.auth.logout(_session_token(request, authorization))
    _clear_session_cookie(response, settings)
    return ActionResponse(success=True, message="Logged out successfully")


@router.post("/session/refresh", tags=["auth"])
async def refresh_session(request: Request, authorization: Optional[str] = Header(None)):
    """Rotate the caller's session when it is close to expiry.

    400 covers both "nothing to refresh" and "no valid session"; neither is
    distinguishable to the client.
    """
    settings = get_settings()
    runtime = get_runtime()
    issued = await runtime.auth.refresh(_session_token(request, authorization))
    if issued is None:
        return JSONResponse(
            status_code=400,
            content=ActionResponse(
                success=False, error="Session refresh not needed or not possible"
            ).model_dump(exclude_none=True),
        )
    response = JSONResponse(
        content=RefreshResponse(expires_at=issued.session.expires_at).model_dump(
            mode="json"
        )
    )
    apply_session_cookie(response, issued, settings)
    return response


@router.get("/session", response_model=SessionStatusResponse, tags=["auth"])
async def session_status(request: Request, authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(
        _session_token(request, authorization), touch=False
    )
    if ctx is None:
        return SessionStatusResponse(authenticated=False)
    return SessionStatusResponse(
        authenticated=True,
        user=SessionUser(
            id=ctx.user_id,
            email=ctx.email,
            display_name=ctx.display_name,
            role=ctx.role,
        ),
        session=SessionInfo(
            expires_at=ctx.session.expires_at,
            last_activity=ctx.session.last_activity,
        ),
    )


def _chat_session_response(chat_session) -> ChatSessionResponse:
    return ChatSessionResponse(
        id=chat_session.id,
        user_id=chat_session.user_id,
        title=chat_session.title,
        created_at=chat_session.created_at,
    )


@router.post(
    "/api/chat/sessions", response_model=Envelope, status_code=201, tags=["chat"]
)
async def create_chat_session(
    body: ChatSessionCreateRequest, principal: AuthContext = Depends(get_current_user)
):
    runtime = get_runtime()
    chat_session = runtime.store.create_chat_session(principal.user_id, title=body.title)
    return Envelope(status="ok", data=_chat_session_response(chat_session))


@router.get("/api/chat/sessions", response_model=Envelope, tags=["chat"])
async def list_chat_sessions(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    sessions = runtime.store.list_chat_sessions(principal.user_id)
    return Envelope(
        status="ok", data=[_chat_session_response(item) for item in sessions]
    )


@router.get(
    "/api/chat/sessions/{session_id}/messages", response_model=Envelope, tags=["chat"]
)
async def list_chat_messages(
    session_id: str = Path(..., max_length=255),
    principal: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    chat_session = runtime.store.get_chat_session(session_id)
    if chat_session is None:
        raise NotFoundError("chat session not found")
    if chat_session.user_id != principal.user_id:
        raise ForbiddenError("chat session is owned by another user")
    messages = [
        ChatMessageResponse(
            id=message.id,
            session_id=message.session_id,
            user_id=message.user_id,
            content=message.content,
            role=message.role,
            created_at=message.created_at,
        )
        for message in runtime.store.list_chat_messages(session_id)
    ]
    return Envelope(
        status="ok",
        data=ChatMessageListResponse(session_id=session_id, messages=messages),
    )


@router.get("/admin/connections", response_model=Envelope, tags=["admin"])
async def admin_connections(principal: AuthContext = Depends(require_admin)):
    runtime = get_runtime()
    return Envelope(status="ok", data=ConnectionStatsResponse(**runtime.hub.stats()))


def _oidc_config_response(runtime) -> OIDCConfigResponse:
    credentials = runtime.client_credentials()
    return OIDCConfigResponse(
        issuer=runtime.settings.resolved_oidc_issuer,
        client_id=credentials.client_id if credentials else None,
        client_secret=mask_secret(credentials.client_secret if credentials else None),
        redirect_uri=runtime.settings.resolved_redirect_uri,
    )


@router.get("/admin/oidc", response_model=Envelope, tags=["admin"])
async def get_oidc_config(principal: AuthContext = Depends(require_admin)):
    return Envelope(status="ok", data=_oidc_config_response(get_runtime()))


@router.put("/admin/oidc", response_model=Envelope, tags=["admin"])
async def update_oidc_config(
    body: OIDCConfigRequest, principal: AuthContext = Depends(require_admin)
):
    runtime = get_runtime()
    runtime.save_oidc_client(body.client_id, body.client_secret)
    logger.info("admin_oidc_config_updated", admin_id=principal.user_id)
    return Envelope(status="ok", data=_oidc_config_response(runtime))


@router.websocket("/api/websocket")
async def websocket_chat(
    ws: WebSocket,
    token: Optional[str] = Query(None),
    session_id: Optional[str] = Query(None, alias="sessionId"),
):
    """Authenticated chat socket; one JSON event per text frame."""
    runtime = get_runtime()
    settings = get_settings()
    ctx = await runtime.auth.authenticate(
        token or ws.cookies.get(settings.session_cookie_name)
    )
    if ctx is None:
        logger.warning("websocket_auth_rejected", has_token=bool(token))
        await ws.close(code=WS_POLICY_VIOLATION, reason="Authentication required")
        return

    await ws.accept()
    connection = None
    try:
        connection = await runtime.hub.connect(ws, ctx.user_id)
        if session_id:
            await runtime.hub.join(connection, session_id)
        while True:
            raw = await ws.receive_text()
            await runtime.hub.handle_frame(connection, raw)
    except WebSocketDisconnect:
        pass
    except ConnectionError as exc:
        logger.info("websocket_send_failed_closing", error=str(exc))
        with contextlib.suppress(RuntimeError, OSError):
            await ws.close(code=WS_INTERNAL_ERROR)
    finally:
        if connection is not None:
            runtime.hub.disconnect(connection.connection_id)
