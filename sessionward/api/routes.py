from __future__ import annotations

from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from sessionward.api.schemas import (
    AccountDeleteRequest,
    AccountUpdateRequest,
    Envelope,
    LoginRequest,
    PasswordForgotRequest,
    PasswordResetConfirm,
    RegisterRequest,
    SessionListResponse,
    SessionResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    UserResponse,
)
from sessionward.logging import get_logger
from sessionward.service.authenticator import RequestContext
from sessionward.service.errors import NotFoundError
from sessionward.service.runtime import get_runtime
from sessionward.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

INVALID_CREDENTIALS = "Invalid email address or password."
INVALID_REFRESH = "Invalid or expired token."
FORGOT_PASSWORD_ACK = (
    "Password reset instructions sent (if user with that email address exists)."
)


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def client_fingerprint(request: Request) -> Tuple[Optional[str], Optional[str]]:
    ip_address = request.client.host if request.client else None
    return ip_address, request.headers.get("user-agent")


async def get_request_context(
    request: Request, authorization: Optional[str] = Header(None)
) -> RequestContext:
    runtime = get_runtime()
    ip_address, user_agent = client_fingerprint(request)
    context = runtime.authenticator.authenticate(
        authorization,
        ip_address=ip_address,
        user_agent=user_agent,
        path=request.url.path,
    )
    request.state.auth = context
    return context


async def get_current(
    context: RequestContext = Depends(get_request_context),
) -> RequestContext:
    return get_runtime().authenticator.require_authenticated(context)


async def get_admin(
    context: RequestContext = Depends(get_request_context),
) -> RequestContext:
    return get_runtime().authenticator.require_admin(context)


def _session_out(session: Session) -> dict:
    return SessionResponse(**session.to_public()).model_dump(mode="json")


def _user_out(user: User) -> dict:
    return UserResponse(
        id=user.id,
        email=user.email,
        roles=sorted(user.roles),
        created_at=user.created_at,
        password_changed_at=user.password_changed_at,
    ).model_dump(mode="json")


def _tokens_out(session: Session) -> dict:
    tokens = get_runtime().sessions.issue_tokens(session)
    return TokenPairResponse(**tokens).model_dump(mode="json")


@router.post("/sessions/login", response_model=Envelope, status_code=201, tags=["sessions"])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    user = runtime.accounts.verify(body.email_address, body.password)
    if user is None:
        raise _http_error(
            "unauthorized",
            INVALID_CREDENTIALS,
            status_code=401,
            details={
                "errors": [INVALID_CREDENTIALS],
                "instructions": "Make sure to send the correct email address and password.",
            },
        )
    if runtime.accounts.password_expired(user):
        raise _http_error(
            "forbidden",
            "Password expired",
            status_code=403,
            details={
                "errors": ["Password expired"],
                "instructions": "Please reset your password before logging in.",
            },
        )
    ip_address, user_agent = client_fingerprint(request)
    session = runtime.sessions.create(user, ip_address=ip_address, user_agent=user_agent)
    return Envelope(status="ok", data=_tokens_out(session))


@router.put("/sessions/refresh", response_model=Envelope, status_code=201, tags=["sessions"])
async def refresh(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    ip_address, user_agent = client_fingerprint(request)
    session = runtime.sessions.refresh_with_token(
        body.refresh_token, ip_address=ip_address, user_agent=user_agent
    )
    if session is None:
        raise _http_error(
            "unprocessable",
            INVALID_REFRESH,
            status_code=422,
            details={
                "errors": [INVALID_REFRESH],
                "instructions": "Please log in again.",
            },
        )
    return Envelope(status="ok", data=_tokens_out(session))


@router.delete("/sessions/logout", status_code=204, tags=["sessions"])
async def logout(context: RequestContext = Depends(get_current)):
    get_runtime().sessions.revoke(context.session)
    return Response(status_code=204)


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(context: RequestContext = Depends(get_current)):
    sessions = get_runtime().sessions.list_active(context.user.id)
    items = [_session_out(s) for s in sessions]
    return Envelope(status="ok", data=SessionListResponse(items=items).model_dump(mode="json"))


@router.get("/sessions/current", response_model=Envelope, tags=["sessions"])
async def current_session(context: RequestContext = Depends(get_current)):
    return Envelope(status="ok", data=_session_out(context.session))


@router.delete("/sessions/revoke_all", status_code=204, tags=["sessions"])
async def revoke_all_sessions(context: RequestContext = Depends(get_current)):
    get_runtime().sessions.revoke_all(context.user.id)
    return Response(status_code=204)


@router.get("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def get_session(session_id: str, context: RequestContext = Depends(get_current)):
    session = get_runtime().sessions.get_for_user(context.user.id, session_id)
    if session is None:
        raise NotFoundError("session not found")
    return Envelope(status="ok", data=_session_out(session))


@router.delete("/sessions/{session_id}/revoke", status_code=204, tags=["sessions"])
async def revoke_session(session_id: str, context: RequestContext = Depends(get_current)):
    runtime = get_runtime()
    session = runtime.sessions.get_for_user(context.user.id, session_id)
    if session is None:
        raise NotFoundError("session not found")
    runtime.sessions.revoke(session)
    return Response(status_code=204)


@router.post("/password/forgot", response_model=Envelope, tags=["password"])
async def forgot_password(body: PasswordForgotRequest):
    get_runtime().accounts.request_password_reset(body.email_address)
    return Envelope(status="ok", data={"message": FORGOT_PASSWORD_ACK})


@router.put("/password/reset", response_model=Envelope, tags=["password"])
async def reset_password(body: PasswordResetConfirm):
    user = get_runtime().accounts.reset_password(
        body.token, body.password, body.password_confirmation
    )
    if user is None:
        raise _http_error(
            "unprocessable",
            INVALID_REFRESH,
            status_code=422,
            details={
                "errors": [INVALID_REFRESH],
                "instructions": "Please request a new password reset code.",
            },
        )
    return Envelope(status="ok", data={"message": "Password has been reset."})


@router.get("/accounts/me", response_model=Envelope, tags=["accounts"])
async def me(context: RequestContext = Depends(get_current)):
    return Envelope(status="ok", data=_user_out(context.user))


@router.post("/accounts/register", response_model=Envelope, status_code=201, tags=["accounts"])
async def register(body: RegisterRequest):
    user = get_runtime().accounts.register(
        body.email_address, body.password, body.password_confirmation
    )
    return Envelope(status="ok", data=_user_out(user))


@router.put("/accounts/update", response_model=Envelope, tags=["accounts"])
async def update_account(
    body: AccountUpdateRequest, context: RequestContext = Depends(get_current)
):
    user = get_runtime().accounts.update_account(
        context.user,
        body.current_password,
        email=body.email_address,
        password=body.password,
        confirmation=body.password_confirmation,
    )
    return Envelope(status="ok", data=_user_out(user))


@router.delete("/accounts/delete_account", response_model=Envelope, tags=["accounts"])
async def delete_account(
    body: AccountDeleteRequest, context: RequestContext = Depends(get_current)
):
    get_runtime().accounts.delete_account(context.user, body.current_password)
    return Envelope(status="ok", data={"message": "Account deleted successfully"})


@router.get("/admin/users/{user_id}/sessions", response_model=Envelope, tags=["admin"])
async def admin_list_user_sessions(
    user_id: str, context: RequestContext = Depends(get_admin)
):
    runtime = get_runtime()
    if runtime.store.get_user(user_id) is None:
        raise NotFoundError("user not found")
    items = [_session_out(s) for s in runtime.sessions.list_active(user_id)]
    logger.info("admin_listed_sessions", admin_id=context.user.id, user_id=user_id)
    return Envelope(status="ok", data=SessionListResponse(items=items).model_dump(mode="json"))
