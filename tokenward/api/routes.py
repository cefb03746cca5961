from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, TypeVar

from fastapi import APIRouter, Depends, Query, Request, Response

from tokenward.api.schemas import (
    AuthResponse,
    CountResponse,
    EmailRequest,
    Envelope,
    LoginRequest,
    LogoutSessionsRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionOut,
    user_out,
)
from tokenward.config import CredentialSource
from tokenward.service.auth import AuthContext, AuthSession, ClientContext
from tokenward.service.results import Result
from tokenward.service.runtime import get_runtime

router = APIRouter(prefix="/auth", tags=["auth"])

T = TypeVar("T")


def _unwrap(result: Result[T]) -> T:
    """Return the Ok value or raise the matching ServiceError."""
    if result.ok:
        return result.value
    raise result.to_exception()


def get_request_ip(request: Request) -> Optional[str]:
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _client_hint(request: Request, header: str) -> Optional[str]:
    value = request.headers.get(header)
    if not value:
        return None
    # sec-ch-ua lists brands as '"Brand";v="1", ...'; keep the first brand
    return value.split(",")[0].split(";")[0].strip().strip('"') or None


def client_context(request: Request) -> ClientContext:
    return ClientContext(
        ip=get_request_ip(request),
        user_agent=request.headers.get("user-agent"),
        os=_client_hint(request, "sec-ch-ua-platform"),
        browser=_client_hint(request, "sec-ch-ua"),
    )


def set_refresh_cookie(response: Response, token: str, expires_at: int) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        path="/",
        expires=datetime.fromtimestamp(expires_at, tz=timezone.utc),
    )


def clear_refresh_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        key=settings.refresh_cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _session_response(response: Response, session: AuthSession) -> Envelope:
    runtime = get_runtime()
    body = AuthResponse(
        user=user_out(session.user),
        access_token=session.access_token.token,
        access_token_expires_at=datetime.fromtimestamp(
            session.access_token.exp, tz=timezone.utc
        ),
        session_id=session.session_id,
    ).model_dump(mode="json")
    if runtime.settings.refresh_token_source == CredentialSource.COOKIE:
        set_refresh_cookie(
            response, session.refresh_token.token, session.refresh_token.exp
        )
    else:
        body["refresh_token"] = session.refresh_token.token
    return Envelope(status="ok", data=body)


async def get_user(request: Request) -> AuthContext:
    runtime = get_runtime()
    token = runtime.access_extractor.extract(request)
    return _unwrap(await runtime.auth.authenticate_access_token(token))


async def get_refresh_user(request: Request) -> AuthContext:
    runtime = get_runtime()
    token = runtime.refresh_extractor.extract(request)
    return _unwrap(await runtime.auth.authenticate_refresh_token(token))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    session = _unwrap(
        await runtime.auth.login(body.email, body.password, client_context(request))
    )
    return _session_response(response, session)


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest):
    runtime = get_runtime()
    user = _unwrap(await runtime.auth.register(body.email, body.password, body.name))
    return Envelope(status="ok", data={"user": user_out(user).model_dump()})


@router.get("/verify-email", response_model=Envelope)
async def verify_email(
    request: Request,
    response: Response,
    token: str = Query(..., min_length=1, max_length=4096),
):
    runtime = get_runtime()
    session = _unwrap(await runtime.auth.verify_email(token, client_context(request)))
    return _session_response(response, session)


@router.post("/resend-verification-email", response_model=Envelope)
async def resend_verification_email(body: EmailRequest):
    runtime = get_runtime()
    _unwrap(await runtime.auth.resend_verification_email(body.email))
    return Envelope(status="ok", data={"message": "verification email sent"})


@router.post("/refresh", response_model=Envelope)
async def refresh(response: Response, principal: AuthContext = Depends(get_refresh_user)):
    runtime = get_runtime()
    session = _unwrap(await runtime.auth.refresh(principal))
    return _session_response(response, session)


@router.post("/logout", response_model=Envelope)
async def logout(
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_refresh_user),
):
    runtime = get_runtime()
    token = runtime.refresh_extractor.extract(request) or ""
    _unwrap(await runtime.auth.logout(principal, token))
    clear_refresh_cookie(response)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/logout-all", response_model=Envelope)
async def logout_all(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    removed = _unwrap(await runtime.auth.logout_all(principal.user.id))
    clear_refresh_cookie(response)
    return Envelope(status="ok", data=CountResponse(removed=removed).model_dump())


@router.get("/sessions", response_model=Envelope)
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = _unwrap(await runtime.auth.get_sessions(principal.user.id))
    return Envelope(
        status="ok",
        data={
            "sessions": [
                SessionOut.from_session(s).model_dump(mode="json") for s in sessions
            ]
        },
    )


@router.delete("/sessions", response_model=Envelope)
async def logout_sessions(
    body: LogoutSessionsRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    removed = _unwrap(
        await runtime.auth.logout_sessions(principal.user.id, body.session_ids)
    )
    return Envelope(status="ok", data=CountResponse(removed=removed).model_dump())


@router.post("/send-reset-password", response_model=Envelope)
async def send_reset_password(body: EmailRequest):
    runtime = get_runtime()
    _unwrap(await runtime.auth.send_reset_password(body.email))
    return Envelope(status="ok", data={"message": "reset email sent"})


@router.post("/reset-password", response_model=Envelope)
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    response: Response,
    token: str = Query(..., min_length=1, max_length=4096),
):
    runtime = get_runtime()
    session = _unwrap(
        await runtime.auth.reset_password(token, body.password, client_context(request))
    )
    return _session_response(response, session)


@router.get("/profile", response_model=Envelope)
async def profile(principal: AuthContext = Depends(get_user)):
    user = user_out(principal.user.public_dict())
    return Envelope(status="ok", data={"user": user.model_dump()})
