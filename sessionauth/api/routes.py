from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from sessionauth.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    SessionResponse,
    SignupRequest,
    SignupResponse,
    UserResponse,
)
from sessionauth.config import Settings
from sessionauth.logging import get_logger
from sessionauth.service.auth import SessionService
from sessionauth.storage.models import IssuedSession

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def get_service(request: Request) -> SessionService:
    return request.app.state.session_service


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def _session_token(request: Request, settings: Settings) -> Optional[str]:
    return request.cookies.get(settings.cookie_name)


def _apply_session_cookie(
    response: Response, settings: Settings, issued: IssuedSession
) -> None:
    if settings.sliding_expiration:
        # The server refreshes the record on use; the cookie only needs to
        # outlive it up to the absolute cap.
        max_age = settings.session_max_lifetime_seconds or None
        response.set_cookie(
            settings.cookie_name,
            issued.token,
            max_age=max_age,
            httponly=True,
            secure=settings.cookie_secure,
            samesite=settings.cookie_samesite,
            path="/",
        )
        return
    response.set_cookie(
        settings.cookie_name,
        issued.token,
        expires=issued.expires_at,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        path="/",
    )


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite=settings.cookie_samesite,
    )


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(
    body: SignupRequest,
    response: Response,
    service: SessionService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
):
    """Create an account and start a session for it.

    Raises:
        400: malformed email, name or password
        403: signups disabled
        409: email already registered
    """
    result = await service.signup(body.email, body.name, body.password)
    _apply_session_cookie(response, settings, result.session)
    return Envelope(
        status="ok",
        data=SignupResponse(
            user=UserResponse(**result.user.to_dict()),
            expires_at=result.session.expires_at,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    response: Response,
    service: SessionService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
):
    """Authenticate with email and password and set the session cookie.

    Raises:
        401: invalid credentials (unknown email and wrong password look the same)
    """
    issued = await service.login(body.email, body.password)
    _apply_session_cookie(response, settings, issued)
    return Envelope(status="ok", data=SessionResponse(expires_at=issued.expires_at))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    service: SessionService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
):
    await service.logout(_session_token(request, settings))
    _clear_session_cookie(response, settings)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(
    request: Request,
    service: SessionService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
):
    user = await service.current_user(_session_token(request, settings))
    return Envelope(status="ok", data=UserResponse(**user.to_dict()))


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    service: SessionService = Depends(get_service),
    settings: Settings = Depends(get_app_settings),
):
    await service.change_password(
        _session_token(request, settings), body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"message": "password updated"})
