"""
Account endpoints — register, login, Google sign-in, password change,
account deletion and the current-user lookup.
"""
from fastapi import APIRouter, Depends, Request, Response, status

import structlog

from chatdesk.middleware.auth_middleware import get_current_user_id
from chatdesk.middleware.rate_limiter import endpoint_limit, get_limiter
from chatdesk.schemas import (
    AuthResponse, GoogleLoginRequest, LoginRequest, MessageResponse,
    PasswordUpdateRequest, RegisterRequest, User,
)
from chatdesk.services.auth_service import AuthService, get_auth_service

log = structlog.get_logger()

router = APIRouter(prefix="/api", tags=["authentication"])
limiter = get_limiter()


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(endpoint_limit("auth_register"))
async def register(
    request: Request,
    response: Response,
    req: RegisterRequest,
    auth_service: AuthService = Depends(get_auth_service),
):
    """Create an account and sign it in."""
    return await auth_service.register(req.name, req.email, req.password)


@router.post("/login", response_model=AuthResponse)
@limiter.limit(endpoint_limit("auth_login"))
async def login(
    request: Request,
    response: Response,
    req: LoginRequest,
    auth_service: AuthService = Depends(get_auth_service),
):
    return await auth_service.login(req.email, req.password)


@router.post("/google-login", response_model=AuthResponse)
@limiter.limit(endpoint_limit("auth_login"))
async def google_login(
    request: Request,
    response: Response,
    req: GoogleLoginRequest,
    auth_service: AuthService = Depends(get_auth_service),
):
    """
    Sign in with a Google ID token.

    The account is looked up by the token's verified e-mail. 200 for an
    existing account, 201 when one was created, 401 when Google does not
    vouch for the token.
    """
    body, created = await auth_service.google_login(req.credential)
    if created:
        response.status_code = status.HTTP_201_CREATED
    return body


@router.post("/password", response_model=MessageResponse)
async def update_password(
    req: PasswordUpdateRequest,
    user_id: int = Depends(get_current_user_id),
    auth_service: AuthService = Depends(get_auth_service),
):
    await auth_service.update_password(user_id, req.new_password, req.current_password)
    return {"message": "Senha atualizada com sucesso."}


@router.delete("/delete-account", status_code=status.HTTP_204_NO_CONTENT)
async def delete_account(
    user_id: int = Depends(get_current_user_id),
    auth_service: AuthService = Depends(get_auth_service),
):
    await auth_service.delete_account(user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/me", response_model=User)
async def me(
    user_id: int = Depends(get_current_user_id),
    auth_service: AuthService = Depends(get_auth_service),
):
    user = await auth_service.get_user(user_id)
    return user.to_public()
