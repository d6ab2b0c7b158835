"""
Authentication dependency — resolves the bearer token of a request to a user id.
"""
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chatdesk.errors import AuthenticationError
from chatdesk.services.auth_service import AuthService, get_auth_service

MISSING_TOKEN = "Não autorizado. Token não fornecido."

# auto_error=False so a missing header reaches us and gets our own message
security = HTTPBearer(auto_error=False)


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    auth_service: AuthService = Depends(get_auth_service),
) -> int:
    """
    Usage in route:
        @router.get("/protected")
        async def protected_route(user_id: int = Depends(get_current_user_id)):
            ...

    Raises:
        AuthenticationError: header missing/ill-formed, or token invalid/expired
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError(MISSING_TOKEN)
    return auth_service.verify_token(credentials.credentials)
