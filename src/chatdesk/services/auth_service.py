"""
Authentication Service — password hashing, JWT issue/verification and the
account operations behind the auth endpoints.

Features:
- bcrypt password hashing with a configurable cost factor
- HS256 access tokens carrying `sub` and `userId`
- Google sign-in from a verified Google ID token (google-auth)
- Password change and account deletion with the user's conversations
"""
import asyncio
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import structlog
from google.auth.exceptions import GoogleAuthError
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from jose import JWTError, jwt
from sqlalchemy import delete, select

from chatdesk.config import get_config
from chatdesk.errors import (
    AuthenticationError, BadRequestError, ChatdeskError, ConflictError, NotFoundError,
)
from chatdesk.models import ConversationArchive, User
from chatdesk.services.database import get_session

log = structlog.get_logger()

INVALID_CREDENTIALS = "E-mail ou senha inválidos."
INVALID_TOKEN = "Token inválido ou expirado."
INVALID_GOOGLE_CREDENTIAL = "Credencial do Google inválida."


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Issues tokens and manages user accounts."""

    def __init__(self):
        self.cfg = get_config().auth
        self.secret_key = self.cfg.jwt_secret
        self.algorithm = self.cfg.jwt_algorithm
        if self.secret_key == "dev_secret_key_change_in_prod":
            log.warning("jwt_default_secret", message="JWT_SECRET not set, using development secret")

    # ---- Tokens ----

    def create_access_token(self, user_id: int) -> str:
        """
        Signed access token for a user.

        Args:
            user_id: id placed in both `sub` and `userId`

        Returns:
            Encoded JWT, valid for `auth.access_token_expire_minutes`
        """
        now = datetime.now(timezone.utc)
        to_encode = {
            "sub": str(user_id),
            "userId": user_id,
            "iat": now,
            "exp": now + timedelta(minutes=self.cfg.access_token_expire_minutes),
        }
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> int:
        """
        Decode a bearer token and return the user id it was issued for.

        Raises:
            AuthenticationError: if the token is malformed, tampered or expired
        """
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            log.info("jwt_verification_failed", error=str(e))
            raise AuthenticationError(INVALID_TOKEN)

        user_id = payload.get("userId", payload.get("sub"))
        try:
            return int(user_id)
        except (TypeError, ValueError):
            raise AuthenticationError(INVALID_TOKEN)

    def _issue(self, user: User) -> Dict[str, Any]:
        return {"user": user.to_public(), "token": self.create_access_token(user.id)}

    # ---- Account operations ----

    async def register(self, name: Optional[str], email: Optional[str], password: Optional[str]) -> Dict[str, Any]:
        """Create an account and return `{user, token}`."""
        if not name or not email or not password:
            raise BadRequestError("Nome, e-mail e senha são obrigatórios.")

        email = _normalize_email(email)
        async with get_session() as session:
            result = await session.execute(select(User).where(User.email == email))
            if result.scalar_one_or_none():
                raise ConflictError("Este e-mail já está em uso.")

            user = User(name=name.strip(), email=email)
            user.set_password(password, cost_factor=self.cfg.bcrypt_rounds)
            session.add(user)
            await session.flush()

            log.info("user_registered", user_id=user.id)
            return self._issue(user)

    async def login(self, email: Optional[str], password: Optional[str]) -> Dict[str, Any]:
        """Verify credentials and return `{user, token}`."""
        if not email or not password:
            raise BadRequestError("E-mail e senha são obrigatórios.")

        async with get_session() as session:
            result = await session.execute(select(User).where(User.email == _normalize_email(email)))
            user = result.scalar_one_or_none()

        # Same message for unknown e-mail and wrong password
        if not user:
            log.info("auth_failed", reason="user_not_found")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not user.verify_password(password):
            log.info("auth_failed", reason="invalid_password", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)

        log.info("auth_success", user_id=user.id)
        return self._issue(user)

    async def verify_google_credential(self, credential: Optional[str]) -> Dict[str, Any]:
        """
        Check a Google ID token against the configured OAuth client.

        The token is the `credential` that Google Identity Services hands the
        browser after sign-in. Signature, issuer, audience and expiry are
        checked by google-auth; the e-mail must be one Google has verified.

        Args:
            credential: Google ID token (a signed JWT)

        Returns:
            The verified token claims (`email`, `name`, `sub`, ...)

        Raises:
            BadRequestError: no credential was sent
            ChatdeskError: Google sign-in is not configured (503)
            AuthenticationError: the token is invalid, expired, issued for
                another client, or its e-mail is unverified
        """
        if not credential:
            raise BadRequestError("Credencial do Google é obrigatória.")
        if not self.cfg.google_client_id:
            raise ChatdeskError("Login com Google não está configurado.", status_code=503)

        try:
            # verify_oauth2_token fetches Google's certificates with a blocking request
            claims = await asyncio.to_thread(
                id_token.verify_oauth2_token,
                credential,
                google_requests.Request(),
                self.cfg.google_client_id,
            )
        except (ValueError, GoogleAuthError) as e:
            log.info("google_token_rejected", error=str(e))
            raise AuthenticationError(INVALID_GOOGLE_CREDENTIAL)

        if not claims.get("email") or not claims.get("email_verified"):
            log.info("google_token_rejected", error="email not verified")
            raise AuthenticationError(INVALID_GOOGLE_CREDENTIAL)
        return claims

    async def google_login(self, credential: Optional[str]) -> Tuple[Dict[str, Any], bool]:
        """
        Sign in with a Google ID token, creating the account on first use.

        An existing account with the same (verified) e-mail is signed in, so a
        password account can later be reached through Google as well.

        Args:
            credential: Google ID token

        Returns:
            (`{user, token}`, created) where created is True for a new account
        """
        claims = await self.verify_google_credential(credential)
        email = _normalize_email(claims["email"])
        name = (claims.get("name") or email.split("@")[0]).strip()

        async with get_session() as session:
            result = await session.execute(select(User).where(User.email == email))
            user = result.scalar_one_or_none()
            if user:
                log.info("google_login", user_id=user.id, created=False)
                return self._issue(user), False

            # The schema wants a hash; nobody knows this password.
            user = User(name=name, email=email)
            user.set_password(secrets.token_urlsafe(24), cost_factor=self.cfg.bcrypt_rounds)
            session.add(user)
            await session.flush()

            log.info("google_login", user_id=user.id, created=True)
            return self._issue(user), True

    async def get_user(self, user_id: int) -> User:
        """Raises NotFoundError when the account no longer exists."""
        async with get_session() as session:
            user = await session.get(User, user_id)
        if not user:
            raise NotFoundError("Usuário não encontrado.")
        return user

    async def update_password(
        self, user_id: int, new_password: Optional[str], current_password: Optional[str] = None,
    ) -> None:
        """Change a password; the current one is required whenever a hash exists."""
        if not new_password:
            raise BadRequestError("Nova senha é obrigatória.")
        if len(new_password) < self.cfg.min_password_length:
            raise BadRequestError(
                f"A senha deve ter pelo menos {self.cfg.min_password_length} caracteres."
            )

        async with get_session() as session:
            user = await session.get(User, user_id)
            if not user:
                raise NotFoundError("Usuário não encontrado.")

            if user.password_hash:
                if not current_password:
                    raise BadRequestError("Senha atual é obrigatória.")
                if not user.verify_password(current_password):
                    raise AuthenticationError("Senha atual está incorreta.")

            user.set_password(new_password, cost_factor=self.cfg.bcrypt_rounds)
            log.info("password_updated", user_id=user_id)

    async def delete_account(self, user_id: int) -> None:
        """Remove the user's conversations, then the user."""
        async with get_session() as session:
            await session.execute(delete(ConversationArchive).where(ConversationArchive.user_id == user_id))
            await session.execute(delete(User).where(User.id == user_id))
        log.info("account_deleted", user_id=user_id)


# Singleton
_auth_service: Optional[AuthService] = None


def get_auth_service() -> AuthService:
    """Get singleton AuthService instance."""
    global _auth_service
    if _auth_service is None:
        _auth_service = AuthService()
    return _auth_service


def reset_auth_service() -> None:
    global _auth_service
    _auth_service = None
