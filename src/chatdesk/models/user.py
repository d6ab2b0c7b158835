"""
User model with bcrypt password hashing.
"""
from datetime import datetime, timezone
from typing import Any, Dict

import bcrypt
from sqlalchemy import Column, DateTime, Integer, String

from chatdesk.models.conversation import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}')>"

    @staticmethod
    def hash_password(password: str, cost_factor: int = 10) -> str:
        """
        Hash password using bcrypt.

        Args:
            password: Plaintext password to hash
            cost_factor: Bcrypt cost factor (4-31)

        Returns:
            Bcrypt hash string (60 chars)
        """
        salt = bcrypt.gensalt(rounds=cost_factor)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    def set_password(self, password: str, cost_factor: int = 10) -> None:
        self.password_hash = self.hash_password(password, cost_factor)

    def verify_password(self, password: str) -> bool:
        """True if `password` matches the stored hash."""
        if not password or not self.password_hash:
            return False

        try:
            return bcrypt.checkpw(
                password.encode("utf-8"),
                self.password_hash.encode("utf-8"),
            )
        except (ValueError, AttributeError):
            return False

    def to_public(self) -> Dict[str, Any]:
        """User fields that may leave the server (never the hash)."""
        return {"id": self.id, "name": self.name, "email": self.email}
