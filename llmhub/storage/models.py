from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenPurpose(str, Enum):
    """Single use a mailed token is issued for."""

    EMAIL_VERIFY = "email_verify"
    FORGOT_PASSWORD = "forgot_password"


@dataclass
class User:
    id: str
    name: str
    email: str
    password_hash: str
    password_algo: str = "argon2id"
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        name: str,
        email: str,
        password_hash: str,
        password_algo: str = "argon2id",
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            email=email,
            password_hash=password_hash,
            password_algo=password_algo,
            created_at=now,
            updated_at=now,
        )

    def to_public(self) -> Dict[str, Any]:
        """Profile fields safe to return to the account owner."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "email_verified": self.email_verified,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class AuthToken:
    """Mailed token; at most one per (email, purpose)."""

    email: str
    purpose: TokenPurpose
    token: str
    updated_at: datetime

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or utcnow()) - self.updated_at
