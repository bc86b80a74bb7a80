"""Email verification and password reset token lifecycle.

A token is the sha256 hex digest of a random uuid4. At most one token exists
per ``(email, purpose)``; issuing a new one overwrites the previous record so
only the latest mailed link works. Expiry is evaluated lazily when a token is
redeemed, there is no background sweeper.
"""

from __future__ import annotations

import asyncio
import hashlib
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol
from urllib.parse import quote

from llmhub.config import Settings
from llmhub.logging import email_hash, get_logger, token_prefix
from llmhub.service.errors import (
    AlreadyVerifiedError,
    DeliveryFailedError,
    InvalidTokenError,
    NotFoundError,
    RateLimitedError,
    TokenExpiredError,
    ValidationError,
)
from llmhub.service.passwords import hash_password
from llmhub.storage.models import AuthToken, TokenPurpose, User, utcnow

logger = get_logger(__name__)


class TokenStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def mark_email_verified(self, email: str) -> Optional[User]: ...

    def set_password(
        self, email: str, password_hash: str, password_algo: str = "argon2id"
    ) -> Optional[User]: ...

    def get_token_for_email(self, email: str, purpose: TokenPurpose) -> Optional[AuthToken]: ...

    def get_token_by_value(self, token: str, purpose: TokenPurpose) -> Optional[AuthToken]: ...

    def upsert_token(
        self, email: str, purpose: TokenPurpose, token: str, now: Optional[datetime] = None
    ) -> AuthToken: ...

    def consume_token(self, token: str, purpose: TokenPurpose) -> Optional[AuthToken]: ...

    def delete_token(self, token: str, purpose: TokenPurpose) -> bool: ...


class Mailer(Protocol):
    def send_verification(self, to_email: str, link: str) -> bool: ...

    def send_password_reset(self, to_email: str, link: str) -> bool: ...


# Per-purpose wording, link path and mailer method
_PURPOSES = {
    TokenPurpose.EMAIL_VERIFY: {
        "path": "verify-email",
        "recent": "Verification mail sent recently",
        "undelivered": "Verification mail did not send",
        "send": "send_verification",
    },
    TokenPurpose.FORGOT_PASSWORD: {
        "path": "reset-password",
        "recent": "Forgot password mail sent recently",
        "undelivered": "Forgot mail did not send",
        "send": "send_password_reset",
    },
}


def generate_token() -> str:
    return hashlib.sha256(str(uuid.uuid4()).encode()).hexdigest()


class TokenLifecycleService:
    """Issues, throttles and redeems single-use mailed tokens."""

    def __init__(
        self,
        store: TokenStore,
        mailer: Mailer,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.settings = settings
        self._clock = clock or utcnow
        self.resend_cooldown = timedelta(minutes=settings.token_resend_cooldown_minutes)
        self.token_ttl = timedelta(hours=settings.token_ttl_hours)
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def build_link(self, purpose: TokenPurpose, token: str) -> str:
        path = _PURPOSES[TokenPurpose(purpose)]["path"]
        return f"{self.settings.front_end_url}/{path}?token={quote(token, safe='')}"

    async def issue(self, email: str, purpose: TokenPurpose) -> AuthToken:
        """Create (or replace) the token for ``(email, purpose)`` and mail it.

        Raises:
            NotFoundError: no user with this email.
            RateLimitedError: the previous token is younger than the resend cooldown.
            DeliveryFailedError: the mailer failed; the new token stays stored.
        """
        purpose = TokenPurpose(purpose)
        wording = _PURPOSES[purpose]
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("User not found")

        now = self._now()
        existing = self.store.get_token_for_email(user.email, purpose)
        if existing and existing.age(now) < self.resend_cooldown:
            self.logger.info(
                "token_issue_throttled",
                purpose=purpose.value,
                email_hash=email_hash(user.email),
            )
            raise RateLimitedError(wording["recent"])

        record = self.store.upsert_token(user.email, purpose, generate_token(), now)
        self.logger.info(
            "token_issued",
            purpose=purpose.value,
            email_hash=email_hash(user.email),
            token_prefix=token_prefix(record.token),
            replaced=existing is not None,
        )

        link = self.build_link(purpose, record.token)
        send = getattr(self.mailer, wording["send"])
        # smtplib blocks; keep it off the event loop
        delivered = await asyncio.to_thread(send, user.email, link)
        if not delivered:
            self.logger.error(
                "token_mail_failed",
                purpose=purpose.value,
                email_hash=email_hash(user.email),
            )
            raise DeliveryFailedError(wording["undelivered"])
        return record

    def _lookup_live(self, token: str, purpose: TokenPurpose) -> AuthToken:
        record = self.store.get_token_by_value(token, purpose)
        if not record:
            self.logger.warning(
                "token_redeem_unknown", purpose=purpose.value, token_prefix=token_prefix(token)
            )
            raise InvalidTokenError("token not found")
        if record.age(self._now()) > self.token_ttl:
            self.store.delete_token(token, purpose)
            self.logger.info(
                "token_redeem_expired",
                purpose=purpose.value,
                email_hash=email_hash(record.email),
                token_prefix=token_prefix(token),
            )
            raise TokenExpiredError("token expired")
        return record

    def _consume(self, token: str, purpose: TokenPurpose) -> AuthToken:
        # A concurrent redemption may have deleted the record since lookup
        record = self.store.consume_token(token, purpose)
        if not record:
            self.logger.warning(
                "token_redeem_raced", purpose=purpose.value, token_prefix=token_prefix(token)
            )
            raise InvalidTokenError("token already consumed")
        return record

    async def verify_email(self, token: str) -> User:
        """Redeem an email verification token and mark the account verified.

        An already verified account fails with ``AlreadyVerifiedError`` and the
        token is left in place.
        """
        purpose = TokenPurpose.EMAIL_VERIFY
        record = self._lookup_live(token, purpose)
        user = self.store.get_user_by_email(record.email)
        if not user:
            raise InvalidTokenError("token owner missing")
        if user.email_verified:
            self.logger.info("email_already_verified", email_hash=email_hash(user.email))
            raise AlreadyVerifiedError("email already verified")

        self._consume(token, purpose)
        verified = self.store.mark_email_verified(record.email)
        if not verified:
            raise InvalidTokenError("token owner missing")
        self.logger.info("email_verified", user_id=verified.id)
        return verified

    async def reset_password(self, token: str, password: str, confirm_password: str) -> User:
        """Redeem a password reset token and store the new password.

        The lookup and delete happen as one store operation so a token can
        change a password at most once.
        """
        if password != confirm_password:
            raise ValidationError("Password and confirm password do not match")
        purpose = TokenPurpose.FORGOT_PASSWORD
        self._lookup_live(token, purpose)
        record = self._consume(token, purpose)

        pwd_hash, algo = hash_password(password)
        user = self.store.set_password(record.email, pwd_hash, algo)
        if not user:
            raise InvalidTokenError("token owner missing")
        self.logger.info("password_reset_completed", user_id=user.id)
        return user

    async def redeem(
        self,
        token: str,
        purpose: TokenPurpose,
        *,
        password: Optional[str] = None,
        confirm_password: Optional[str] = None,
    ) -> User:
        purpose = TokenPurpose(purpose)
        if purpose is TokenPurpose.EMAIL_VERIFY:
            return await self.verify_email(token)
        if password is None:
            raise ValidationError("password is required")
        return await self.reset_password(
            token, password, password if confirm_password is None else confirm_password
        )
