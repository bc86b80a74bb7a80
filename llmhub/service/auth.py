from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from llmhub.config import Settings
from llmhub.logging import email_hash, get_logger
from llmhub.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from llmhub.service.passwords import hash_password, verify_password
from llmhub.service.tokens import TokenLifecycleService
from llmhub.storage.errors import ConstraintViolation
from llmhub.storage.models import TokenPurpose, User, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class AuthStore(Protocol):
    def create_user(
        self,
        name: str,
        email: str,
        password_hash: str,
        password_algo: str = "argon2id",
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_password(
        self, email: str, password_hash: str, password_algo: str = "argon2id"
    ) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    email: str


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
        }


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Registration, credential checks and the stateless bearer pair.

    Access and refresh tokens are HS256 JWTs carrying ``sub`` and ``email``.
    They are signed with different secrets, so neither can stand in for the
    other, and nothing about them is persisted.
    """

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenLifecycleService,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self._clock = clock or utcnow
        self.logger = logger
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return self._clock()

    async def register(
        self, name: str, email: str, password: str, confirm_password: str
    ) -> User:
        """Create an unverified account and mail its verification link.

        The account survives a mail delivery failure; the caller can use the
        resend path once the cooldown has passed.
        """
        email = normalize_email(email)
        if self.store.get_user_by_email(email):
            raise ConflictError("Email already registered", detail={"field": "email"})
        if password != confirm_password:
            raise ValidationError("Password and confirm password do not match")

        pwd_hash, algo = hash_password(password)
        try:
            user = self.store.create_user(name.strip(), email, pwd_hash, algo)
        except ConstraintViolation as exc:
            raise ConflictError("Email already registered", detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=user.id, email_hash=email_hash(email))

        await self.tokens.issue(user.email, TokenPurpose.EMAIL_VERIFY)
        return user

    async def validate_user(self, email: str, password: str) -> User:
        user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            raise NotFoundError("User not found")
        if not user.email_verified:
            raise ForbiddenError("Email is not verified")
        if not verify_password(user.password_hash, user.password_algo, password):
            self.logger.warning("login_failed", user_id=user.id)
            raise AuthenticationError("Invalid credentials")
        return user

    async def login(self, email: str, password: str) -> tuple[User, TokenPair]:
        user = await self.validate_user(email, password)
        pair = self.issue_tokens(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, pair

    async def refresh_tokens(self, refresh_token: str) -> tuple[User, TokenPair]:
        """Mint a new pair from a valid refresh token.

        Every failure (bad signature, expired, malformed, unknown subject)
        raises the same ``AuthenticationError``.
        """
        payload = self._decode_jwt(refresh_token, self.settings.jwt_refresh_secret)
        if not payload or payload.get("token_type") != REFRESH:
            raise AuthenticationError("Invalid refresh token")
        user = self.store.get_user(str(payload.get("sub") or ""))
        if not user:
            self.logger.warning("refresh_unknown_subject")
            raise AuthenticationError("Invalid refresh token")
        return user, self.issue_tokens(user)

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        confirm_password: str,
    ) -> None:
        if current_password == new_password:
            raise AuthenticationError("New password must be different from the current password")
        if new_password != confirm_password:
            raise AuthenticationError("New password and confirm password do not match")
        user = self.store.get_user(user_id)
        if not user:
            raise AuthenticationError("User not found")
        if not verify_password(user.password_hash, user.password_algo, current_password):
            self.logger.warning("change_password_rejected", user_id=user_id)
            raise AuthenticationError("Invalid current password")

        pwd_hash, algo = hash_password(new_password)
        self.store.set_password(user.email, pwd_hash, algo)
        self.logger.info("password_changed", user_id=user_id)

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Resolve an ``Authorization: Bearer`` header to the calling user."""
        token = self._extract_bearer(authorization)
        if not token:
            return None
        payload = self._decode_jwt(token, self.settings.jwt_secret)
        if not payload or payload.get("token_type") != ACCESS:
            return None
        user = self.store.get_user(str(payload.get("sub") or ""))
        if not user:
            return None
        return AuthContext(user_id=user.id, email=user.email)

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    def issue_tokens(self, user: User) -> TokenPair:
        now = self._now()
        access_exp = int(
            (now + timedelta(minutes=self.settings.access_token_ttl_minutes)).timestamp()
        )
        refresh_exp = int(
            (now + timedelta(minutes=self.settings.refresh_token_ttl_minutes)).timestamp()
        )
        base = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "iat": int(now.timestamp()),
        }
        access_payload = {**base, "token_type": ACCESS, "jti": str(uuid.uuid4()), "exp": access_exp}
        refresh_payload = {**base, "token_type": REFRESH, "jti": str(uuid.uuid4()), "exp": refresh_exp}
        return TokenPair(
            access_token=self._encode_jwt(access_payload, self.settings.jwt_secret),
            refresh_token=self._encode_jwt(refresh_payload, self.settings.jwt_refresh_secret),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(self, token: str, secret: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
