from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple

from llmhub.logging import get_logger
from llmhub.storage.errors import ConstraintViolation
from llmhub.storage.models import AuthToken, TokenPurpose, User, utcnow


class MemoryStore:
    """In-process credential and token store persisted to a JSON file.

    Every read and write happens under one re-entrant lock, so lookups that
    must be atomic with a delete (token consumption) cannot interleave.
    """

    def __init__(self, fs_root: str = "/tmp/llmhub") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tokens: Dict[Tuple[str, TokenPurpose], AuthToken] = {}
        # RLock so helpers can re-acquire inside an outer critical section
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    # -- credentials -------------------------------------------------------

    def create_user(
        self,
        name: str,
        email: str,
        password_hash: str,
        password_algo: str = "argon2id",
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(name, email, password_hash, password_algo)
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def mark_email_verified(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            if not user:
                return None
            user.email_verified = True
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def set_password(
        self, email: str, password_hash: str, password_algo: str = "argon2id"
    ) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            if not user:
                return None
            user.password_hash = password_hash
            user.password_algo = password_algo
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def update_user(self, user_id: str, *, name: Optional[str] = None) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if name is not None:
                user.name = name
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def delete_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.pop(user_id, None)
            if not user:
                return None
            self.delete_tokens_for_email(user.email)
            self._persist_state()
            return replace(user)

    # -- tokens ------------------------------------------------------------

    def get_token_for_email(self, email: str, purpose: TokenPurpose) -> Optional[AuthToken]:
        with self._data_lock:
            record = self.tokens.get((email, TokenPurpose(purpose)))
            return replace(record) if record else None

    def get_token_by_value(self, token: str, purpose: TokenPurpose) -> Optional[AuthToken]:
        with self._data_lock:
            purpose = TokenPurpose(purpose)
            record = next(
                (
                    t
                    for t in self.tokens.values()
                    if t.token == token and t.purpose == purpose
                ),
                None,
            )
            return replace(record) if record else None

    def upsert_token(
        self,
        email: str,
        purpose: TokenPurpose,
        token: str,
        now: Optional[datetime] = None,
    ) -> AuthToken:
        with self._data_lock:
            record = AuthToken(
                email=email,
                purpose=TokenPurpose(purpose),
                token=token,
                updated_at=now or utcnow(),
            )
            # Keyed on (email, purpose): a new token replaces the previous one
            self.tokens[(email, record.purpose)] = record
            self._persist_state()
            return replace(record)

    def consume_token(self, token: str, purpose: TokenPurpose) -> Optional[AuthToken]:
        """Find and delete a token in one critical section."""
        with self._data_lock:
            record = self.get_token_by_value(token, purpose)
            if not record:
                return None
            self.tokens.pop((record.email, record.purpose), None)
            self._persist_state()
            return record

    def delete_token(self, token: str, purpose: TokenPurpose) -> bool:
        return self.consume_token(token, purpose) is not None

    def delete_tokens_for_email(self, email: str) -> int:
        with self._data_lock:
            keys = [key for key in self.tokens if key[0] == email]
            for key in keys:
                self.tokens.pop(key, None)
            if keys:
                self._persist_state()
            return len(keys)

    def verify_connection(self) -> None:
        with self._data_lock:
            self._state_path()

    def close(self) -> None:
        return None

    # -- persistence -------------------------------------------------------

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "password_hash": user.password_hash,
            "password_algo": user.password_algo,
            "email_verified": user.email_verified,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            name=data.get("name", ""),
            email=data["email"],
            password_hash=data["password_hash"],
            password_algo=data.get("password_algo", "argon2id"),
            email_verified=bool(data.get("email_verified", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )

    def _serialize_token(self, record: AuthToken) -> dict:
        return {
            "email": record.email,
            "purpose": record.purpose.value,
            "token": record.token,
            "updated_at": self._serialize_datetime(record.updated_at),
        }

    def _deserialize_token(self, data: dict) -> AuthToken:
        return AuthToken(
            email=data["email"],
            purpose=TokenPurpose(data["purpose"]),
            token=data["token"],
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Read directly instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.tokens = {}
        for token_data in data.get("tokens", []):
            record = self._deserialize_token(token_data)
            self.tokens[(record.email, record.purpose)] = record
        self.logger.info(
            "memory_store_loaded", users=len(self.users), tokens=len(self.tokens)
        )
        return True
