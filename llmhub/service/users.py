from __future__ import annotations

from typing import Optional, Protocol

from llmhub.logging import get_logger
from llmhub.service.errors import NotFoundError
from llmhub.storage.models import User

logger = get_logger(__name__)


class UserStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def update_user(self, user_id: str, *, name: Optional[str] = None) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> Optional[User]: ...


class UserService:
    """Profile operations for the authenticated account."""

    def __init__(self, store: UserStore) -> None:
        self.store = store

    def get(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def update(self, user_id: str, *, name: Optional[str] = None) -> User:
        user = self.store.update_user(user_id, name=name.strip() if name else None)
        if not user:
            raise NotFoundError("User not found")
        logger.info("user_updated", user_id=user_id)
        return user

    def delete(self, user_id: str) -> User:
        # Removes the account together with any pending mailed tokens
        user = self.store.delete_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        logger.info("user_deleted", user_id=user_id)
        return user
