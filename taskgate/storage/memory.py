from __future__ import annotations

import threading
import uuid
from typing import Dict, List, Optional, Tuple

from taskgate.logging import get_logger
from taskgate.storage.errors import ConstraintViolation
from taskgate.storage.models import Account, User, UserStatus


class MemoryStore:
    """In-memory user/account store for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # (user_id, provider) -> Account
        self.accounts: Dict[Tuple[str, str], Account] = {}
        # RLock so composite writes can reuse the single-row helpers
        self._data_lock = threading.RLock()

    def ping(self) -> bool:
        return True

    def _check_unique(self, email: str, username: str) -> None:
        for existing in self.users.values():
            if existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing.username == username:
                raise ConstraintViolation("username already exists", {"field": "username"})

    # user / auth
    def find_login_candidate(
        self, email: str, username: str, provider: str
    ) -> Optional[Tuple[User, Optional[Account]]]:
        """Find a user by email or username, with that user's account for ``provider``.

        An email match is returned ahead of a username-only match.
        """
        with self._data_lock:
            by_email = next((u for u in self.users.values() if u.email == email), None)
            user = by_email or next(
                (u for u in self.users.values() if u.username == username), None
            )
            if user is None:
                return None
            return user, self.accounts.get((user.id, provider))

    def create_user_with_account(
        self,
        *,
        email: str,
        username: str,
        display_name: Optional[str],
        avatar_url: Optional[str],
        provider: str,
        provider_account_id: Optional[str],
    ) -> User:
        with self._data_lock:
            self._check_unique(email, username)
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                display_name=display_name,
                avatar_url=avatar_url,
            )
            self.users[user.id] = user
            self.accounts[(user.id, provider)] = Account(
                user_id=user.id,
                provider=provider,
                provider_account_id=provider_account_id or user.id,
            )
            return user

    def create_account(self, user_id: str, provider: str, provider_account_id: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            # Same as ON CONFLICT DO NOTHING
            self.accounts.setdefault(
                (user_id, provider),
                Account(user_id=user_id, provider=provider, provider_account_id=provider_account_id),
            )

    def update_user_profile(
        self, user_id: str, *, display_name: Optional[str], avatar_url: Optional[str]
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return
            user.display_name = display_name
            user.avatar_url = avatar_url

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def list_accounts(self, user_id: str) -> List[Account]:
        with self._data_lock:
            return [acc for (owner, _), acc in self.accounts.items() if owner == user_id]

    def set_user_status(self, user_id: str, status: str) -> Optional[User]:
        status = UserStatus(status).value
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            user.status = status
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.pop(user_id, None)
            if user is None:
                return False
            for key in [key for key in self.accounts if key[0] == user_id]:
                del self.accounts[key]
        self.logger.info("user_deleted", user_id=user_id)
        return True
