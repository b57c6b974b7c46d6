from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Optional

from chatauth.logging import get_logger
from chatauth.storage.errors import ConstraintViolation
from chatauth.storage.models import UserCredential, UserStatus


class MemoryStore:
    """In-process credential store for tests and single-node development.

    Every read returns a copy of the stored record and every mutation happens
    under one lock, so a conditional update observes and writes the row in a
    single step, the same guarantee the Postgres store gets from ``UPDATE ...
    WHERE``.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserCredential] = {}
        self._data_lock = threading.RLock()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def verify_connection(self) -> None:
        return None

    def create_user(
        self, email: str, password_hash: str, full_name: str = ""
    ) -> UserCredential:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = UserCredential.new(normalized, password_hash, full_name)
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[UserCredential]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[UserCredential]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def update_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.updated_at = self._now()
            return True

    def set_user_active(self, user_id: str, is_active: bool) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.is_active = is_active
            user.updated_at = self._now()
            return True

    # token state
    def store_token_pair(self, user_id: str, access_token: str, refresh_token: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.access_token = access_token
            user.refresh_token = refresh_token
            user.is_logged_out = False
            user.status = UserStatus.ONLINE
            user.updated_at = self._now()
            return True

    def rotate_token_pair(
        self,
        user_id: str,
        expected_refresh_token: str,
        access_token: str,
        refresh_token: str,
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if (
                not user
                or user.is_logged_out
                or not user.is_active
                or user.refresh_token != expected_refresh_token
            ):
                return False
            user.access_token = access_token
            user.refresh_token = refresh_token
            user.updated_at = self._now()
            return True

    def mark_logged_out(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            now = self._now()
            user.access_token = None
            user.refresh_token = None
            user.one_time_password_token = None
            user.is_logged_out = True
            user.status = UserStatus.OFFLINE
            user.last_seen = now
            user.updated_at = now
            return True

    def set_one_time_password(self, user_id: str, token: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.one_time_password_token = token
            user.updated_at = self._now()
            return True

    def consume_one_time_password(self, user_id: str, expected_token: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if (
                not user
                or not user.is_active
                or user.one_time_password_token != expected_token
            ):
                return False
            user.one_time_password_token = None
            user.updated_at = self._now()
            return True
