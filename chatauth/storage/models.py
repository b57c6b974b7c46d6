from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    """Presence flag shown to other chat users; not used for auth decisions."""

    ONLINE = "online"
    OFFLINE = "offline"


@dataclass
class UserCredential:
    id: str
    email: str
    password_hash: str
    full_name: str = ""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    one_time_password_token: Optional[str] = None
    is_logged_out: bool = False
    is_active: bool = True
    status: UserStatus = UserStatus.OFFLINE
    last_seen: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, email: str, password_hash: str, full_name: str = "") -> "UserCredential":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            full_name=full_name,
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    issued_at: datetime
    token_type: str = "bearer"
