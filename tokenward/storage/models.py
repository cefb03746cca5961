from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    """Account lifecycle: unverified until the email is confirmed."""

    UNVERIFIED = "unverified"
    ACTIVE = "active"
    BLOCKED = "blocked"


class KeyPurpose(str, Enum):
    """Functional category of a signing key; each has its own key chain."""

    ACCESS = "access_key"
    REFRESH = "refresh_key"
    CONFIRMATION = "confirmation_user_key"
    RESET_PASSWORD = "reset_password_key"


@dataclass
class User:
    id: str
    email: str
    name: str
    role: str = "user"
    status: UserStatus = UserStatus.UNVERIFIED
    created_at: datetime = field(default_factory=_utcnow)
    deleted_at: Optional[datetime] = None
    meta: Dict | None = None

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE and self.deleted_at is None

    def public_dict(self) -> Dict[str, Any]:
        """Serializable view of the user; never carries credentials."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class SigningKey:
    id: str
    purpose: KeyPurpose
    encrypted_private_key: bytes
    public_key: str
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class DecryptedKey:
    """A signing key with its private PEM decrypted for a single use."""

    id: str
    purpose: KeyPurpose
    public_key: str
    private_key: str
    created_at: datetime


@dataclass
class SessionData:
    """Per-session record held in the session cache.

    Client fields are informational. The jti/exp pairs name the only
    tokens of this session's lineage that are currently valid.
    """

    session_id: str
    user_id: str
    email: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None
    access_jti: Optional[str] = None
    access_exp: Optional[int] = None
    refresh_jti: Optional[str] = None
    refresh_exp: Optional[int] = None
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionData":
        known = {name: data.get(name) for name in cls.__dataclass_fields__}
        return cls(**known)
