from __future__ import annotations

import base64
import json
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from tokenward.logging import get_logger
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.models import KeyPurpose, SigningKey, User, UserStatus


class MemoryStore:
    """In-memory user and signing-key store with optional JSON snapshots.

    Used in tests and for local development. When ``fs_root`` is given the
    full state is written to ``<fs_root>/state/memory_store.json`` after each
    mutation and reloaded on start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.signing_keys: Dict[str, SigningKey] = {}
        # RLock so nested helpers can re-enter within one operation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # user / auth
    def create_user(
        self,
        email: str,
        name: str,
        *,
        role: str = "user",
        status: UserStatus = UserStatus.UNVERIFIED,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                role=role,
                status=UserStatus(status),
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted_at:
                return None
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.email == email and not u.deleted_at
                ),
                None,
            )

    def get_active_user(self, email: str, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.get_user(user_id)
            if not user or user.email != email or not user.is_active:
                return None
            return user

    def set_user_status(self, user_id: str, status: UserStatus) -> Optional[User]:
        with self._data_lock:
            user = self.get_user(user_id)
            if not user:
                return None
            user.status = UserStatus(status)
            self._persist_state()
            return user

    def soft_delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted_at:
                return False
            user.deleted_at = self._now()
            self._persist_state()
            return True

    def restore_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.deleted_at = None
            self._persist_state()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # signing keys
    def create_signing_key(
        self,
        purpose: KeyPurpose,
        encrypted_private_key: bytes,
        public_key: str,
    ) -> SigningKey:
        with self._data_lock:
            key = SigningKey(
                id=str(uuid.uuid4()),
                purpose=KeyPurpose(purpose),
                encrypted_private_key=bytes(encrypted_private_key),
                public_key=public_key,
                created_at=self._now(),
            )
            self.signing_keys[key.id] = key
            self._persist_state()
            return key

    def get_signing_key(self, key_id: str) -> Optional[SigningKey]:
        with self._data_lock:
            return self.signing_keys.get(key_id)

    def get_latest_active_key(self, purpose: KeyPurpose) -> Optional[SigningKey]:
        with self._data_lock:
            candidates = [
                k
                for k in self.signing_keys.values()
                if k.purpose == purpose and k.is_active and not k.deleted_at
            ]
            if not candidates:
                return None
            return max(candidates, key=lambda k: k.created_at)

    def list_signing_keys(self, purpose: Optional[KeyPurpose] = None) -> List[SigningKey]:
        with self._data_lock:
            keys = [
                k
                for k in self.signing_keys.values()
                if purpose is None or k.purpose == purpose
            ]
            return sorted(keys, key=lambda k: k.created_at)

    def deactivate_signing_key(self, key_id: str) -> bool:
        with self._data_lock:
            key = self.signing_keys.get(key_id)
            if not key:
                return False
            key.is_active = False
            self._persist_state()
            return True

    def soft_delete_signing_key(self, key_id: str) -> bool:
        with self._data_lock:
            key = self.signing_keys.get(key_id)
            if not key or key.deleted_at:
                return False
            key.deleted_at = self._now()
            self._persist_state()
            return True

    def delete_signing_keys_before(
        self, purpose: KeyPurpose, cutoff: datetime
    ) -> int:
        with self._data_lock:
            stale = [
                key_id
                for key_id, k in self.signing_keys.items()
                if k.purpose == purpose and k.created_at < cutoff
            ]
            for key_id in stale:
                self.signing_keys.pop(key_id, None)
            if stale:
                self._persist_state()
            return len(stale)

    # snapshots
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "signing_keys": [
                self._serialize_signing_key(k) for k in self.signing_keys.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.signing_keys = {
            k["id"]: self._deserialize_signing_key(k)
            for k in data.get("signing_keys", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            signing_keys=len(self.signing_keys),
        )
        return True

    @staticmethod
    def _serialize_datetime(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _deserialize_datetime(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "status": user.status.value,
            "created_at": self._serialize_datetime(user.created_at),
            "deleted_at": self._serialize_datetime(user.deleted_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            role=data.get("role", "user"),
            status=UserStatus(data.get("status", UserStatus.UNVERIFIED.value)),
            created_at=self._deserialize_datetime(data["created_at"]),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
            meta=data.get("meta"),
        )

    def _serialize_signing_key(self, key: SigningKey) -> dict:
        return {
            "id": key.id,
            "purpose": key.purpose.value,
            "encrypted_private_key": base64.b64encode(key.encrypted_private_key).decode(),
            "public_key": key.public_key,
            "is_active": key.is_active,
            "created_at": self._serialize_datetime(key.created_at),
            "deleted_at": self._serialize_datetime(key.deleted_at),
        }

    def _deserialize_signing_key(self, data: dict) -> SigningKey:
        return SigningKey(
            id=str(data["id"]),
            purpose=KeyPurpose(data["purpose"]),
            encrypted_private_key=base64.b64decode(data["encrypted_private_key"]),
            public_key=data["public_key"],
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )
