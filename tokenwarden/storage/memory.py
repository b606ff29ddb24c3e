from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from tokenwarden.logging import get_logger
from tokenwarden.storage.common import normalize_email, reset_token_active
from tokenwarden.storage.errors import ConstraintViolation, RecordNotFound, StoreError
from tokenwarden.storage.models import User


class MemoryStore:
    """In-memory credential store, optionally snapshotted to JSON under fs_root."""

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so persistence can run while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    # users
    def create_user(self, name: str, email: str, password_hash: str) -> User:
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                name=name,
                email=email,
                password_hash=password_hash,
            )
            self._commit(user)
            return replace(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    # password reset
    def save_reset_token(self, email: str, token: str, expiry: datetime) -> None:
        email = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            if not user:
                raise RecordNotFound("user not found", {"field": "email"})
            self._commit(
                replace(
                    user,
                    reset_token=token,
                    reset_token_expiry=expiry,
                    updated_at=datetime.now(timezone.utc),
                )
            )

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        if not token:
            return None
        with self._data_lock:
            for user in self.users.values():
                if user.reset_token == token and reset_token_active(user):
                    return replace(user)
            return None

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            self._commit(
                replace(
                    user,
                    password_hash=password_hash,
                    reset_token=None,
                    reset_token_expiry=None,
                    updated_at=datetime.now(timezone.utc),
                )
            )

    # persistence
    def _commit(self, user: User) -> None:
        """Persist the snapshot with ``user`` applied, then apply it in memory."""
        candidate = dict(self.users)
        candidate[user.id] = user
        self._persist_state(candidate)
        self.users[user.id] = user

    def _persist_state(self, users: Dict[str, User]) -> None:
        if self.fs_root is None:
            return
        state = {"users": [self._serialize_user(u) for u in users.values()]}
        path = self._state_path()
        tmp_path = None
        try:
            # Atomic write: temp file then rename
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            raise StoreError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StoreError(f"failed to load in-memory state: {exc}") from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "password_hash": user.password_hash,
            "reset_token": user.reset_token,
            "reset_token_expiry": self._serialize_datetime(user.reset_token_expiry),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        created_at = self._deserialize_datetime(data.get("created_at"))
        return User(
            id=str(data["id"]),
            name=data.get("name", ""),
            email=data["email"],
            password_hash=data["password_hash"],
            reset_token=data.get("reset_token"),
            reset_token_expiry=self._deserialize_datetime(data.get("reset_token_expiry")),
            created_at=created_at or datetime.now(timezone.utc),
            updated_at=self._deserialize_datetime(data.get("updated_at"))
            or created_at
            or datetime.now(timezone.utc),
        )
