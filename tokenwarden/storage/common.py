"""Backend-neutral contract for credential storage.

Both the in-memory and the Postgres store satisfy :class:`CredentialStore`;
the lifecycle manager depends only on this protocol.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

from tokenwarden.storage.models import User


@runtime_checkable
class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_user(self, name: str, email: str, password_hash: str) -> User:
        """Insert a user; raises ConstraintViolation when the email is taken."""
        ...

    def save_reset_token(self, email: str, token: str, expiry: datetime) -> None:
        """Attach a reset token to the account; raises RecordNotFound."""
        ...

    def get_user_by_reset_token(self, token: str) -> Optional[User]:
        """Return the owner of an unexpired reset token."""
        ...

    def update_password(self, user_id: str, password_hash: str) -> None:
        """Replace the hash and clear reset fields; raises RecordNotFound."""
        ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def reset_token_active(user: User, now: Optional[datetime] = None) -> bool:
    if not user.reset_token or user.reset_token_expiry is None:
        return False
    return user.reset_token_expiry > (now or datetime.now(timezone.utc))


__all__ = ["CredentialStore", "normalize_email", "reset_token_active"]
