from __future__ import annotations

import contextlib
import hmac
import secrets
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, Optional, Protocol

from tokenwarden.config import Settings
from tokenwarden.logging import get_logger, hash_email
from tokenwarden.service.errors import (
    CredentialStoreError,
    HashingError,
    InvalidCredentials,
    InvalidToken,
    TokenVerificationError,
    UserAlreadyExists,
    UserNotFound,
)
from tokenwarden.service.passwords import PasswordHasher
from tokenwarden.service.token_state import (
    RefreshTokenRegistry,
    ResetRecord,
    ResetTokenIndex,
    RevocationSet,
)
from tokenwarden.service.tokens import ACCESS, REFRESH, RESET, TokenClaims, TokenSigner
from tokenwarden.storage.common import CredentialStore, normalize_email
from tokenwarden.storage.errors import ConstraintViolation, RecordNotFound, StoreError
from tokenwarden.storage.models import User

logger = get_logger(__name__)


@dataclass
class AuthResult:
    access_token: str
    refresh_token: str
    user: User


@dataclass(frozen=True)
class AuthContext:
    subject_id: str
    raw_token: str


class ResetNotifier(Protocol):
    def send_password_reset(
        self, to_email: str, token: str, *, expires_in_minutes: int = 60
    ) -> bool: ...


class TokenLifecycleManager:
    """Issues, validates, rotates and revokes credentials.

    The manager owns the in-process token state (revocation set, refresh
    token registry, reset token index). Methods are synchronous and safe to
    call from many threads at once.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        notifier: Optional[ResetNotifier] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher or PasswordHasher.from_settings(settings)
        self.notifier = notifier
        self.logger = logger
        self._clock = clock
        leeway = settings.token_leeway_seconds
        self.signer = TokenSigner(
            settings.jwt_secret, {ACCESS, REFRESH}, leeway_seconds=leeway, clock=clock
        )
        self.reset_signer = TokenSigner(
            settings.reset_token_secret, {RESET}, leeway_seconds=leeway, clock=clock
        )
        # Unknown emails get tokens nobody can redeem
        self._decoy_signer = TokenSigner(secrets.token_urlsafe(48), {RESET}, clock=clock)
        self.revoked = RevocationSet(
            settings.revocation_sweep_every, leeway_seconds=leeway, clock=clock
        )
        self.refresh_registry = RefreshTokenRegistry()
        self.reset_index = ResetTokenIndex()
        self._dummy_hash: Optional[str] = None
        self._dummy_lock = threading.Lock()
        self._last_cleanup = clock()

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(hours=self.settings.access_token_ttl_hours)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    @property
    def reset_ttl(self) -> timedelta:
        return timedelta(hours=self.settings.reset_token_ttl_hours)

    @contextlib.contextmanager
    def _store_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except StoreError as exc:
            self.logger.error(
                "credential_store_error", operation=operation, error=exc.message
            )
            raise CredentialStoreError("credential store unavailable") from exc

    def _verify(
        self,
        signer: TokenSigner,
        token: str,
        purpose: str,
        *,
        verify_expiry: bool = True,
    ) -> TokenClaims:
        try:
            return signer.verify(token, purpose, verify_expiry=verify_expiry)
        except TokenVerificationError as exc:
            self.logger.info(
                "token_rejected", purpose=purpose, reason=type(exc).__name__
            )
            raise InvalidToken() from None

    def _burn_dummy_hash(self, password: str) -> None:
        """Spend the same hashing work as a real verification."""
        with self._dummy_lock:
            if self._dummy_hash is None:
                self._dummy_hash = self.hasher.hash(secrets.token_urlsafe(16))
            dummy = self._dummy_hash
        self.hasher.verify(password, dummy)

    def _issue_tokens(self, user: User) -> AuthResult:
        access_token = self.signer.sign(user.id, ACCESS, self.access_ttl)
        refresh_token = self.signer.sign(user.id, REFRESH, self.refresh_ttl)
        refresh_exp = int(self._clock()) + int(self.refresh_ttl.total_seconds())
        self.refresh_registry.record(user.id, refresh_token, refresh_exp)
        return AuthResult(access_token=access_token, refresh_token=refresh_token, user=user)

    # registration / login
    def register(self, name: str, email: str, password: str) -> AuthResult:
        email = normalize_email(email)
        with self._store_errors("get_user_by_email"):
            existing = self.store.get_user_by_email(email)
        if existing:
            raise UserAlreadyExists()
        password_hash = self.hasher.hash(password)
        with self._store_errors("create_user"):
            try:
                user = self.store.create_user(name, email, password_hash)
            except ConstraintViolation:
                raise UserAlreadyExists() from None
        result = self._issue_tokens(user)
        self.logger.info("user_registered", user_id=user.id, email_hash=hash_email(email))
        return result

    def login(self, email: str, password: str) -> AuthResult:
        email = normalize_email(email)
        with self._store_errors("get_user_by_email"):
            user = self.store.get_user_by_email(email)
        if not user:
            self._burn_dummy_hash(password)
            self.logger.info("login_failed", email_hash=hash_email(email), reason="unknown_email")
            raise InvalidCredentials()
        if not self.hasher.verify(password, user.password_hash):
            self.logger.info("login_failed", user_id=user.id, reason="bad_password")
            raise InvalidCredentials()
        result = self._issue_tokens(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return result

    # access tokens
    def validate_access_token(self, token: str) -> str:
        """Return the subject id of a live access token or raise InvalidToken."""
        if not token or self.is_revoked(token):
            raise InvalidToken()
        claims = self._verify(self.signer, token, ACCESS)
        with self._store_errors("get_user"):
            user = self.store.get_user(claims.sub)
        if not user:
            self.logger.info("token_subject_missing", user_id=claims.sub)
            raise InvalidToken()
        return claims.sub

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        if not authorization:
            raise InvalidToken("missing bearer token")
        scheme, _, token = authorization.strip().partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise InvalidToken("malformed authorization header")
        subject_id = self.validate_access_token(token)
        return AuthContext(subject_id=subject_id, raw_token=token)

    def blacklist_token(self, access_token: str) -> bool:
        """Revoke an access token until its expiry.

        Returns False when the token had already expired and nothing was stored.
        """
        claims = self._verify(self.signer, access_token, ACCESS, verify_expiry=False)
        added = self.revoked.add(access_token, claims.exp)
        if added:
            self.logger.info("access_token_revoked", user_id=claims.sub, jti=claims.jti)
        else:
            self.logger.debug("revoke_skipped_expired", user_id=claims.sub)
        return added

    revoke_token = blacklist_token

    def is_revoked(self, token: str) -> bool:
        return token in self.revoked

    # refresh
    def refresh_tokens(self, refresh_token: str) -> AuthResult:
        self.maybe_cleanup()
        claims = self._verify(self.signer, refresh_token, REFRESH)
        if self.settings.reject_superseded_refresh_tokens:
            current = self.refresh_registry.current(claims.sub)
            if current is None or not hmac.compare_digest(current, refresh_token):
                self.logger.info("refresh_token_superseded", user_id=claims.sub)
                raise InvalidToken()
        with self._store_errors("get_user"):
            user = self.store.get_user(claims.sub)
        if not user:
            self.logger.info("token_subject_missing", user_id=claims.sub)
            raise InvalidToken()
        result = self._issue_tokens(user)
        self.logger.info("tokens_refreshed", user_id=user.id)
        return result

    # password reset
    def _decoy_reset_token(self, email: str) -> str:
        return self._decoy_signer.sign(
            str(uuid.uuid4()), RESET, self.reset_ttl, email=email, uid=str(uuid.uuid4())
        )

    def forgot_password(self, email: str) -> str:
        """Issue a reset token; unknown addresses get an unusable look-alike."""
        self.maybe_cleanup()
        email = normalize_email(email)
        with self._store_errors("get_user_by_email"):
            user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("password_reset_unknown_email", email_hash=hash_email(email))
            return self._decoy_reset_token(email)

        token = self.reset_signer.sign(
            user.id, RESET, self.reset_ttl, email=user.email, uid=user.id
        )
        expires_at = int(self._clock()) + int(self.reset_ttl.total_seconds())
        expiry = datetime.fromtimestamp(expires_at, tz=timezone.utc)
        with self._store_errors("save_reset_token"):
            try:
                self.store.save_reset_token(user.email, token, expiry)
            except RecordNotFound:
                self.logger.warning("password_reset_user_vanished", user_id=user.id)
                return self._decoy_reset_token(email)
        self.reset_index.put(
            user.email, ResetRecord(token=token, subject_id=user.id, expires_at=expires_at)
        )
        self.logger.info("password_reset_requested", user_id=user.id)
        self._notify_reset(user, token)
        return token

    def _notify_reset(self, user: User, token: str) -> None:
        if self.notifier is None:
            return
        minutes = int(self.reset_ttl.total_seconds() // 60)
        try:
            sent = self.notifier.send_password_reset(
                user.email, token, expires_in_minutes=minutes
            )
        except Exception as exc:
            self.logger.error(
                "password_reset_notify_failed", user_id=user.id, error=str(exc)
            )
            return
        if not sent:
            self.logger.warning("password_reset_not_delivered", user_id=user.id)

    def reset_password(self, token: str, new_password: str) -> None:
        claims = self._verify(self.reset_signer, token, RESET)
        email = claims.extra.get("email")
        if not isinstance(email, str) or not email:
            raise InvalidToken()
        email = normalize_email(email)
        with self._store_errors("get_user_by_email"):
            user = self.store.get_user_by_email(email)
        if not user:
            self.logger.warning("password_reset_user_missing", email_hash=hash_email(email))
            raise UserNotFound()
        if user.id != claims.sub or claims.extra.get("uid", user.id) != user.id:
            raise InvalidToken()

        now = self._clock()
        record = self.reset_index.claim(email, token)
        if record is not None:
            if record.subject_id != user.id or record.expires_at <= now:
                raise InvalidToken()
        elif self.reset_index.get(email) is not None:
            # A newer reset token has been issued for this account
            self.logger.info("password_reset_superseded", user_id=user.id)
            raise InvalidToken()
        else:
            with self._store_errors("get_user_by_reset_token"):
                owner = self.store.get_user_by_reset_token(token)
            if owner is None or owner.id != user.id:
                self.logger.info("password_reset_invalid_token", user_id=user.id)
                raise InvalidToken()
            if not self.reset_index.consume(token, claims.exp):
                raise InvalidToken()

        try:
            password_hash = self.hasher.hash(new_password)
            with self._store_errors("update_password"):
                try:
                    self.store.update_password(user.id, password_hash)
                except RecordNotFound:
                    raise UserNotFound() from None
        except (HashingError, CredentialStoreError):
            # Password unchanged; the token stays redeemable for a retry
            self.reset_index.release(token, email, record)
            raise
        self.refresh_registry.discard(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)

    # housekeeping
    def cleanup_expired_states(self) -> int:
        """Drop expired reset index and refresh registry entries.

        Returns:
            Number of expired entries cleaned up
        """
        now = self._clock()
        cleaned = self.reset_index.prune(now) + self.refresh_registry.prune(now)
        self._last_cleanup = now
        if cleaned:
            self.logger.debug("token_state_cleaned", cleaned=cleaned)
        return cleaned

    def maybe_cleanup(self) -> int:
        """Run cleanup if the configured interval has elapsed since the last one."""
        interval = self.settings.state_cleanup_interval_minutes * 60
        if self._clock() - self._last_cleanup >= interval:
            return self.cleanup_expired_states()
        return 0

    def close(self, timeout: float = 1.0) -> None:
        if not self.revoked.join_sweep(timeout):
            self.logger.warning("revocation_sweep_still_running")
