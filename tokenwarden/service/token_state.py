"""Lock-guarded in-process token state owned by the lifecycle manager.

Each map has its own lock and the locks only ever wrap the dict mutation;
callers hash, sign and talk to the store outside of them.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from tokenwarden.logging import get_logger

logger = get_logger(__name__)


class RevocationSet:
    """Revoked access tokens mapped to their expiry (epoch seconds).

    Every ``sweep_every`` insertions a daemon thread prunes expired entries.
    At most one sweep runs at a time. An entry counts as expired only once
    the verifier would also reject the token, i.e. past ``exp + leeway``.
    """

    def __init__(
        self,
        sweep_every: int = 100,
        *,
        leeway_seconds: float = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._sweep_every = max(1, sweep_every)
        self._inserts = 0
        self._leeway = max(0, leeway_seconds)
        self._clock = clock
        self._sweep_thread: Optional[threading.Thread] = None

    def add(self, token: str, expires_at: float) -> bool:
        """Record a revocation; tokens already past expiry are not stored."""
        if expires_at + self._leeway <= self._clock():
            return False
        with self._lock:
            self._entries[token] = expires_at
            self._inserts += 1
            due = self._inserts % self._sweep_every == 0
        if due:
            self._start_sweep()
        return True

    def __contains__(self, token: object) -> bool:
        with self._lock:
            return token in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def sweep(self) -> int:
        cutoff = self._clock() - self._leeway
        with self._lock:
            snapshot = list(self._entries.items())
        expired = [token for token, exp in snapshot if exp <= cutoff]
        if not expired:
            return 0
        removed = 0
        with self._lock:
            for token in expired:
                exp = self._entries.get(token)
                if exp is not None and exp <= cutoff:
                    del self._entries[token]
                    removed += 1
        logger.debug("revocation_sweep_completed", removed=removed)
        return removed

    def _run_sweep(self) -> None:
        try:
            self.sweep()
        except Exception as exc:
            logger.error("revocation_sweep_failed", error=str(exc))

    def _start_sweep(self) -> None:
        with self._lock:
            if self._sweep_thread is not None and self._sweep_thread.is_alive():
                return
            thread = threading.Thread(
                target=self._run_sweep, name="revocation-sweep", daemon=True
            )
            self._sweep_thread = thread
        thread.start()

    def join_sweep(self, timeout: Optional[float] = None) -> bool:
        """Wait for an in-flight sweep; returns False if it is still running."""
        with self._lock:
            thread = self._sweep_thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()


class RefreshTokenRegistry:
    """The authoritative refresh token per subject; newer entries supersede older."""

    def __init__(self) -> None:
        self._entries: Dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def record(self, subject_id: str, token: str, expires_at: float) -> None:
        with self._lock:
            self._entries[subject_id] = (token, expires_at)

    def current(self, subject_id: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(subject_id)
        return entry[0] if entry else None

    def discard(self, subject_id: str) -> None:
        with self._lock:
            self._entries.pop(subject_id, None)

    def prune(self, now: float) -> int:
        with self._lock:
            expired = [sub for sub, (_, exp) in self._entries.items() if exp <= now]
            for sub in expired:
                del self._entries[sub]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass(frozen=True)
class ResetRecord:
    token: str
    subject_id: str
    expires_at: float


class ResetTokenIndex:
    """Outstanding reset tokens keyed by normalised email.

    Consumed tokens are remembered until their expiry so a token can be
    redeemed once even when two requests race on it.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, ResetRecord] = {}
        self._consumed: Dict[str, float] = {}
        self._lock = threading.Lock()

    def put(self, email: str, record: ResetRecord) -> None:
        with self._lock:
            self._entries[email] = record

    def get(self, email: str) -> Optional[ResetRecord]:
        with self._lock:
            return self._entries.get(email)

    def pop(self, email: str) -> Optional[ResetRecord]:
        with self._lock:
            return self._entries.pop(email, None)

    def claim(self, email: str, token: str) -> Optional[ResetRecord]:
        """Remove and return the record only if it holds exactly ``token``."""
        with self._lock:
            record = self._entries.get(email)
            if record is None or record.token != token or token in self._consumed:
                return None
            del self._entries[email]
            self._consumed[token] = record.expires_at
            return record

    def consume(self, token: str, expires_at: float) -> bool:
        """Mark a token without an index entry as used; False if it already was."""
        with self._lock:
            if token in self._consumed:
                return False
            self._consumed[token] = expires_at
            return True

    def release(
        self, token: str, email: Optional[str] = None, record: Optional[ResetRecord] = None
    ) -> None:
        """Undo a claim or consume so the token can be redeemed again.

        The record is only restored when no newer token was indexed meanwhile.
        """
        with self._lock:
            self._consumed.pop(token, None)
            if email is not None and record is not None and email not in self._entries:
                self._entries[email] = record

    def prune(self, now: float) -> int:
        with self._lock:
            expired = [
                email for email, rec in self._entries.items() if rec.expires_at <= now
            ]
            for email in expired:
                del self._entries[email]
            used = [token for token, exp in self._consumed.items() if exp <= now]
            for token in used:
                del self._consumed[token]
        return len(expired) + len(used)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
