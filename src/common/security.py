"""
Per-identity admission checks: ban list, request throttling, unlock lockout.

Also carries the small input hygiene helpers (abuse detection, sanitizing)
and short-lived session tokens that the command layer uses.
"""

from __future__ import annotations

import re
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Hashable, Iterable, List, Optional, Set, Tuple

from .config import Settings
from .expiring import ExpiringMap
from .identities import validate_jid
from .lockout import LockoutGuard, LockoutStatus
from .log import get_logger, mask_identity
from .rate_limiter import FixedWindowRateLimiter, RateLimitResult


logger = get_logger("security")

MAX_INPUT_LENGTH = 4000
SESSION_TTL_SECONDS = 24 * 60 * 60
SWEEP_INTERVAL_SECONDS = 10 * 60.0

_SPAM_RE = re.compile(r"(.)\1{10,}")
_INJECTION_RE = re.compile(r"[`$(){}\[\]]")
_REPETITIVE_RE = re.compile(r"(\b\w+\b)(?:\s+\1){5,}")


class BanList:
    """Thread-safe set of banned identities."""

    def __init__(self, initial: Optional[Iterable[Hashable]] = None) -> None:
        self._banned: Set[Hashable] = set(initial or ())
        self._lock = threading.Lock()

    def ban(self, identity: Hashable) -> None:
        with self._lock:
            self._banned.add(identity)
        logger.info(f"User banned: {mask_identity(str(identity))}")

    def unban(self, identity: Hashable) -> None:
        with self._lock:
            self._banned.discard(identity)
        logger.info(f"User unbanned: {mask_identity(str(identity))}")

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._banned

    def __len__(self) -> int:
        with self._lock:
            return len(self._banned)


@dataclass(frozen=True)
class AbuseReport:
    is_abusive: bool
    patterns: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SecurityStatus:
    banned: bool
    locked: bool
    lockout_remaining_minutes: int
    rate_limit_remaining: int
    failed_attempts: int


def detect_abuse(message: str) -> AbuseReport:
    """Flag spam (long runs of one character), flood (over 4000 chars),
    injection-prone characters and heavily repeated words."""
    detected: List[str] = []
    if _SPAM_RE.search(message):
        detected.append("spam")
    if len(message) > MAX_INPUT_LENGTH:
        detected.append("flood")
    if _INJECTION_RE.search(message):
        detected.append("injection")
    if _REPETITIVE_RE.search(message):
        detected.append("repetitive")
    return AbuseReport(is_abusive=bool(detected), patterns=detected)


def sanitize_input(text: Optional[str]) -> Optional[str]:
    """Strip injection-prone characters, trim, and cap at 4000 characters."""
    if not text or not isinstance(text, str):
        return text
    return _INJECTION_RE.sub("", text).strip()[:MAX_INPUT_LENGTH]


class SecurityGuard:
    """
    Facade over the ban list, rate limiter, lockout guard and session tokens.

    The ban list is always consulted first; rate limiting and lockout are
    independent of it and of each other.
    """

    def __init__(
        self,
        *,
        rate_limiter: FixedWindowRateLimiter,
        lockout: LockoutGuard,
        bans: Optional[BanList] = None,
        clock: Callable[[], float] = time.monotonic,
        session_ttl: float = SESSION_TTL_SECONDS,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.lockout = lockout
        self.bans = bans or BanList()
        self._sessions: ExpiringMap[Hashable, str] = ExpiringMap(clock=clock)
        self._session_ttl = session_ttl
        self._sweep_interval = sweep_interval

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Callable[[], float] = time.monotonic) -> "SecurityGuard":
        return cls(
            rate_limiter=FixedWindowRateLimiter(
                settings.rate_limit_max_requests,
                settings.rate_limit_window_seconds,
                clock=clock,
            ),
            lockout=LockoutGuard(
                settings.max_failed_attempts,
                settings.lockout_duration_seconds,
                clock=clock,
            ),
            bans=BanList(settings.banned_ids),
            clock=clock,
            sweep_interval=settings.security_sweep_seconds,
        )

    # -------- Bans --------
    def ban_user(self, identity: Hashable) -> None:
        self.bans.ban(identity)

    def unban_user(self, identity: Hashable) -> None:
        self.bans.unban(identity)

    def is_banned(self, identity: Hashable) -> bool:
        return identity in self.bans

    # -------- Throttling & lockout --------
    def check_rate_limit(self, identity: Hashable) -> RateLimitResult:
        return self.rate_limiter.check(identity)

    def record_failed_attempt(self, identity: Hashable) -> LockoutStatus:
        return self.lockout.record_failed_attempt(identity)

    def clear_failed_attempts(self, identity: Hashable) -> None:
        self.lockout.clear_failed_attempts(identity)

    def is_locked_out(self, identity: Hashable) -> LockoutStatus:
        return self.lockout.is_locked_out(identity)

    # -------- Session tokens --------
    def create_session(self, identity: Hashable) -> str:
        token = secrets.token_hex(32)
        self._sessions.set(identity, token, ttl=self._session_ttl)
        return token

    def validate_session(self, identity: Hashable, token: str) -> bool:
        current = self._sessions.get(identity)
        if current is None:
            return False
        return secrets.compare_digest(current, token)

    def sweep(self) -> int:
        """Drop expired rate windows, lockouts and sessions."""
        return self.rate_limiter.windows.sweep() + self.lockout.records.sweep() + self._sessions.sweep()

    def start(self) -> None:
        """Purge expired windows, lockout records and sessions periodically in the background."""
        for m in self._expiring_maps():
            m.start_sweeper(self._sweep_interval)

    def stop(self) -> None:
        for m in self._expiring_maps():
            m.stop_sweeper()

    def _expiring_maps(self) -> Tuple[ExpiringMap, ...]:
        return (self.rate_limiter.windows, self.lockout.records, self._sessions)

    # -------- Helpers --------
    detect_abuse = staticmethod(detect_abuse)
    sanitize_input = staticmethod(sanitize_input)
    validate_jid = staticmethod(validate_jid)

    def security_status(self, identity: Hashable) -> SecurityStatus:
        lockout = self.is_locked_out(identity)
        return SecurityStatus(
            banned=self.is_banned(identity),
            locked=lockout.locked,
            lockout_remaining_minutes=lockout.remaining_minutes,
            rate_limit_remaining=self.rate_limiter.remaining(identity),
            failed_attempts=self.lockout.failed_attempts(identity),
        )
