from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Hashable, Optional

from common.config import Settings
from common.crypto import KeyManager
from common.errors import LockedError
from common.log import get_logger, mask_identity
from common.security import SecurityGuard
from state.conversation_store import ConversationStore


logger = get_logger("gate")


@dataclass(frozen=True)
class Admission:
    allowed: bool
    reason: Optional[str] = None  # "banned" | "rate_limited"
    retry_after: Optional[int] = None


class UnlockOutcome(str, Enum):
    UNLOCKED = "unlocked"
    WRONG_PASSWORD = "wrong_password"
    LOCKED_OUT = "locked_out"
    INVALID = "invalid"


@dataclass(frozen=True)
class UnlockResult:
    outcome: UnlockOutcome
    remaining_attempts: int = 0
    lockout_remaining_minutes: int = 0
    provisional: bool = False  # nothing stored yet, so the password could not be checked

    @property
    def ok(self) -> bool:
        return self.outcome is UnlockOutcome.UNLOCKED


class AccessGate:
    """
    Runs the checks every inbound command goes through.

    - `admit`: ban list first, then the per-identity rate limit.
    - `unlock`: lockout check, key derivation, then verification by decrypting
      stored blobs. The password is wrong only if no stored blob authenticates
      under the derived key, and only then does it count towards the lockout.
      With nothing stored yet, any password is accepted and becomes the
      working password.
    - `lock`: zero the key; every storage operation fails until the next unlock.
    """

    def __init__(
        self,
        *,
        key_manager: KeyManager,
        store: ConversationStore,
        security: SecurityGuard,
        key_identity: str = "default",
    ) -> None:
        self.keys = key_manager
        self.store = store
        self.security = security
        self._key_identity = key_identity

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        key_manager: Optional[KeyManager] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "AccessGate":
        keys = key_manager or KeyManager()
        store = ConversationStore.from_settings(settings, keys)
        store.ensure_directories()
        return cls(
            key_manager=keys,
            store=store,
            security=SecurityGuard.from_settings(settings, clock=clock),
            key_identity=settings.key_identity,
        )

    def admit(self, identity: Hashable) -> Admission:
        if self.security.is_banned(identity):
            return Admission(allowed=False, reason="banned")
        rate = self.security.check_rate_limit(identity)
        if not rate.allowed:
            logger.info(f"Rate limit exceeded for {mask_identity(str(identity))}")
            return Admission(allowed=False, reason="rate_limited", retry_after=rate.retry_after)
        return Admission(allowed=True)

    def unlock(self, identity: Hashable, password: str) -> UnlockResult:
        if not password:
            return UnlockResult(outcome=UnlockOutcome.INVALID)

        lockout = self.security.is_locked_out(identity)
        if lockout.locked:
            return UnlockResult(
                outcome=UnlockOutcome.LOCKED_OUT,
                lockout_remaining_minutes=lockout.remaining_minutes,
            )

        if not self.store.has_stored_data():
            self.keys.derive_key(password, self._key_identity)
            self.security.clear_failed_attempts(identity)
            logger.info(f"System unlocked (no stored data to verify against) by {mask_identity(str(identity))}")
            return UnlockResult(outcome=UnlockOutcome.UNLOCKED, provisional=True)

        # One stray or corrupt segment must not reject the right password
        if self.keys.test_password(password, self.store.verification_blobs(), self._key_identity):
            self.security.clear_failed_attempts(identity)
            logger.info(f"System unlocked by {mask_identity(str(identity))}")
            return UnlockResult(outcome=UnlockOutcome.UNLOCKED)

        status = self.security.record_failed_attempt(identity)
        logger.warning(f"Wrong password from {mask_identity(str(identity))}")
        if status.locked:
            return UnlockResult(
                outcome=UnlockOutcome.LOCKED_OUT,
                lockout_remaining_minutes=status.remaining_minutes,
            )
        return UnlockResult(
            outcome=UnlockOutcome.WRONG_PASSWORD,
            remaining_attempts=self.security.lockout.remaining_attempts(identity),
        )

    def start(self) -> None:
        """Start the background expiry sweep for throttling, lockout and session records."""
        self.security.start()

    def stop(self) -> None:
        self.security.stop()

    def lock(self, identity: Optional[Hashable] = None) -> None:
        self.keys.clear_key()
        if identity is not None:
            logger.info(f"System locked by {mask_identity(str(identity))}")

    def require_unlocked(self) -> None:
        if not self.keys.is_unlocked():
            raise LockedError("System is locked. Use unlock first.")
