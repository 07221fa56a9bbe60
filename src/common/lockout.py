from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Hashable, Optional, Tuple

from .expiring import ExpiringMap
from .log import get_logger, mask_identity


logger = get_logger("security")


@dataclass
class LockoutRecord:
    fail_count: int = 0
    locked_until: Optional[float] = None


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    remaining_seconds: int = 0

    @property
    def remaining_minutes(self) -> int:
        return math.ceil(self.remaining_seconds / 60) if self.remaining_seconds else 0


class LockoutGuard:
    """
    Counts consecutive failed unlock attempts per identity.

    - Reaching `max_failed_attempts` sets ``locked_until = now + lockout_duration``
      and resets the failure counter to zero for the next cycle.
    - While ``now < locked_until`` every check reports locked with the time left.
      Once it has passed the record is dropped.
    - A successful unlock calls `clear_failed_attempts`, removing the record.

    Records sit in an `ExpiringMap`. An active lockout expires at
    `locked_until`. A pending failure count expires `lockout_duration` after
    the latest failure, so a streak interrupted for that long starts over and
    idle identities do not accumulate records.
    """

    def __init__(
        self,
        max_failed_attempts: int,
        lockout_duration: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_failed_attempts <= 0:
            raise ValueError("max_failed_attempts must be > 0")
        if lockout_duration <= 0:
            raise ValueError("lockout_duration must be > 0")
        self._max = max_failed_attempts
        self._duration = lockout_duration
        self._records: ExpiringMap[Hashable, LockoutRecord] = ExpiringMap(clock=clock)
        self._clock = clock

    @property
    def max_failed_attempts(self) -> int:
        return self._max

    @property
    def records(self) -> ExpiringMap[Hashable, LockoutRecord]:
        return self._records

    def record_failed_attempt(self, identity: Hashable) -> LockoutStatus:
        """Count one failure; returns the lockout status after counting it."""
        now = self._clock()

        def _bump(record: Optional[LockoutRecord]) -> Tuple[LockoutRecord, Optional[float]]:
            record = LockoutRecord(
                fail_count=(record.fail_count if record else 0) + 1,
                locked_until=record.locked_until if record and (record.locked_until or 0.0) > now else None,
            )
            if record.fail_count >= self._max:
                record.locked_until = now + self._duration
                record.fail_count = 0
                return record, record.locked_until
            # pending failures; an earlier lockout (if any) keeps its deadline
            return record, max(record.locked_until or 0.0, now + self._duration)

        record = self._records.update(identity, _bump)
        if record.fail_count == 0:  # counter only resets when a lockout starts
            logger.warning(f"Identity locked out after {self._max} failed attempts: {mask_identity(str(identity))}")
        return self.is_locked_out(identity)

    def is_locked_out(self, identity: Hashable) -> LockoutStatus:
        now = self._clock()
        record = self._records.get(identity)
        if record is None or record.locked_until is None:
            return LockoutStatus(locked=False)
        if now < record.locked_until:
            return LockoutStatus(locked=True, remaining_seconds=math.ceil(record.locked_until - now))
        # Lockout expired
        self._records.pop(identity)
        return LockoutStatus(locked=False)

    def clear_failed_attempts(self, identity: Hashable) -> None:
        self._records.pop(identity)

    def failed_attempts(self, identity: Hashable) -> int:
        record = self._records.get(identity)
        return record.fail_count if record else 0

    def remaining_attempts(self, identity: Hashable) -> int:
        """Failures left before the next lockout."""
        return max(0, self._max - self.failed_attempts(identity))
