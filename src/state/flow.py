from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Hashable, List, Optional

from common.config import Settings
from common.errors import InvalidStateError
from common.expiring import ExpiringMap
from common.log import get_logger, mask_identity


logger = get_logger("flow")

DEFAULT_TIMEOUT_SECONDS = 5 * 60.0
DEFAULT_SWEEP_SECONDS = 10 * 60.0


@dataclass(frozen=True)
class FlowState:
    state: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0


@dataclass(frozen=True)
class FlowStateInfo:
    identity: Hashable
    state: str
    age: float


class FlowStateStore:
    """
    Short-lived, per-identity progress through a multi-step interaction.

    Each state gets an absolute deadline (``created_at + timeout``). Lookups
    never return a state past its deadline, and a periodic sweep removes
    abandoned ones, so `has_state` turns False at the deadline no matter
    which of the two gets there first.
    """

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        sweep_interval: float = DEFAULT_SWEEP_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self._timeout = timeout
        self._sweep_interval = sweep_interval
        self._states: ExpiringMap[Hashable, FlowState] = ExpiringMap(clock=clock)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Callable[[], float] = time.monotonic) -> "FlowStateStore":
        return cls(
            timeout=settings.flow_state_timeout_seconds,
            sweep_interval=settings.flow_state_sweep_seconds,
            clock=clock,
        )

    @property
    def timeout(self) -> float:
        return self._timeout

    def set_state(self, identity: Hashable, state: str, data: Optional[Dict[str, Any]] = None) -> FlowState:
        """Replace any existing state for `identity` and restart its deadline."""
        flow = FlowState(state=state, data=dict(data or {}), created_at=self._clock())
        self._states.set(identity, flow, deadline=flow.created_at + self._timeout)
        logger.debug(f"State set: {state} for {mask_identity(str(identity))}")
        return flow

    def get_state(self, identity: Hashable) -> Optional[FlowState]:
        return self._states.get(identity)

    def require_state(self, identity: Hashable) -> FlowState:
        """Like `get_state`, but raises InvalidStateError when there is none."""
        flow = self._states.get(identity)
        if flow is None:
            raise InvalidStateError(f"No active flow state for {mask_identity(str(identity))}")
        return flow

    def has_state(self, identity: Hashable) -> bool:
        return identity in self._states

    def is_in_state(self, identity: Hashable, state: str) -> bool:
        flow = self._states.get(identity)
        return flow is not None and flow.state == state

    def update_state_data(self, identity: Hashable, **updates: Any) -> Optional[FlowState]:
        """Merge `updates` into the payload. The deadline is left unchanged."""
        return self._states.modify(identity, lambda flow: replace(flow, data={**flow.data, **updates}))

    def clear_state(self, identity: Hashable) -> None:
        self._states.pop(identity)
        logger.debug(f"State cleared for {mask_identity(str(identity))}")

    def all_states(self) -> List[FlowStateInfo]:
        """Active states with their age in seconds (for debugging)."""
        now = self._clock()
        return [
            FlowStateInfo(identity=identity, state=flow.state, age=now - flow.created_at)
            for identity, flow in self._states.items()
        ]

    def cleanup(self) -> int:
        """Remove expired states now. Returns how many were removed."""
        removed = self._states.sweep()
        if removed:
            logger.info(f"Cleaned up {removed} expired flow states")
        return removed

    def start(self) -> None:
        """Start the periodic expiry sweep."""
        self._states.start_sweeper(self._sweep_interval)

    def stop(self) -> None:
        self._states.stop_sweeper()
