"""Detection of foreign frames that reuse our own initiator address."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Deque, Optional, Tuple

from ebuslink.frame import BusCollisionError, Frame

_DEFAULT_ECHO_WINDOW = 0.2
_DEFAULT_HISTORY_CAPACITY = 128
_DEFAULT_GRACE_WINDOW = 0.75


class ArbitrationFailureReason(str, Enum):
    ADDRESS_COLLISION = "address_collision"


class ArbitrationFailedError(BusCollisionError):
    """A transmit was attempted while a collision is active."""

    def __init__(self, reason: ArbitrationFailureReason) -> None:
        self.reason = reason
        super().__init__(f"ebus: arbitration failed ({reason.value})")


class CollisionReason(str, Enum):
    FOREIGN_SAME_SOURCE = "foreign_same_source"
    OBSERVED_WHILE_MUTED = "observed_while_muted"


@dataclass(frozen=True)
class CollisionEvent:
    """A detected collision on our initiator address."""

    initiator: int
    frame: Frame
    timestamp: float
    reason: CollisionReason


@dataclass(frozen=True)
class CollisionMonitorConfig:
    """Matching windows (seconds) and history size; non-positive means default."""

    echo_window: float = 0.0
    history_capacity: int = 0
    grace_after_rejoin: float = 0.0


def _normalize(config: CollisionMonitorConfig) -> CollisionMonitorConfig:
    return replace(
        config,
        echo_window=config.echo_window if config.echo_window > 0 else _DEFAULT_ECHO_WINDOW,
        history_capacity=(
            config.history_capacity if config.history_capacity > 0 else _DEFAULT_HISTORY_CAPACITY
        ),
        grace_after_rejoin=(
            config.grace_after_rejoin if config.grace_after_rejoin > 0 else _DEFAULT_GRACE_WINDOW
        ),
    )


class CollisionMonitor:
    """Identifies foreign frames that reuse our initiator source address.

    Timestamps come from ``clock`` (seconds, monotonic by default).
    """

    def __init__(
        self,
        config: Optional[CollisionMonitorConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = _normalize(config or CollisionMonitorConfig())
        self._clock = clock
        self._lock = threading.Lock()
        self._initiator = 0
        self._muted = False
        self._old_initiator: Optional[int] = None
        self._old_initiator_grace_end = 0.0
        self._history: Deque[Tuple[Frame, float]] = deque(maxlen=self._config.history_capacity)
        self._collision_active = False
        self._last_event: Optional[CollisionEvent] = None

    def set_initiator(self, initiator: int) -> None:
        """Switch the active initiator; the previous one gets a grace window."""
        with self._lock:
            now = self._clock()
            if self._initiator != 0 and self._initiator != initiator:
                self._old_initiator = self._initiator
                self._old_initiator_grace_end = now + self._config.grace_after_rejoin
            self._initiator = initiator
            self._collision_active = False
            self._last_event = None

    def set_muted(self, muted: bool) -> None:
        """Enable or disable listen-only mode."""
        with self._lock:
            self._muted = muted

    def record_tx(self, frame: Frame) -> None:
        """Record a locally sent frame; raise while a collision is active."""
        with self._lock:
            if self._collision_active:
                raise ArbitrationFailedError(ArbitrationFailureReason.ADDRESS_COLLISION)
            self._history.append((frame.copy(), self._clock()))

    def observe_rx(self, frame: Frame) -> Optional[CollisionEvent]:
        """Check a received frame; return an event when it signals a collision."""
        with self._lock:
            now = self._clock()
            if self._old_initiator is not None and now > self._old_initiator_grace_end:
                self._old_initiator = None
            if self._old_initiator is not None and frame.source == self._old_initiator:
                return None
            if self._initiator == 0 or frame.source != self._initiator:
                return None
            if self._muted:
                return self._activate(now, frame, CollisionReason.OBSERVED_WHILE_MUTED)
            if self._matches_recent_tx(frame, now):
                return None
            return self._activate(now, frame, CollisionReason.FOREIGN_SAME_SOURCE)

    def collision_active(self) -> bool:
        """Report whether new transmissions are currently blocked."""
        with self._lock:
            return self._collision_active

    def last_event(self) -> Optional[CollisionEvent]:
        """Return the most recent collision event, if any."""
        with self._lock:
            return self._last_event

    def _activate(self, now: float, frame: Frame, reason: CollisionReason) -> CollisionEvent:
        self._collision_active = True
        event = CollisionEvent(
            initiator=self._initiator,
            frame=frame.copy(),
            timestamp=now,
            reason=reason,
        )
        self._last_event = event
        return event

    def _matches_recent_tx(self, frame: Frame, now: float) -> bool:
        return any(
            recorded == frame
            for recorded, stamp in reversed(self._history)
            if now - stamp <= self._config.echo_window
        )


def is_arbitration_failed(error: Optional[BaseException]) -> bool:
    """Report whether error, or any error it was raised from, is ArbitrationFailedError."""
    seen = set()
    while error is not None and id(error) not in seen:
        if isinstance(error, ArbitrationFailedError):
            return True
        seen.add(id(error))
        error = error.__cause__ or error.__context__
    return False