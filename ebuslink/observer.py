"""Observer event vocabulary and bus retry configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Optional

from ebuslink.frame import Frame, FrameType

# SYN symbols awaited after a collision before a retry.
COLLISION_RETRY_RESYNC_SYN_COUNT = 2


class BusEventKind(IntEnum):
    ARBITRATION = 1
    TX = 2
    RX = 3
    ACK = 4
    NACK = 5
    TIMEOUT = 6
    CRC_MISMATCH = 7
    ECHO_MISMATCH = 8
    RETRY = 9
    ATTEMPT_COMPLETE = 10
    REQUEST_COMPLETE = 11
    OBSERVER_FAULT = 12


class BusOutcomeClass(IntEnum):
    UNKNOWN = 0
    SUCCESS = 1
    TIMEOUT = 2
    NACK = 3
    CRC_MISMATCH = 4
    ECHO_MISMATCH = 5
    COLLISION = 6
    OBSERVER_FAULT = 7


class BusRetryReason(IntEnum):
    UNKNOWN = 0
    TIMEOUT = 1
    NACK = 2
    CRC_MISMATCH = 3
    COLLISION = 4


@dataclass(frozen=True)
class BusEvent:
    """One protocol-level event delivered to observers."""

    kind: BusEventKind
    frame_type: FrameType = FrameType.UNKNOWN
    outcome: BusOutcomeClass = BusOutcomeClass.UNKNOWN
    retry: BusRetryReason = BusRetryReason.UNKNOWN
    initiator: int = 0
    byte: int = 0
    attempt: int = 0
    timeout_retries: int = 0
    nack_retries: int = 0
    duration_micros: int = 0
    request: Optional[Frame] = None
    response: Optional[Frame] = None


class BusObserver:
    """Receives bus events; wraps an optional callback or is subclassed.

    Observers signal failure by raising; the bus contains the fault.
    """

    def __init__(self, callback: Optional[Callable[[BusEvent], None]] = None) -> None:
        self._callback = callback

    def on_bus_event(self, event: BusEvent) -> None:
        """Deliver an event to the callback, if any."""
        if self._callback is not None:
            self._callback(event)


@dataclass(frozen=True)
class RetryPolicy:
    timeout_retries: int = 0
    nack_retries: int = 0


@dataclass(frozen=True)
class BusRetryEnvelope:
    initiator_target: RetryPolicy
    initiator_initiator: RetryPolicy
    collision_resync_syn_count: int = COLLISION_RETRY_RESYNC_SYN_COUNT


@dataclass
class BusConfig:
    initiator_target: RetryPolicy = field(default_factory=RetryPolicy)
    initiator_initiator: RetryPolicy = field(default_factory=RetryPolicy)
    observer: Optional[BusObserver] = None

    def retry_envelope(self) -> BusRetryEnvelope:
        """Return the bounded retry envelope implied by this config."""
        return BusRetryEnvelope(
            initiator_target=self.initiator_target,
            initiator_initiator=self.initiator_initiator,
            collision_resync_syn_count=COLLISION_RETRY_RESYNC_SYN_COUNT,
        )


@dataclass(frozen=True)
class ObserverFaultSnapshot:
    """Accumulated observer delivery failures."""

    count: int = 0
    last_kind: Optional[BusEventKind] = None
    last_outcome: BusOutcomeClass = BusOutcomeClass.UNKNOWN
    last_panic: bool = False
    last_error: str = ""


def default_bus_config() -> BusConfig:
    """Return the standard config: two timeout retries, one NACK retry."""
    return BusConfig(
        initiator_target=RetryPolicy(timeout_retries=2, nack_retries=1),
        initiator_initiator=RetryPolicy(timeout_retries=2, nack_retries=1),
    )


def default_retry_envelope() -> BusRetryEnvelope:
    """Return the retry envelope of default_bus_config()."""
    return default_bus_config().retry_envelope()