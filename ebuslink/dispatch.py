"""Retry decisions, error classification and fault-contained observer delivery."""

from __future__ import annotations

import threading
from typing import Optional, Tuple, Type

from ebuslink.context import ContextCanceled, DeadlineExceeded
from ebuslink.frame import (
    BusCollisionError,
    BusTimeoutError,
    CRCMismatchError,
    EbusError,
    InvalidPayloadError,
    NackError,
    TransportClosedError,
)
from ebuslink.observer import (
    BusEvent,
    BusEventKind,
    BusObserver,
    BusOutcomeClass,
    BusRetryReason,
    ObserverFaultSnapshot,
    RetryPolicy,
)

_ECHO_MISMATCH_MARKER = "echo mismatch"

_WRAP_RULES: Tuple[Tuple[Type[BaseException], str], ...] = (
    (BusCollisionError, "bus send collision"),
    (BusTimeoutError, "bus send timeout"),
    (NackError, "bus send nack"),
    (CRCMismatchError, "bus send crc mismatch"),
    (TransportClosedError, "bus transport closed"),
)


def _error_is(error: Optional[BaseException], kind: Type[BaseException]) -> bool:
    seen = set()
    while error is not None and id(error) not in seen:
        if isinstance(error, kind):
            return True
        seen.add(id(error))
        error = error.__cause__
    return False


def should_retry(
    error: BaseException,
    policy: RetryPolicy,
    timeout_attempts: int,
    nack_attempts: int,
    allow_unbounded_collision: bool,
) -> Tuple[bool, int, int]:
    """Decide whether to retry; return (retry, timeout_attempts, nack_attempts)."""
    if _error_is(error, BusCollisionError):
        if allow_unbounded_collision:
            return True, timeout_attempts, nack_attempts
        if timeout_attempts < policy.timeout_retries:
            return True, timeout_attempts + 1, nack_attempts
        return False, timeout_attempts, nack_attempts
    if _error_is(error, BusTimeoutError) or _error_is(error, CRCMismatchError):
        if timeout_attempts < policy.timeout_retries:
            return True, timeout_attempts + 1, nack_attempts
    if _error_is(error, NackError):
        if nack_attempts < policy.nack_retries:
            return True, timeout_attempts, nack_attempts + 1
    return False, timeout_attempts, nack_attempts


def wrap_retry_error(error: BaseException) -> BaseException:
    """Return a final send error that keeps the category of error and chains it."""
    wrapped: BaseException
    for kind, prefix in _WRAP_RULES:
        if _error_is(error, kind):
            wrapped = kind(f"{prefix}: {error}")
            break
    else:
        message = f"bus send failed: {error}"
        if _error_is(error, ContextCanceled):
            wrapped = ContextCanceled(message)
        elif _error_is(error, DeadlineExceeded):
            wrapped = DeadlineExceeded(message)
        elif _error_is(error, InvalidPayloadError):
            wrapped = InvalidPayloadError(message)
        else:
            wrapped = EbusError(message)
    wrapped.__cause__ = error
    return wrapped


def outcome_from_error(error: Optional[BaseException]) -> BusOutcomeClass:
    """Classify an error into the bounded observer outcome vocabulary."""
    if error is None:
        return BusOutcomeClass.SUCCESS
    if _error_is(error, BusTimeoutError):
        return BusOutcomeClass.TIMEOUT
    if _error_is(error, NackError):
        return BusOutcomeClass.NACK
    if _error_is(error, CRCMismatchError):
        return BusOutcomeClass.CRC_MISMATCH
    if _error_is(error, BusCollisionError):
        if _ECHO_MISMATCH_MARKER in str(error):
            return BusOutcomeClass.ECHO_MISMATCH
        return BusOutcomeClass.COLLISION
    return BusOutcomeClass.UNKNOWN


def retry_reason_from_error(error: Optional[BaseException]) -> BusRetryReason:
    """Map an error to the reason reported on retry events."""
    outcome = outcome_from_error(error)
    if outcome is BusOutcomeClass.TIMEOUT:
        return BusRetryReason.TIMEOUT
    if outcome is BusOutcomeClass.NACK:
        return BusRetryReason.NACK
    if outcome is BusOutcomeClass.CRC_MISMATCH:
        return BusRetryReason.CRC_MISMATCH
    if outcome in (BusOutcomeClass.COLLISION, BusOutcomeClass.ECHO_MISMATCH):
        return BusRetryReason.COLLISION
    return BusRetryReason.UNKNOWN


class ObserverDispatcher:
    """Delivers events to an observer, containing and recording its failures.

    An EbusError raised by the observer counts as a reported failure; any
    other exception counts as a crash (``last_panic``).
    """

    def __init__(self, observer: Optional[BusObserver] = None) -> None:
        self._observer = observer
        self._lock = threading.Lock()
        self._fault = ObserverFaultSnapshot()

    def emit(self, event: BusEvent) -> None:
        """Deliver event; on failure record it and emit an observer-fault event."""
        if self._observer is None:
            return
        failure = self._call(event)
        if failure is None:
            return
        message, panicked = failure
        self._record(event, message, panicked)
        if event.kind is BusEventKind.OBSERVER_FAULT:
            return
        self._call(
            BusEvent(
                kind=BusEventKind.OBSERVER_FAULT,
                frame_type=event.frame_type,
                outcome=BusOutcomeClass.OBSERVER_FAULT,
                attempt=event.attempt,
                initiator=event.initiator,
                request=event.request,
                response=event.response,
            )
        )

    def snapshot(self) -> ObserverFaultSnapshot:
        """Return the accumulated observer-fault state."""
        with self._lock:
            return self._fault

    def _call(self, event: BusEvent) -> Optional[Tuple[str, bool]]:
        assert self._observer is not None
        try:
            self._observer.on_bus_event(event)
        except EbusError as exc:
            return str(exc), False
        except Exception as exc:  # noqa: BLE001 - observer faults must not escape
            return f"observer panic: {exc}", True
        return None

    def _record(self, event: BusEvent, message: str, panicked: bool) -> None:
        with self._lock:
            self._fault = ObserverFaultSnapshot(
                count=self._fault.count + 1,
                last_kind=event.kind,
                last_outcome=event.outcome,
                last_panic=panicked,
                last_error=message,
            )