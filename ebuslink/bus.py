"""Prioritised frame sending with arbitration, echo checking and retries."""

from __future__ import annotations

import contextlib
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional, Tuple, Type

from ebuslink.context import Context, ContextError, background
from ebuslink.dispatch import (
    ObserverDispatcher,
    outcome_from_error,
    retry_reason_from_error,
    should_retry,
    wrap_retry_error,
)
from ebuslink.frame import (
    SYMBOL_ACK,
    SYMBOL_ESCAPE,
    SYMBOL_NACK,
    SYMBOL_SYN,
    BusCollisionError,
    BusTimeoutError,
    CRCMismatchError,
    EbusError,
    Frame,
    FrameType,
    InvalidPayloadError,
    NackError,
    TransportClosedError,
    crc,
)
from ebuslink.observer import (
    COLLISION_RETRY_RESYNC_SYN_COUNT,
    BusConfig,
    BusEvent,
    BusEventKind,
    BusOutcomeClass,
    ObserverFaultSnapshot,
    RetryPolicy,
)
from ebuslink.queue import PriorityQueue

_DEFAULT_QUEUE_CAPACITY = 64
_POLL_INTERVAL = 0.005


class RawTransport(ABC):
    """Byte-level access to the bus.

    A transport may additionally define ``start_arbitration(initiator)`` and
    ``arbitration_sends_source()`` when it performs arbitration itself.
    """

    @abstractmethod
    def read_byte(self) -> int:
        """Return the next received byte; raise BusTimeoutError when none arrives."""

    @abstractmethod
    def write(self, payload: bytes) -> int:
        """Write payload and return the number of bytes written."""

    @abstractmethod
    def close(self) -> None:
        """Release the transport."""


def _caused_by(error: Optional[BaseException], kind: Type[BaseException]) -> bool:
    seen = set()
    while error is not None and id(error) not in seen:
        if isinstance(error, kind):
            return True
        seen.add(id(error))
        error = error.__cause__
    return False


class _Request:
    def __init__(
        self,
        ctx: Context,
        frame: Optional[Frame] = None,
        op: Optional[Callable[[RawTransport], None]] = None,
    ) -> None:
        self.ctx = ctx
        self.frame = frame if frame is not None else Frame()
        self.op = op
        self.started = threading.Event()
        self.finished = threading.Event()
        self.response: Optional[Frame] = None
        self.error: Optional[BaseException] = None

    def complete(
        self, response: Optional[Frame] = None, error: Optional[BaseException] = None
    ) -> None:
        self.response = response
        self.error = error
        self.finished.set()


class _Decoder:
    """Reads unescaped symbols, keeping escape state across reads."""

    def __init__(self) -> None:
        self.escape = False

    def read_symbol(self, bus: "Bus", run_ctx: Context, req_ctx: Context) -> int:
        while True:
            try:
                raw = bus._read_byte(run_ctx, req_ctx)
            except BusTimeoutError:
                self.escape = False
                raise
            if self.escape:
                self.escape = False
                if raw == 0x00:
                    return SYMBOL_ESCAPE
                if raw == 0x01:
                    return SYMBOL_SYN
                raise InvalidPayloadError(f"invalid escape sequence 0x{raw:02x}")
            if raw == SYMBOL_ESCAPE:
                self.escape = True
                continue
            return raw


def _micros(started: float) -> int:
    return int((time.monotonic() - started) * 1_000_000)


class Bus:
    """Orchestrates prioritised frame sending and transaction matching."""

    def __init__(
        self,
        transport: RawTransport,
        config: Optional[BusConfig] = None,
        queue_capacity: int = 0,
    ) -> None:
        self._transport = transport
        self._config = config if config is not None else BusConfig()
        self._queue = PriorityQueue()
        self._lock = threading.Lock()
        self._notify = threading.Event()
        self._closed = False
        self._start_lock = threading.Lock()
        self._started = False
        self._dispatcher = ObserverDispatcher(self._config.observer)
        self.queue_capacity = queue_capacity if queue_capacity > 0 else _DEFAULT_QUEUE_CAPACITY

    def run(self, ctx: Optional[Context] = None) -> None:
        """Start the queue-draining loop; it stops when ctx ends."""
        ctx = ctx if ctx is not None else background()
        with self._start_lock:
            if self._started:
                return
            self._started = True
        threading.Thread(target=self._run_loop, args=(ctx,), daemon=True).start()

    def send(self, frame: Frame, ctx: Optional[Context] = None) -> Optional[Frame]:
        """Queue a frame and wait for its response (None when there is none)."""
        ctx = ctx if ctx is not None else background()
        error = ctx.err()
        if error is not None:
            raise error
        request = _Request(ctx, frame=frame)
        self._enqueue(request)
        return self._await(request)

    def raw_transport_op(
        self, fn: Callable[[RawTransport], None], ctx: Optional[Context] = None
    ) -> None:
        """Run fn on the transport, serialised with bus transactions.

        fn runs on the bus loop thread and must not call back into the bus.
        """
        ctx = ctx if ctx is not None else background()
        error = ctx.err()
        if error is not None:
            raise error
        if fn is None:
            raise ValueError("ebus: raw transport op function is nil")
        request = _Request(ctx, op=fn)
        self._enqueue(request)
        self._await(request)

    def observer_fault_snapshot(self) -> ObserverFaultSnapshot:
        """Return the accumulated observer-fault state."""
        return self._dispatcher.snapshot()

    def _enqueue(self, request: _Request) -> None:
        with self._lock:
            if self._closed:
                raise TransportClosedError("ebus: transport closed")
            self._queue.push(request)
        self._notify.set()

    def _await(self, request: _Request) -> Optional[Frame]:
        while not request.finished.wait(_POLL_INTERVAL):
            error = request.ctx.err()
            if error is None:
                continue
            if request.op is not None and request.started.is_set():
                request.finished.wait()
                break
            raise error
        if request.error is not None:
            raise request.error
        return request.response

    def _dequeue(self) -> Optional[_Request]:
        with self._lock:
            return self._queue.pop() if len(self._queue) else None

    def _run_loop(self, ctx: Context) -> None:
        while True:
            self._notify.clear()
            request = self._dequeue()
            if request is None:
                if ctx.err() is not None:
                    with self._lock:
                        self._closed = True
                    return
                self._notify.wait(_POLL_INTERVAL)
                continue
            if request.op is not None:
                error = self._context_error(ctx, request.ctx)
                if error is not None:
                    request.complete(error=error)
                    continue
                request.started.set()
                try:
                    request.op(self._transport)
                except Exception as exc:  # noqa: BLE001 - delivered to the caller
                    request.complete(error=exc)
                else:
                    request.complete()
                continue
            try:
                response = self._handle_request(ctx, request)
            except Exception as exc:  # noqa: BLE001 - delivered to the caller
                request.complete(error=exc)
            else:
                request.complete(response)

    def _handle_request(self, run_ctx: Context, request: _Request) -> Optional[Frame]:
        error = self._context_error(run_ctx, request.ctx)
        if error is not None:
            raise error
        return self._send_with_retries(run_ctx, request)

    def _retry_policy(self, frame_type: FrameType) -> RetryPolicy:
        if frame_type is FrameType.INITIATOR_INITIATOR:
            return self._config.initiator_initiator
        if frame_type is FrameType.INITIATOR_TARGET:
            return self._config.initiator_target
        return RetryPolicy()

    def _send_with_retries(self, run_ctx: Context, request: _Request) -> Optional[Frame]:
        frame = request.frame
        frame_type = frame.frame_type()
        policy = self._retry_policy(frame_type)
        started = time.monotonic()
        timeouts = nacks = 0
        unbounded_collision = request.ctx.deadline() is not None
        attempt = 0

        def fail(error: BaseException) -> BaseException:
            self._emit_request_complete(frame, None, frame_type, attempt, timeouts, nacks, error, started)
            return wrap_retry_error(error)

        while True:
            attempt += 1
            error = self._context_error(run_ctx, request.ctx)
            if error is not None:
                self._emit_request_complete(
                    frame, None, frame_type, attempt - 1, timeouts, nacks, error, started
                )
                raise error

            try:
                self._start_arbitration(frame.source, frame_type, attempt)
                response = self._send_transaction(run_ctx, request.ctx, frame, attempt)
            except Exception as exc:  # noqa: BLE001 - classified below
                retry, timeouts, nacks = should_retry(
                    exc, policy, timeouts, nacks, unbounded_collision
                )
                if not retry:
                    raise fail(exc) from exc
                self._emit_retry(frame, frame_type, attempt, timeouts, nacks, exc)
                if _caused_by(exc, BusCollisionError):
                    try:
                        self._wait_for_syn(run_ctx, request.ctx, COLLISION_RETRY_RESYNC_SYN_COUNT)
                    except Exception as wait_exc:  # noqa: BLE001
                        raise fail(wait_exc) from wait_exc
                continue

            self._emit_request_complete(
                frame, response, frame_type, attempt, timeouts, nacks, None, started
            )
            return response

    def _start_arbitration(self, initiator: int, frame_type: FrameType, attempt: int) -> None:
        start = getattr(self._transport, "start_arbitration", None)
        if start is None:
            return
        started = time.monotonic()
        try:
            start(initiator)
        except Exception as exc:  # noqa: BLE001 - reported and re-raised
            self._emit(
                BusEvent(
                    kind=BusEventKind.ARBITRATION,
                    frame_type=frame_type,
                    outcome=outcome_from_error(exc),
                    initiator=initiator,
                    attempt=attempt,
                    duration_micros=_micros(started),
                )
            )
            raise EbusError(f"bus arbitration failed: {exc}") from exc
        self._emit(
            BusEvent(
                kind=BusEventKind.ARBITRATION,
                frame_type=frame_type,
                outcome=BusOutcomeClass.SUCCESS,
                initiator=initiator,
                attempt=attempt,
                duration_micros=_micros(started),
            )
        )

    def _includes_source(self) -> bool:
        if getattr(self._transport, "start_arbitration", None) is None:
            return True
        sends_source = getattr(self._transport, "arbitration_sends_source", None)
        if sends_source is None:
            return False
        return not sends_source()

    def _read_reported(
        self,
        decoder: _Decoder,
        run_ctx: Context,
        req_ctx: Context,
        frame: Frame,
        frame_type: FrameType,
        attempt: int,
        syn_message: Optional[str] = None,
    ) -> int:
        try:
            value = decoder.read_symbol(self, run_ctx, req_ctx)
        except Exception as exc:  # noqa: BLE001 - reported and re-raised
            self._emit_outcome(frame, frame_type, attempt, exc)
            raise
        if syn_message is not None and value == SYMBOL_SYN:
            self._raise_reported(BusTimeoutError(syn_message), frame, frame_type, attempt)
        return value

    def _raise_reported(
        self, error: BaseException, frame: Frame, frame_type: FrameType, attempt: int
    ) -> None:
        self._emit_outcome(frame, frame_type, attempt, error)
        raise error

    def _send_transaction(
        self, run_ctx: Context, req_ctx: Context, frame: Frame, attempt: int
    ) -> Optional[Frame]:
        frame_type = frame.frame_type()
        if frame_type is FrameType.UNKNOWN:
            raise InvalidPayloadError("bus send unknown frame type")
        started = time.monotonic()

        header = bytes(
            (frame.source, frame.target, frame.primary, frame.secondary, len(frame.data))
        )
        telegram = header + frame.data
        telegram += bytes((crc(telegram),))

        decoder = _Decoder()
        include_source = self._includes_source()

        acked = False
        for command_attempt in range(2):
            self._send_telegram(run_ctx, req_ctx, telegram, include_source)
            if frame_type is FrameType.BROADCAST:
                self._send_end_of_message(run_ctx, req_ctx)
                self._emit_attempt_complete(frame, None, frame_type, attempt, started)
                return None

            ack = self._read_reported(decoder, run_ctx, req_ctx, frame, frame_type, attempt)
            if ack == SYMBOL_ACK:
                self._emit(
                    BusEvent(
                        kind=BusEventKind.ACK,
                        frame_type=frame_type,
                        outcome=BusOutcomeClass.SUCCESS,
                        byte=SYMBOL_ACK,
                        attempt=attempt,
                        request=frame,
                    )
                )
                acked = True
                break
            if ack == SYMBOL_NACK:
                self._emit(
                    BusEvent(
                        kind=BusEventKind.NACK,
                        frame_type=frame_type,
                        outcome=BusOutcomeClass.NACK,
                        byte=SYMBOL_NACK,
                        attempt=attempt,
                        request=frame,
                    )
                )
                if command_attempt == 0:
                    # Repeat once without arbitration; the source must be sent explicitly.
                    include_source = True
                    continue
                with contextlib.suppress(Exception):
                    self._send_end_of_message(run_ctx, req_ctx)
                self._raise_reported(NackError("nack received"), frame, frame_type, attempt)
            if ack == SYMBOL_SYN:
                self._raise_reported(
                    BusTimeoutError("syn while waiting for command ack"), frame, frame_type, attempt
                )
            self._raise_reported(
                BusTimeoutError(f"unexpected symbol 0x{ack:02x} while waiting for command ack"),
                frame,
                frame_type,
                attempt,
            )
        if not acked:
            raise BusTimeoutError("command ack loop exited without ack")

        if frame_type is FrameType.INITIATOR_INITIATOR:
            self._send_end_of_message(run_ctx, req_ctx)
            self._emit_attempt_complete(frame, None, frame_type, attempt, started)
            return None
        if frame_type is not FrameType.INITIATOR_TARGET:
            raise InvalidPayloadError("bus send unknown frame type")

        for response_attempt in range(2):
            length = self._read_reported(
                decoder, run_ctx, req_ctx, frame, frame_type, attempt,
                "syn while waiting for response length",
            )
            data = bytes(
                self._read_reported(
                    decoder, run_ctx, req_ctx, frame, frame_type, attempt,
                    "syn while reading response data",
                )
                for _ in range(length)
            )
            crc_value = self._read_reported(
                decoder, run_ctx, req_ctx, frame, frame_type, attempt,
                "syn while waiting for response crc",
            )
            response = Frame(
                source=frame.target,
                target=frame.source,
                primary=frame.primary,
                secondary=frame.secondary,
                data=data,
            )
            if crc(bytes((length,)) + data) != crc_value:
                self._send_symbol_with_echo(run_ctx, req_ctx, SYMBOL_NACK, escape=True)
                self._emit(
                    BusEvent(
                        kind=BusEventKind.NACK,
                        frame_type=frame_type,
                        outcome=BusOutcomeClass.CRC_MISMATCH,
                        byte=SYMBOL_NACK,
                        attempt=attempt,
                        request=frame,
                        response=response,
                    )
                )
                if response_attempt == 0:
                    self._emit(
                        BusEvent(
                            kind=BusEventKind.CRC_MISMATCH,
                            frame_type=frame_type,
                            outcome=BusOutcomeClass.CRC_MISMATCH,
                            attempt=attempt,
                            request=frame,
                            response=response,
                        )
                    )
                    continue
                with contextlib.suppress(Exception):
                    self._send_end_of_message(run_ctx, req_ctx)
                self._raise_reported(CRCMismatchError("crc mismatch"), frame, frame_type, attempt)

            self._send_symbol_with_echo(run_ctx, req_ctx, SYMBOL_ACK, escape=True)
            self._emit(
                BusEvent(
                    kind=BusEventKind.ACK,
                    frame_type=frame_type,
                    outcome=BusOutcomeClass.SUCCESS,
                    byte=SYMBOL_ACK,
                    attempt=attempt,
                    request=frame,
                    response=response,
                )
            )
            self._send_end_of_message(run_ctx, req_ctx)
            self._emit_attempt_complete(frame, response, frame_type, attempt, started)
            return response

        self._raise_reported(
            BusTimeoutError("unreachable response loop"), frame, frame_type, attempt
        )
        return None

    def _send_telegram(
        self, run_ctx: Context, req_ctx: Context, telegram: bytes, include_source: bool
    ) -> None:
        for symbol in telegram if include_source else telegram[1:]:
            self._send_symbol_with_echo(run_ctx, req_ctx, symbol, escape=True)

    def _send_end_of_message(self, run_ctx: Context, req_ctx: Context) -> None:
        self._send_symbol_with_echo(run_ctx, req_ctx, SYMBOL_SYN, escape=False)

    def _send_symbol_with_echo(
        self, run_ctx: Context, req_ctx: Context, symbol: int, escape: bool
    ) -> None:
        if not escape or symbol not in (SYMBOL_ESCAPE, SYMBOL_SYN):
            self._send_raw_with_echo(run_ctx, req_ctx, symbol)
            return
        self._send_raw_with_echo(run_ctx, req_ctx, SYMBOL_ESCAPE)
        self._send_raw_with_echo(run_ctx, req_ctx, 0x01 if symbol == SYMBOL_SYN else 0x00)

    def _send_raw_with_echo(self, run_ctx: Context, req_ctx: Context, raw: int) -> None:
        try:
            written = self._transport.write(bytes((raw,)))
        except Exception as exc:  # noqa: BLE001 - reported and re-raised
            self._emit_outcome(None, FrameType.UNKNOWN, 0, exc)
            raise
        if written != 1:
            self._raise_reported(InvalidPayloadError("short write"), None, FrameType.UNKNOWN, 0)
        self._emit(BusEvent(kind=BusEventKind.TX, outcome=BusOutcomeClass.SUCCESS, byte=raw))

        try:
            echo = self._read_byte(run_ctx, req_ctx)
        except Exception as exc:  # noqa: BLE001 - reported and re-raised
            self._emit_outcome(None, FrameType.UNKNOWN, 0, exc)
            raise
        if echo == SYMBOL_SYN and raw != SYMBOL_SYN:
            self._raise_reported(
                BusCollisionError("unexpected syn while waiting for echo"),
                None, FrameType.UNKNOWN, 0,
            )
        if echo != raw:
            self._emit(
                BusEvent(
                    kind=BusEventKind.ECHO_MISMATCH,
                    outcome=BusOutcomeClass.ECHO_MISMATCH,
                    byte=echo,
                )
            )
            self._raise_reported(
                BusCollisionError(f"echo mismatch (sent 0x{raw:02x}, got 0x{echo:02x})"),
                None, FrameType.UNKNOWN, 0,
            )

    def _read_byte(self, run_ctx: Context, req_ctx: Context) -> int:
        error = self._context_error(run_ctx, req_ctx)
        if error is not None:
            raise error
        value = self._transport.read_byte()
        self._emit(BusEvent(kind=BusEventKind.RX, outcome=BusOutcomeClass.SUCCESS, byte=value))
        return value

    def _wait_for_syn(self, run_ctx: Context, req_ctx: Context, count: int) -> None:
        decoder = _Decoder()
        seen = 0
        while seen < count:
            error = self._context_error(run_ctx, req_ctx)
            if error is not None:
                raise error
            try:
                value = decoder.read_symbol(self, run_ctx, req_ctx)
            except BusTimeoutError:
                continue
            if value == SYMBOL_SYN:
                seen += 1

    @staticmethod
    def _context_error(run_ctx: Context, req_ctx: Context) -> Optional[BaseException]:
        error: Optional[ContextError] = req_ctx.err() if req_ctx is not None else None
        if error is not None:
            return error
        if run_ctx is not None and run_ctx.err() is not None:
            return TransportClosedError("ebus: transport closed")
        return None

    def _emit(self, event: BusEvent) -> None:
        self._dispatcher.emit(event)

    def _emit_attempt_complete(
        self,
        request: Frame,
        response: Optional[Frame],
        frame_type: FrameType,
        attempt: int,
        started: float,
    ) -> None:
        self._emit(
            BusEvent(
                kind=BusEventKind.ATTEMPT_COMPLETE,
                frame_type=frame_type,
                outcome=BusOutcomeClass.SUCCESS,
                attempt=attempt,
                duration_micros=_micros(started),
                request=request,
                response=response,
            )
        )

    def _emit_request_complete(
        self,
        request: Frame,
        response: Optional[Frame],
        frame_type: FrameType,
        attempt: int,
        timeout_retries: int,
        nack_retries: int,
        error: Optional[BaseException],
        started: float,
    ) -> None:
        self._emit(
            BusEvent(
                kind=BusEventKind.REQUEST_COMPLETE,
                frame_type=frame_type,
                outcome=outcome_from_error(error),
                attempt=attempt,
                timeout_retries=timeout_retries,
                nack_retries=nack_retries,
                duration_micros=_micros(started),
                request=request,
                response=response,
            )
        )

    def _emit_retry(
        self,
        request: Frame,
        frame_type: FrameType,
        attempt: int,
        timeout_retries: int,
        nack_retries: int,
        error: BaseException,
    ) -> None:
        self._emit(
            BusEvent(
                kind=BusEventKind.RETRY,
                frame_type=frame_type,
                outcome=outcome_from_error(error),
                retry=retry_reason_from_error(error),
                attempt=attempt,
                timeout_retries=timeout_retries,
                nack_retries=nack_retries,
                request=request,
            )
        )

    _OUTCOME_KINDS: Tuple[Tuple[BusOutcomeClass, BusEventKind], ...] = (
        (BusOutcomeClass.TIMEOUT, BusEventKind.TIMEOUT),
        (BusOutcomeClass.NACK, BusEventKind.NACK),
        (BusOutcomeClass.CRC_MISMATCH, BusEventKind.CRC_MISMATCH),
        (BusOutcomeClass.ECHO_MISMATCH, BusEventKind.ECHO_MISMATCH),
    )

    def _emit_outcome(
        self,
        request: Optional[Frame],
        frame_type: FrameType,
        attempt: int,
        error: BaseException,
    ) -> None:
        outcome = outcome_from_error(error)
        for known, kind in self._OUTCOME_KINDS:
            if outcome is known:
                self._emit(
                    BusEvent(
                        kind=kind,
                        frame_type=frame_type,
                        outcome=outcome,
                        attempt=attempt,
                        request=request if frame_type is not FrameType.UNKNOWN else None,
                    )
                )
                return