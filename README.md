# ebuslink

A pure-Python library for the core of the eBUS protocol, the two-wire bus
used by many heating systems. It has no runtime dependencies.

## Modules

- `ebuslink.frame`: the `Frame` dataclass (`source`, `target`, `primary`,
  `secondary`, `data`) and `FrameType`. It also has the eBUS CRC8 (`crc`,
  `crc_update`), symbol escaping (`escape_bytes`) and target response encoding
  (`encode_slave_response`, which rejects more than 255 data bytes with
  `InvalidPayloadError`). Addresses are classified with
  `is_initiator_capable_address` and `frame_type_for_target`. The module
  defines the error hierarchy, whose base class is `EbusError`:
  `BusTimeoutError`, `NackError`, `CRCMismatchError`, `BusCollisionError`,
  `TransportClosedError` and `InvalidPayloadError`.
- `ebuslink.context`: cancellation and deadline scopes. It provides
  `background()`, `with_cancel(parent)`, `with_timeout(parent, seconds)` and
  `Context`, with `cancel()`, `err()`, `deadline()`, `done()` and `wait()`.
  A `Context` can be used in a `with` block, which cancels it on exit.
  Termination raises `ContextCanceled` or `DeadlineExceeded`.
- `ebuslink.queue`: `PriorityQueue`. Lower source addresses are served
  first, and requests with the same source are served in FIFO order.
- `ebuslink.observer`: the event vocabulary (`BusEvent`, `BusEventKind`,
  `BusOutcomeClass`, `BusRetryReason`), `BusObserver`, `RetryPolicy`,
  `BusConfig`, `BusRetryEnvelope`, `ObserverFaultSnapshot`,
  `default_bus_config()` (two timeout retries and one NACK retry) and
  `default_retry_envelope()`.
- `ebuslink.dispatch`: retry decisions (`should_retry`), final error wrapping
  (`wrap_retry_error`), error classification (`outcome_from_error`,
  `retry_reason_from_error`) and `ObserverDispatcher`.
- `ebuslink.bus`: `Bus` and the `RawTransport` interface.
- `ebuslink.collision_monitor`: `CollisionMonitor`, which detects foreign
  frames that reuse our own initiator address.
- `ebuslink.join`: `Joiner`, which picks a free initiator address.

## Sending a frame

A transport implements `RawTransport`:

- `read_byte()` returns one received byte. It raises `BusTimeoutError` when
  nothing arrives.
- `write(payload)` returns the number of bytes written.
- `close()` releases the transport.

A transport that performs arbitration itself may also define
`start_arbitration(initiator)`. In that case the bus calls it before every
attempt. The transport may also define `arbitration_sends_source()`, which
tells the bus whether the source byte has already gone out.

```python
from ebuslink.bus import Bus
from ebuslink.context import background, with_timeout
from ebuslink.frame import Frame
from ebuslink.observer import default_bus_config

bus = Bus(transport, default_bus_config())
ctx = with_timeout(background(), 1.0)
bus.run(ctx)

response = bus.send(Frame(source=0x10, target=0x08, primary=0xB5, secondary=0x09, data=b"\x0d"), ctx)
if response is not None:
    print(response.data.hex())
```

What `send(frame, ctx)` does:

- It queues the frame and waits for the run loop to process it.
- Every written byte must come back as an echo. A mismatch, or an unexpected
  SYN, counts as a collision.
- It returns a response `Frame` only for initiator-to-target frames.
  Broadcasts and initiator-to-initiator frames return `None`.
- It retries timeouts, CRC mismatches and NACKs according to the
  `RetryPolicy` for the frame type. After a collision it waits for two SYN
  symbols before retrying. If the request context has a deadline, collisions
  are retried until that deadline. Otherwise they count against the timeout
  retries.
- Failures raise the matching `EbusError` subclass, chained to the cause. It
  raises `TransportClosedError` once the run context has ended, and the
  context error if the request context is canceled or expires.

`raw_transport_op(fn, ctx)` runs `fn(transport)` on the bus loop, serialised
with frame traffic. `fn` must not call back into the bus. If the context ends
before `fn` starts, `fn` is skipped and the context error is raised. If `fn`
has already started, the call waits for it to finish.

## Observing the bus

Pass a `BusObserver` as `BusConfig(observer=...)`. You can wrap a callback,
`BusObserver(callback)`, or subclass it and override `on_bus_event`. The bus
reports these events:

- arbitration
- every TX and RX byte
- ACK, NACK, timeout, CRC mismatch and echo mismatch
- retries
- completed attempts and completed requests, with durations in microseconds

If an observer raises, the bus keeps running. The failure is recorded, and
`bus.observer_fault_snapshot()` returns it. An `EbusError` is recorded as a
reported failure. Any other exception sets `last_panic`. After a failure the
bus emits an `OBSERVER_FAULT` event.

## Collision monitoring

```python
from ebuslink.collision_monitor import CollisionMonitor, CollisionMonitorConfig

monitor = CollisionMonitor(CollisionMonitorConfig(echo_window=0.2))
monitor.set_initiator(0x31)
monitor.record_tx(frame)           # raises ArbitrationFailedError while a collision is active
event = monitor.observe_rx(frame)  # CollisionEvent or None
```

A frame received with our own source counts as a collision in two cases:

- it does not match a frame we sent within the echo window;
- the monitor is muted (`set_muted(True)`).

After `set_initiator` changes the address, frames from the previous address
are ignored for a grace window. `is_arbitration_failed(error)` checks an
error, and the errors it was raised from, for `ArbitrationFailedError`.

## Choosing an initiator address

Implement `JoinBus` (`listen(ctx, on_frame)`, `inquiry_existence(ctx)`). To
remember the last good address, also implement `JoinStateStore`
(`load_initiator(ctx)`, `save_initiator(ctx, initiator)`).

```python
from ebuslink.join import JoinConfig, Joiner

joiner = Joiner(join_bus, store, JoinConfig(listen_warmup=5.0))
result = joiner.join()
print(hex(result.initiator), hex(result.companion_target), result.metrics.rejection_reasons)
```

How `Joiner` picks an address:

1. It listens for the warmup period.
2. It optionally sends an inquiry, if `inquiry_enabled` is set.
3. It takes the persisted address, if that address is still free and safe.
4. Otherwise it takes the first free address: the highest by default, or the
   lowest with `prefer_highest=False`.

An address is skipped if its companion target (initiator + 5) looks like an
active target. If every address is in use, `join()` raises
`NoFreeInitiatorAddressError`, unless `force_if_all_occupied=True` is set.

## What this package does not include

- No concrete transport: no serial port, network or adapter driver. You
  supply a `RawTransport`.
- No `JoinBus` or `JoinStateStore` implementation. Storage of the last good
  address is up to you.
- No command-line tool.
- No message definitions for decoding device data.

## Running the tests

```
pip install .[test]
pytest
```