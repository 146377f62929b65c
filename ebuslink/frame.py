"""eBUS frames, symbols, CRC and wire escaping."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Iterable

ADDRESS_BROADCAST = 0xFE
SYMBOL_ESCAPE = 0xA9
SYMBOL_SYN = 0xAA
SYMBOL_ACK = 0x00
SYMBOL_NACK = 0xFF

_CRC_POLYNOMIAL = 0x9B
_MAX_RESPONSE_LENGTH = 255
# Valid nibble patterns of an initiator address, in priority order.
_INITIATOR_NIBBLES = frozenset({0x0, 0x1, 0x3, 0x7, 0xF})


class EbusError(Exception):
    """Base class of all bus-level errors."""


class BusTimeoutError(EbusError):
    """No (or no usable) answer arrived in time."""


class NackError(EbusError):
    """The peer answered with a negative acknowledge."""


class CRCMismatchError(EbusError):
    """A received segment failed its CRC check."""


class BusCollisionError(EbusError):
    """Another participant took the bus or disturbed our symbols."""


class TransportClosedError(EbusError):
    """The underlying transport or bus loop is closed."""


class InvalidPayloadError(EbusError):
    """A payload or symbol sequence is malformed."""


class FrameType(IntEnum):
    UNKNOWN = 0
    BROADCAST = 1
    INITIATOR_TARGET = 2
    INITIATOR_INITIATOR = 3


def _check_byte(name: str, value: int) -> None:
    if not 0 <= value <= 0xFF:
        raise ValueError(f"{name} must be a byte value, got {value!r}")


@dataclass(frozen=True)
class Frame:
    """A parsed eBUS frame."""

    source: int = 0
    target: int = 0
    primary: int = 0
    secondary: int = 0
    data: bytes = b""

    def __post_init__(self) -> None:
        for name in ("source", "target", "primary", "secondary"):
            _check_byte(name, getattr(self, name))
        object.__setattr__(self, "data", bytes(self.data))

    def frame_type(self) -> FrameType:
        """Return the frame type implied by the target address."""
        return frame_type_for_target(self.target)

    def copy(self) -> "Frame":
        """Return an independent copy of this frame."""
        return replace(self)


def _is_valid_address(addr: int) -> bool:
    return addr not in (SYMBOL_ESCAPE, SYMBOL_SYN)


def is_initiator_capable_address(addr: int) -> bool:
    """Report whether addr is a valid initiator address per the eBUS table."""
    return (addr & 0x0F) in _INITIATOR_NIBBLES and ((addr & 0xF0) >> 4) in _INITIATOR_NIBBLES


def frame_type_for_target(target: int) -> FrameType:
    """Determine the frame type from a destination address."""
    if target == ADDRESS_BROADCAST:
        return FrameType.BROADCAST
    if not _is_valid_address(target):
        return FrameType.UNKNOWN
    if is_initiator_capable_address(target):
        return FrameType.INITIATOR_INITIATOR
    return FrameType.INITIATOR_TARGET


def crc_update(value: int, byte: int) -> int:
    """Feed one byte into the eBUS CRC8 (polynomial 0x9B)."""
    crc_value = value & 0xFF
    data = byte & 0xFF
    for _ in range(8):
        carry = crc_value & 0x80
        crc_value = ((crc_value << 1) | (data >> 7)) & 0xFF
        data = (data << 1) & 0xFF
        if carry:
            crc_value ^= _CRC_POLYNOMIAL
    return crc_value


def crc(data: Iterable[int]) -> int:
    """Compute the eBUS CRC8 over unescaped symbols."""
    value = 0
    for symbol in data:
        if symbol == SYMBOL_ESCAPE:
            value = crc_update(crc_update(value, SYMBOL_ESCAPE), 0x00)
        elif symbol == SYMBOL_SYN:
            value = crc_update(crc_update(value, SYMBOL_ESCAPE), 0x01)
        else:
            value = crc_update(value, symbol)
    return value


def escape_bytes(raw: Iterable[int]) -> bytes:
    """Escape control symbols for wire transmission."""
    escaped = bytearray()
    for symbol in raw:
        if symbol == SYMBOL_ESCAPE:
            escaped += bytes((SYMBOL_ESCAPE, 0x00))
        elif symbol == SYMBOL_SYN:
            escaped += bytes((SYMBOL_ESCAPE, 0x01))
        else:
            escaped.append(symbol)
    return bytes(escaped)


def encode_slave_response(data: bytes) -> bytes:
    """Build a wire-ready target response segment: NN DATA... CRC, escaped."""
    payload = bytes(data)
    if len(payload) > _MAX_RESPONSE_LENGTH:
        raise InvalidPayloadError(
            f"target response data length {len(payload)} exceeds {_MAX_RESPONSE_LENGTH}"
        )
    segment = bytes((len(payload),)) + payload
    return escape_bytes(segment + bytes((crc(segment),)))