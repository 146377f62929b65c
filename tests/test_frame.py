import pytest

from ebuslink.frame import (
    ADDRESS_BROADCAST,
    SYMBOL_ESCAPE,
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
    crc_update,
    encode_slave_response,
    escape_bytes,
    frame_type_for_target,
    is_initiator_capable_address,
)


def decode_escaped(escaped):
    decoded = bytearray()
    symbols = iter(escaped)
    for symbol in symbols:
        if symbol != SYMBOL_ESCAPE:
            decoded.append(symbol)
            continue
        following = next(symbols)
        assert following in (0x00, 0x01), f"unknown escape code {following:#x}"
        decoded.append(SYMBOL_ESCAPE if following == 0x00 else SYMBOL_SYN)
    return bytes(decoded)


@pytest.mark.parametrize(
    "data, want",
    [
        (b"", 0x00),
        (bytes([0x01, 0x02]), 0x99),
        (bytes([0x10, 0xFE, 0xB5, 0x05, 0x04, 0x27, 0xA9, 0x15, 0xAA]), 0x77),
    ],
    ids=["empty", "simple", "escaped-symbols"],
)
def test_crc_vectors(data, want):
    assert crc(data) == want


@pytest.mark.parametrize(
    "value, byte, want",
    [(0x00, 0x01, 0x01), (0x01, 0x31, 0xAA), (0x01, 0x32, 0xA9)],
)
def test_crc_update_steps(value, byte, want):
    assert crc_update(value, byte) == want


@pytest.mark.parametrize(
    "target, want",
    [
        (ADDRESS_BROADCAST, FrameType.BROADCAST),
        (0x10, FrameType.INITIATOR_INITIATOR),
        (0x08, FrameType.INITIATOR_TARGET),
        (SYMBOL_ESCAPE, FrameType.UNKNOWN),
    ],
)
def test_frame_type_for_target(target, want):
    assert frame_type_for_target(target) == want


def test_frame_type_method():
    assert Frame(target=0x10).frame_type() == FrameType.INITIATOR_INITIATOR


def test_frame_copy_is_equal_and_distinct():
    frame = Frame(source=0x10, target=0x08, primary=0xB5, secondary=0x09, data=[1, 2])
    copied = frame.copy()
    assert copied == frame
    assert copied is not frame
    assert copied.data == bytes([1, 2])


def test_frame_rejects_out_of_range_header():
    with pytest.raises(ValueError):
        Frame(source=0x100)


@pytest.mark.parametrize(
    "addr, want",
    [
        (0x00, True), (0x01, True), (0x03, True), (0x07, True), (0x0F, True),
        (0x10, True), (0x70, True), (0xF0, True), (0xF7, True), (0xFF, True),
        (0x37, True), (0x15, False), (0x1C, False), (0x75, False), (0x50, False),
        (0xFE, False), (SYMBOL_ESCAPE, False), (SYMBOL_SYN, False),
    ],
)
def test_is_initiator_capable_address(addr, want):
    assert is_initiator_capable_address(addr) is want


@pytest.mark.parametrize(
    "raw, want",
    [
        (b"", b""),
        (bytes([0x10, 0x22, 0x7F]), bytes([0x10, 0x22, 0x7F])),
        (bytes([SYMBOL_ESCAPE]), bytes([SYMBOL_ESCAPE, 0x00])),
        (bytes([SYMBOL_SYN]), bytes([SYMBOL_ESCAPE, 0x01])),
        (
            bytes([0x01, SYMBOL_ESCAPE, 0x02, SYMBOL_SYN, 0x03]),
            bytes([0x01, SYMBOL_ESCAPE, 0x00, 0x02, SYMBOL_ESCAPE, 0x01, 0x03]),
        ),
        (
            bytes([SYMBOL_ESCAPE, SYMBOL_SYN, SYMBOL_ESCAPE]),
            bytes([SYMBOL_ESCAPE, 0x00, SYMBOL_ESCAPE, 0x01, SYMBOL_ESCAPE, 0x00]),
        ),
    ],
)
def test_escape_bytes(raw, want):
    assert escape_bytes(raw) == want


def test_encode_slave_response_empty():
    assert encode_slave_response(b"") == bytes([0x00, 0x00])


def test_encode_slave_response_single_byte():
    raw = bytes([0x01, 0x10])
    assert encode_slave_response(bytes([0x10])) == raw + bytes([crc(raw)])


def test_encode_slave_response_escapes_escape_symbol():
    got = encode_slave_response(bytes([SYMBOL_ESCAPE]))
    assert got.startswith(bytes([0x01, SYMBOL_ESCAPE, 0x00]))


def test_encode_slave_response_escapes_syn_symbol():
    got = encode_slave_response(bytes([SYMBOL_SYN]))
    assert got.startswith(bytes([0x01, SYMBOL_ESCAPE, 0x01]))


def test_encode_slave_response_crc_over_unescaped():
    data = bytes([SYMBOL_ESCAPE, 0x42, SYMBOL_SYN])
    segment = decode_escaped(encode_slave_response(data))
    assert len(segment) == len(data) + 2
    assert segment[0] == len(data)
    assert segment[1:1 + len(data)] == data
    assert segment[-1] == crc(bytes([len(data)]) + data)


def test_encode_slave_response_known_vector_escaped_crc():
    assert encode_slave_response(bytes([0x31])) == bytes([0x01, 0x31, SYMBOL_ESCAPE, 0x01])


def test_encode_slave_response_known_vector_escaped_crc_escape():
    got = encode_slave_response(bytes([0x32]))
    assert got[-2:] == bytes([SYMBOL_ESCAPE, 0x00])
    assert decode_escaped(got)[-1] == SYMBOL_ESCAPE


def test_encode_slave_response_escapes_length_escape():
    got = encode_slave_response(bytes(SYMBOL_ESCAPE))
    assert got[:2] == bytes([SYMBOL_ESCAPE, 0x00])
    assert decode_escaped(got)[0] == SYMBOL_ESCAPE


def test_encode_slave_response_escapes_length_syn():
    got = encode_slave_response(bytes(SYMBOL_SYN))
    assert got[:2] == bytes([SYMBOL_ESCAPE, 0x01])
    assert decode_escaped(got)[0] == SYMBOL_SYN


def test_encode_slave_response_too_long():
    with pytest.raises(InvalidPayloadError):
        encode_slave_response(bytes(256))


def test_encode_slave_response_too_long_is_ebus_error():
    with pytest.raises(EbusError) as info:
        encode_slave_response(bytes(256))
    assert type(info.value) is InvalidPayloadError


def test_invalid_payload_error_is_not_another_error_kind():
    with pytest.raises(EbusError) as info:
        encode_slave_response(bytes(300))
    other_kinds = [
        BusTimeoutError,
        NackError,
        CRCMismatchError,
        BusCollisionError,
        TransportClosedError,
    ]
    assert [isinstance(info.value, kind) for kind in other_kinds] == [False] * len(other_kinds)


def test_encode_slave_response_max_length():
    decoded = decode_escaped(encode_slave_response(bytes(255)))
    assert decoded[0] == 0xFF
    assert decoded[-1] == crc(decoded[:-1])