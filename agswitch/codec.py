"""Binary credential record for Antigravity's agent-manager state.

The target stores its OAuth token as a protobuf-shaped blob:

    field 6 (bytes) {
        1: access_token   (bytes)
        2: "Bearer"       (bytes)
        3: refresh_token  (bytes)
        4: { 1: expiry (varint, epoch seconds) }
    }

Layout must match byte-for-byte. There is no decoder; the format is
write-only from our side.
"""

import base64

WIRE_VARINT = 0
WIRE_LEN = 2

OUTER_FIELD = 6
TOKEN_TYPE = "Bearer"


def encode_varint(value: int) -> bytes:
    """Base-128 little-endian varint.

    >>> encode_varint(0)
    b'\\x00'
    >>> encode_varint(300)
    b'\\xac\\x02'
    """
    if value < 0:
        raise ValueError(f"varint must be non-negative, got {value}")
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def _tag(field_number: int, wire_type: int) -> bytes:
    return encode_varint((field_number << 3) | wire_type)


def _len_field(field_number: int, payload: bytes) -> bytes:
    return _tag(field_number, WIRE_LEN) + encode_varint(len(payload)) + payload


def encode(access_token: str, refresh_token: str, expiry_epoch_seconds: int) -> bytes:
    """Encode the credential record.

    >>> encode("a", "r", 1).hex()
    '32120a016112064265617265721a017222020801'
    """
    expiry = _tag(1, WIRE_VARINT) + encode_varint(expiry_epoch_seconds)
    inner = (
        _len_field(1, access_token.encode("utf-8"))
        + _len_field(2, TOKEN_TYPE.encode("utf-8"))
        + _len_field(3, refresh_token.encode("utf-8"))
        + _len_field(4, expiry)
    )
    return _len_field(OUTER_FIELD, inner)


def encode_base64(access_token: str, refresh_token: str, expiry_epoch_seconds: int) -> str:
    """Standard-alphabet, padded base64 of :func:`encode`, as stored in the DB."""
    return base64.b64encode(
        encode(access_token, refresh_token, expiry_epoch_seconds)
    ).decode("ascii")
