"""Framing of the gRPC "gun" tunnel: payloads wrapped as length-prefixed Hunk messages."""

from __future__ import annotations

from vrelay.common import ProxyError
from vrelay.options import parse_path

GRPC_CONTENT_TYPE = "application/grpc"
GRPC_USER_AGENT = "grpc-go/1.46.0"

_HUNK_FIELD_TAG = 0x0A
_FRAME_PREFIX_LEN = 6  # 5-byte gRPC message header plus the Hunk field tag
_MAX_VARINT_LEN = 10


def _encode_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _decode_varint(data: bytes | bytearray, pos: int) -> tuple[int, int] | None:
    """Return ``(value, next_pos)``, or None if the varint is incomplete."""
    result = 0
    for index in range(_MAX_VARINT_LEN):
        if pos + index >= len(data):
            return None
        byte = data[pos + index]
        result |= (byte & 0x7F) << (7 * index)
        if not byte & 0x80:
            return result, pos + index + 1
    raise ProxyError("invalid varint")


def encode_gun_frame(data: bytes) -> bytes:
    """Wrap ``data`` in a gRPC message carrying a single bytes field 1."""
    data = bytes(data)
    body = bytes([_HUNK_FIELD_TAG]) + _encode_varint(len(data)) + data
    return b"\x00" + len(body).to_bytes(4, "big") + body


def grpc_request_headers(host: str, path: str) -> list[tuple[str, str]]:
    """Return the HTTP/2 request headers that open a gun tunnel on ``host``."""
    if not host or any(c.isspace() or c in "/?#" for c in host):
        raise ProxyError(f"invalid authority {host!r}")
    try:
        path = parse_path(path)
    except ValueError as exc:
        raise ProxyError(exc) from exc
    return [
        (":method", "POST"),
        (":scheme", "https"),
        (":authority", host),
        (":path", path),
        ("content-type", GRPC_CONTENT_TYPE),
        ("user-agent", GRPC_USER_AGENT),
    ]


class GunFrameDecoder:
    """Incremental decoder that turns received gun frames back into payload bytes."""

    def __init__(self) -> None:
        self._pending = bytearray()
        self._payload_left = 0

    @property
    def payload_left(self) -> int:
        """Payload bytes of the current frame still to come."""
        return self._payload_left

    def feed(self, data: bytes) -> bytes:
        """Consume received bytes and return whatever payload they complete."""
        self._pending += data
        out = bytearray()
        while True:
            if self._payload_left == 0:
                if len(self._pending) < _FRAME_PREFIX_LEN:
                    break
                decoded = _decode_varint(self._pending, _FRAME_PREFIX_LEN)
                if decoded is None:
                    break
                self._payload_left, pos = decoded
                del self._pending[:pos]
                continue
            if not self._pending:
                break
            take = min(self._payload_left, len(self._pending))
            out += self._pending[:take]
            del self._pending[:take]
            self._payload_left -= take
        return bytes(out)