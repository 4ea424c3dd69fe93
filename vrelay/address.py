"""Proxy target addresses and their SOCKS5 and VMess wire encodings."""

from __future__ import annotations

import asyncio
import enum
import socket
from dataclasses import dataclass
from ipaddress import IPv4Address, IPv6Address, ip_address

from vrelay.common import ProxyError

_MAX_PORT = 0xFFFF
_DEFAULT_PORT = 80

_VMESS_IPV4 = 0x01
_VMESS_DOMAIN = 0x02
_VMESS_IPV6 = 0x03


class AddressError(ValueError):
    """Raised when text cannot be parsed as an address."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"address error: {message}")


class AddressType(enum.IntEnum):
    """SOCKS5 address type byte."""

    IPV4 = 1
    DOMAIN_NAME = 3
    IPV6 = 4


def _parse_port(text: str) -> int | None:
    digits = text[1:] if text.startswith("+") else text
    if not digits or not digits.isascii() or not digits.isdigit():
        return None
    port = int(digits)
    return port if port <= _MAX_PORT else None


def _parse_socket_addr(text: str) -> tuple[IPv4Address | IPv6Address, int] | None:
    if text.startswith("["):
        end = text.find("]:")
        if end < 0:
            return None
        try:
            ip: IPv4Address | IPv6Address = IPv6Address(text[1:end])
        except ValueError:
            return None
        port = _parse_port(text[end + 2 :])
    else:
        host, sep, port_text = text.rpartition(":")
        if not sep:
            return None
        try:
            ip = IPv4Address(host)
        except ValueError:
            return None
        port = _parse_port(port_text)
    return None if port is None else (ip, port)


def _port_bytes(port: int) -> bytes:
    return port.to_bytes(2, "big")


@dataclass(frozen=True)
class Address:
    """An IP socket address or a domain name with a port."""

    host: IPv4Address | IPv6Address | str
    port: int

    def __post_init__(self) -> None:
        if not 0 <= self.port <= _MAX_PORT:
            raise AddressError(f"{self.host}:{self.port}")

    @classmethod
    def parse(cls, text: str) -> Address:
        """Parse ``ip:port``, ``[ipv6]:port``, ``domain:port`` or a bare domain (port 80)."""
        sock = _parse_socket_addr(text)
        if sock is not None:
            return cls(*sock)
        name, *rest = text.split(":")
        if not rest:
            return cls(name, _DEFAULT_PORT)
        port = _parse_port(rest[0])
        if port is None:
            raise AddressError(text)
        return cls(name, port)

    @classmethod
    def dummy(cls) -> Address:
        return cls(IPv4Address("0.0.0.0"), 0)

    def is_socket_addr(self) -> bool:
        return not isinstance(self.host, str)

    def __str__(self) -> str:
        if isinstance(self.host, IPv6Address):
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    def _domain_bytes(self) -> bytes:
        name = str(self.host).encode()
        if len(name) > 255:
            raise AddressError(f"domain name too long: {self.host}")
        return name

    def serialized_len(self) -> int:
        if isinstance(self.host, IPv4Address):
            return 1 + 4 + 2
        if isinstance(self.host, IPv6Address):
            return 1 + 16 + 2
        return 1 + 1 + len(str(self.host).encode()) + 2

    def to_bytes(self) -> bytes:
        """Encode in SOCKS5 form: type, address, big-endian port."""
        if isinstance(self.host, IPv4Address):
            return bytes([AddressType.IPV4]) + self.host.packed + _port_bytes(self.port)
        if isinstance(self.host, IPv6Address):
            return bytes([AddressType.IPV6]) + self.host.packed + _port_bytes(self.port)
        name = self._domain_bytes()
        return bytes([AddressType.DOMAIN_NAME, len(name)]) + name + _port_bytes(self.port)

    def to_vmess_bytes(self) -> bytes:
        """Encode in VMess form: big-endian port, type, address."""
        port = _port_bytes(self.port)
        if isinstance(self.host, IPv4Address):
            return port + bytes([_VMESS_IPV4]) + self.host.packed
        if isinstance(self.host, IPv6Address):
            return port + bytes([_VMESS_IPV6]) + self.host.packed
        name = self._domain_bytes()
        return port + bytes([_VMESS_DOMAIN, len(name)]) + name

    @classmethod
    def from_bytes(cls, data: bytes) -> Address:
        """Decode a SOCKS5-form address from the start of ``data``."""
        data = bytes(data)
        if len(data) < 2:
            raise ProxyError("invalid address buffer")
        kind, rest = data[0], data[1:]
        if kind == AddressType.IPV4:
            if len(rest) < 4 + 2:
                raise ProxyError("IPv4 address too short")
            return cls(IPv4Address(rest[:4]), int.from_bytes(rest[4:6], "big"))
        if kind == AddressType.DOMAIN_NAME:
            length = rest[0]
            body = rest[1:]
            if len(body) < length + 2:
                raise ProxyError("Domain name too short")
            try:
                name = body[:length].decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ProxyError(f"invalid utf8 domain name {exc}") from exc
            return cls(name, int.from_bytes(body[length : length + 2], "big"))
        if kind == AddressType.IPV6:
            if len(rest) < 16 + 2:
                raise ProxyError("IPv6 address too short")
            return cls(IPv6Address(rest[:16]), int.from_bytes(rest[16:18], "big"))
        raise ProxyError(f"unknown address type {kind}")

    @classmethod
    async def read_from_stream(cls, reader: asyncio.StreamReader) -> Address:
        """Read a SOCKS5-form address from an asyncio stream."""
        kind = (await reader.readexactly(1))[0]
        if kind == AddressType.IPV4:
            buf = await reader.readexactly(6)
            return cls(IPv4Address(buf[:4]), int.from_bytes(buf[4:], "big"))
        if kind == AddressType.IPV6:
            buf = await reader.readexactly(18)
            return cls(IPv6Address(buf[:16]), int.from_bytes(buf[16:], "big"))
        if kind == AddressType.DOMAIN_NAME:
            length = (await reader.readexactly(1))[0]
            buf = await reader.readexactly(length + 2)
            try:
                name = buf[:length].decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ProxyError("invalid address encoding") from exc
            return cls(name, int.from_bytes(buf[length:], "big"))
        raise ProxyError(f"not supported address type {kind:#x}")

    async def write_to_stream(self, writer: asyncio.StreamWriter) -> None:
        writer.write(self.to_bytes())
        await writer.drain()

    def sock_addr(self) -> tuple[str, int]:
        """Return ``(ip, port)``; domain addresses have none."""
        if isinstance(self.host, str):
            raise ProxyError("domain can't get sock addr")
        return str(self.host), self.port

    def resolve(self) -> list[Address]:
        """Return the socket addresses this address stands for."""
        if self.is_socket_addr():
            return [self]
        infos = socket.getaddrinfo(str(self.host), self.port, type=socket.SOCK_STREAM)
        found = dict.fromkeys(
            Address(ip_address(info[4][0]), info[4][1]) for info in infos
        )
        return list(found)

    async def connect_tcp(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Open a TCP connection to this address."""
        return await asyncio.open_connection(str(self.host), self.port)