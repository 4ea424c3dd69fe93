"""Parsers and defaults for configuration values."""

from __future__ import annotations

import enum
import os
import platform
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

from vrelay.address import Address
from vrelay.common import ProxyError

DEFAULT_GRPC_PATH = "/GunService/Tun"
DEFAULT_RELAY_BUFFER_SIZE = 20
DEFAULT_BACKLOG = 4096
DEFAULT_HTTP2_METHOD = "PUT"
EARLY_DATA_HEADER_NAME = "Sec-WebSocket-Protocol"

_MAX_DNS_NAME_LEN = 253
_MAX_LABEL_LEN = 63
_TOKEN_EXTRA = frozenset("!#$%&'*+-.^_`|~")
_SECURITY_AES_128_GCM = 0x03
_SECURITY_CHACHA20_POLY1305 = 0x04
_AES_FRIENDLY_MACHINES = frozenset({"x86_64", "amd64", "aarch64", "arm64"})


class CipherKind(enum.Enum):
    """Shadowsocks encryption methods."""

    NONE = "none"
    AES_128_GCM = "aes-128-gcm"
    AES_256_GCM = "aes-256-gcm"
    CHACHA20_POLY1305 = "chacha20-ietf-poly1305"


_CIPHER_NAMES = {
    "none": CipherKind.NONE,
    "plain": CipherKind.NONE,
    "aes-128-gcm": CipherKind.AES_128_GCM,
    "aes-256-gcm": CipherKind.AES_256_GCM,
    "chacha20-ietf-poly1305": CipherKind.CHACHA20_POLY1305,
    "chacha20-poly1305": CipherKind.CHACHA20_POLY1305,
}


def parse_cipher_kind(method: str) -> CipherKind:
    try:
        return _CIPHER_NAMES[method]
    except KeyError:
        raise ValueError("wrong ss encryption method") from None


def parse_address(text: str) -> Address:
    return Address.parse(text)


def parse_security_num(security: str) -> int:
    """Map a VMess security name to its wire number."""
    if security == "aes-128-gcm":
        return _SECURITY_AES_128_GCM
    if security == "chacha20-poly1305":
        return _SECURITY_CHACHA20_POLY1305
    if security in ("none", "zero"):
        raise ValueError(f"not support vmess security type:{security}")
    if security == "auto":
        if platform.machine().lower() in _AES_FRIENDLY_MACHINES:
            return _SECURITY_AES_128_GCM
        return _SECURITY_CHACHA20_POLY1305
    raise ValueError(f"unknown vmess security type {security}")


def parse_uuid(text: str) -> uuid.UUID:
    try:
        return uuid.UUID(text)
    except (ValueError, TypeError) as exc:
        raise ValueError(f"invalid uuid {text!r}: {exc}") from exc


def _parse_unsigned(text: str) -> int:
    digits = text[1:] if text.startswith("+") else text
    if not digits or not digits.isascii() or not digits.isdigit():
        raise ProxyError(f"invalid digit found in string: {text!r}")
    return int(digits)


def _check_uri_chars(text: str) -> None:
    if not text or any(ord(c) <= 0x20 or ord(c) == 0x7F for c in text):
        raise ProxyError(f"invalid uri {text!r}")


@dataclass(frozen=True)
class EarlyDataUri:
    """A WebSocket URI with its ``ed`` early-data query parameter pulled out."""

    uri: str
    early_data_header_name: str
    max_early_data: int

    @classmethod
    def parse(cls, uri: str) -> EarlyDataUri:
        _check_uri_chars(uri)
        try:
            parts = urlsplit(uri)
            parts.port  # noqa: B018 - validates the port
        except ValueError as exc:
            raise ProxyError(exc) from exc
        if "?" not in uri:
            return cls(uri, "", 0)
        query = parts.query
        key: list[str] = []
        value: list[str] = []
        reading_key = True
        found = False
        start = 0
        end = len(query)
        for idx, char in enumerate(query):
            if char == "=":
                reading_key = False
            elif char == "&":
                reading_key = True
                if "".join(key) == "ed":
                    found = True
                    end = idx
                    start = idx - len(value) - len(key) - 1
                    break
                key.clear()
                value.clear()
            elif reading_key:
                key.append(char)
            else:
                value.append(char)
        if "".join(key) == "ed" and not found:
            found = True
            start = end - len(value) - len(key) - 1
        if not found:
            return cls(uri, "", 0)
        max_early_data = _parse_unsigned("".join(value))
        if max_early_data == 0:
            raise ProxyError("read from query max early data is zero.")
        new_query = query[:start] + query[end:]
        path = parts.path or "/"
        prefix = f"{parts.scheme}://{parts.netloc}" if parts.scheme else ""
        return cls(f"{prefix}{path}?{new_query}", EARLY_DATA_HEADER_NAME, max_early_data)


def parse_path(text: str) -> str:
    """Validate an HTTP path-and-query, dropping any fragment."""
    text = text.split("#", 1)[0]
    if any(ord(c) <= 0x20 or ord(c) == 0x7F for c in text):
        raise ValueError(f"invalid uri character in {text!r}")
    return text or "/"


def grpc_path(service_name: str) -> str:
    return parse_path(f"/{service_name}/Tun")


def parse_http_method(method: str) -> str:
    """Validate an HTTP method token."""
    if not method or not all(
        (c.isascii() and c.isalnum()) or c in _TOKEN_EXTRA for c in method
    ):
        raise ValueError(f"invalid HTTP method {method!r}")
    return method


def is_valid_dns_id(hostname: str | bytes) -> bool:
    """Check that ``hostname`` is a syntactically valid DNS name."""
    data = hostname.encode() if isinstance(hostname, str) else bytes(hostname)
    if not data or len(data) > _MAX_DNS_NAME_LEN:
        return False
    label_length = 0
    all_numeric = False
    ends_with_hyphen = False
    for byte in data:
        char = chr(byte)
        if char == "-":
            if label_length == 0:
                return False
            all_numeric = False
            ends_with_hyphen = True
        elif "0" <= char <= "9":
            if label_length == 0:
                all_numeric = True
            ends_with_hyphen = False
        elif ("a" <= char <= "z") or ("A" <= char <= "Z") or char == "_":
            all_numeric = False
            ends_with_hyphen = False
        elif char == ".":
            if label_length == 0 or ends_with_hyphen:
                return False
            label_length = 0
            continue
        else:
            return False
        label_length += 1
        if label_length > _MAX_LABEL_LEN:
            return False
    return not ends_with_hyphen and not all_numeric


def parse_sni(sni: str) -> str:
    if not is_valid_dns_id(sni):
        raise ValueError("Not a valid sni string")
    return sni


def default_random_string() -> str:
    return str(uuid.uuid4())


def default_v2ray_asset_path(file_name: str) -> Path:
    """Locate an asset file from the environment or next to the running program."""
    for var in ("v2ray.location.asset", "V2RAY_LOCATION_ASSET"):
        location = os.environ.get(var)
        if location is not None:
            return Path(location) / file_name
    program = sys.argv[0] if sys.argv and sys.argv[0] else ""
    base = Path(program).resolve().parent if program else Path.cwd()
    return base / file_name


def default_geosite_path() -> Path:
    return default_v2ray_asset_path("geosite.dat")


def default_geoip_path() -> Path:
    return default_v2ray_asset_path("geoip.dat")