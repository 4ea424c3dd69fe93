"""Shared constants, errors, hashing helpers and cipher wrappers."""

from __future__ import annotations

import enum
import hashlib
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

log = logging.getLogger(__name__)

LW_BUFFER_SIZE = 1024
HW_BUFFER_SIZE = 65_536
AES_128_GCM_TAG_LEN = 16

_AEAD_NONCE_LEN = 12
_AES_BLOCK_LEN = 16
_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193
_U32_MASK = 0xFFFFFFFF


class ProxyError(OSError):
    """Error raised by the proxy for protocol and configuration failures."""

    def __init__(self, message: object) -> None:
        self.message = str(message)
        log.debug("new error message:%s", self.message)
        super().__init__(f"Error: {self.message}")


def sha256(data: bytes) -> bytes:
    """Return the SHA-256 digest of ``data``."""
    return hashlib.sha256(data).digest()


def sha224(data: bytes) -> bytes:
    """Return the SHA-224 digest of ``data``."""
    return hashlib.sha224(data).digest()


def md5(*args: bytes) -> bytes:
    """Return the MD5 digest of all arguments fed in order."""
    digest = hashlib.md5()
    for chunk in args:
        digest.update(chunk)
    return digest.digest()


def openssl_bytes_to_key(password: bytes | str, key_len: int) -> bytes:
    """Derive a key of ``key_len`` bytes the way OpenSSL's EVP_BytesToKey does (MD5, no salt)."""
    if isinstance(password, str):
        password = password.encode()
    key = bytearray()
    last = b""
    while len(key) < key_len:
        last = md5(last, password)
        key += last
    return bytes(key[:key_len])


def random_iv_or_salt(length: int) -> bytes:
    """Return ``length`` random bytes that are not all zero."""
    if length <= 0:
        return b""
    while True:
        value = os.urandom(length)
        if any(value):
            return value


class Fnv1aHasher:
    """32-bit FNV-1a hash."""

    def __init__(self) -> None:
        self._state = _FNV_OFFSET

    def update(self, data: bytes) -> None:
        state = self._state
        for byte in data:
            state ^= byte
            state = (state * _FNV_PRIME) & _U32_MASK
        self._state = state

    def digest(self) -> int:
        return self._state


class AeadAlgorithm(enum.Enum):
    """Supported AEAD ciphers with their key lengths."""

    AES_128_GCM = ("aes-128-gcm", 16)
    AES_256_GCM = ("aes-256-gcm", 32)
    CHACHA20_POLY1305 = ("chacha20-poly1305", 32)

    def __init__(self, label: str, key_len: int) -> None:
        self.label = label
        self.key_len = key_len

    @property
    def tag_len(self) -> int:
        return 16


class AeadCipher:
    """AEAD cipher that appends the tag to the ciphertext."""

    def __init__(self, algorithm: AeadAlgorithm, key: bytes) -> None:
        key = bytes(key)
        if len(key) != algorithm.key_len:
            raise ValueError(
                f"{algorithm.label} needs a {algorithm.key_len}-byte key, got {len(key)}"
            )
        self.algorithm = algorithm
        if algorithm is AeadAlgorithm.CHACHA20_POLY1305:
            self._impl = ChaCha20Poly1305(key)
        else:
            self._impl = AESGCM(key)

    @staticmethod
    def _check_nonce(nonce: bytes) -> bytes:
        nonce = bytes(nonce)
        if len(nonce) != _AEAD_NONCE_LEN:
            raise ValueError(f"nonce must be {_AEAD_NONCE_LEN} bytes, got {len(nonce)}")
        return nonce

    def encrypt(self, nonce: bytes, aad: bytes, plaintext: bytes) -> bytes:
        """Return ciphertext followed by the authentication tag."""
        return self._impl.encrypt(self._check_nonce(nonce), bytes(plaintext), bytes(aad))

    def decrypt(self, nonce: bytes, aad: bytes, ciphertext: bytes) -> bytes:
        """Return the plaintext, raising ProxyError if authentication fails."""
        ciphertext = bytes(ciphertext)
        if len(ciphertext) < self.algorithm.tag_len:
            raise ProxyError("ciphertext shorter than the tag")
        try:
            return self._impl.decrypt(self._check_nonce(nonce), ciphertext, bytes(aad))
        except InvalidTag as exc:
            raise ProxyError("decryption failure") from exc


class Aes128Block:
    """Single-block AES-128 encryption and decryption."""

    def __init__(self, key: bytes) -> None:
        key = bytes(key)
        if len(key) != 16:
            raise ValueError(f"AES-128 needs a 16-byte key, got {len(key)}")
        self._cipher = Cipher(algorithms.AES(key), modes.ECB())

    @staticmethod
    def _check_block(block: bytes) -> bytes:
        block = bytes(block)
        if len(block) != _AES_BLOCK_LEN:
            raise ValueError(f"block must be {_AES_BLOCK_LEN} bytes, got {len(block)}")
        return block

    def encrypt_block(self, block: bytes) -> bytes:
        encryptor = self._cipher.encryptor()
        return encryptor.update(self._check_block(block)) + encryptor.finalize()

    def decrypt_block(self, block: bytes) -> bytes:
        decryptor = self._cipher.decryptor()
        return decryptor.update(self._check_block(block)) + decryptor.finalize()