"""Binary prefix tries for longest-prefix IP matching."""

from __future__ import annotations

from ipaddress import IPv4Address, IPv6Address

_IPV4_BITS = 32
_IPV6_BITS = 128


def normalize(ip: int, prefix: int, bits: int) -> int:
    """Clear every bit of ``ip`` below the top ``prefix`` bits of a ``bits``-wide value."""
    if not 0 <= prefix <= bits:
        raise ValueError(f"prefix {prefix} out of range for a {bits}-bit address")
    shift = bits - prefix
    return (int(ip) >> shift) << shift


class _Node:
    __slots__ = ("children", "value")

    def __init__(self) -> None:
        self.children: list[_Node | None] = [None, None]
        self.value: int | None = None


class PatriciaTrie:
    """Bitwise trie mapping address prefixes to integer values."""

    def __init__(self, bits: int) -> None:
        if bits <= 0:
            raise ValueError("trie width must be positive")
        self.bits = bits
        self._root = _Node()

    def _walk_bits(self, key: int, depth: int):
        for shift in range(self.bits - 1, self.bits - 1 - depth, -1):
            yield (key >> shift) & 1

    def _check_key(self, key: int) -> int:
        key = int(key)
        if not 0 <= key < (1 << self.bits):
            raise ValueError(f"key out of range for a {self.bits}-bit trie")
        return key

    def put(self, key: int, prefix: int, value: int) -> None:
        """Store ``value`` for the top ``prefix`` bits of ``key``."""
        key = self._check_key(key)
        if not 0 <= prefix <= self.bits:
            raise ValueError(f"prefix {prefix} out of range for a {self.bits}-bit trie")
        node = self._root
        for bit in self._walk_bits(key, prefix):
            child = node.children[bit]
            if child is None:
                child = _Node()
                node.children[bit] = child
            node = child
        node.value = value

    def get(self, key: int) -> int | None:
        """Return the value of the longest stored prefix of ``key``, or None."""
        key = self._check_key(key)
        found: int | None = None
        node: _Node | None = self._root
        for bit in self._walk_bits(key, self.bits):
            if node.value is not None:
                found = node.value
            node = node.children[bit]
            if node is None:
                return found
        if node.value is not None:
            found = node.value
        return found


class GeoIPMatcher:
    """Maps IPv4 and IPv6 prefixes to outbound tags."""

    def __init__(self) -> None:
        self._trie4 = PatriciaTrie(_IPV4_BITS)
        self._trie6 = PatriciaTrie(_IPV6_BITS)
        self._outbounds: list[str] = []

    def _outbound_pos(self, outbound: str) -> int:
        try:
            return self._outbounds.index(outbound)
        except ValueError:
            self._outbounds.append(outbound)
            return len(self._outbounds) - 1

    def put_v4(self, ip: int | IPv4Address, prefix: int, outbound: str) -> None:
        pos = self._outbound_pos(outbound)
        self._trie4.put(normalize(int(ip), prefix, _IPV4_BITS), prefix, pos)

    def put_v6(self, ip: int | IPv6Address, prefix: int, outbound: str) -> None:
        pos = self._outbound_pos(outbound)
        self._trie6.put(normalize(int(ip), prefix, _IPV6_BITS), prefix, pos)

    def match4(self, ip: int | IPv4Address) -> str:
        """Return the outbound for ``ip``, or an empty string when nothing matches."""
        pos = self._trie4.get(int(ip))
        return "" if pos is None else self._outbounds[pos]

    def match6(self, ip: int | IPv6Address) -> str:
        """Return the outbound for ``ip``, or an empty string when nothing matches."""
        pos = self._trie6.get(int(ip))
        return "" if pos is None else self._outbounds[pos]