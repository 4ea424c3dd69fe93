"""Routing rules that pick an outbound tag for a target address."""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from ipaddress import IPv4Address, IPv6Address, ip_address, ip_network
from pathlib import Path
from typing import Iterable, Iterator, Mapping

from vrelay.address import Address
from vrelay.common import ProxyError
from vrelay.ip_trie import GeoIPMatcher
from vrelay.options import default_geoip_path, default_geosite_path

log = logging.getLogger(__name__)

_TAG_TYPE_BITS = 3
_TAG_TYPE_MASK = (1 << _TAG_TYPE_BITS) - 1

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_LEN = 2
_WIRE_START_GROUP = 3
_WIRE_END_GROUP = 4
_WIRE_FIXED32 = 5

# Domain.Type values of the geosite format.
_GEOSITE_PLAIN = 0
_GEOSITE_REGEX = 1
_GEOSITE_DOMAIN = 2
_GEOSITE_FULL = 3


class MatchType(enum.Enum):
    """How a domain rule is compared with a queried domain."""

    FULL = "full"
    DOMAIN = "domain"
    SUBSTR = "substr"


class DomainMatcher:
    """Set of full, domain-suffix and substring rules."""

    def __init__(self) -> None:
        self._full: set[str] = set()
        self._domains: set[str] = set()
        self._substrs: list[str] = []

    def add(self, rule: str, match_type: MatchType) -> None:
        rule = rule.lower()
        if match_type is MatchType.FULL:
            self._full.add(rule)
        elif match_type is MatchType.DOMAIN:
            self._domains.add(rule)
        elif rule not in self._substrs:
            self._substrs.append(rule)

    def _suffixes(self, domain: str) -> Iterator[str]:
        yield domain
        start = domain.find(".")
        while start >= 0:
            yield domain[start + 1 :]
            start = domain.find(".", start + 1)

    def matches(self, domain: str) -> bool:
        """Return True if any rule accepts ``domain``."""
        domain = domain.lower()
        if domain in self._full:
            return True
        if self._domains and any(s in self._domains for s in self._suffixes(domain)):
            return True
        return any(sub in domain for sub in self._substrs)


@dataclass
class DomainRoutingRules:
    tag: str
    full_rules: list[str] = field(default_factory=list)
    domain_rules: list[str] = field(default_factory=list)
    regex_rules: list[str] = field(default_factory=list)
    substr_rules: list[str] = field(default_factory=list)
    use_mph: bool = False


@dataclass
class IpRoutingRules:
    tag: str
    cidr_rules: list[str] = field(default_factory=list)


@dataclass
class GeoSiteRules:
    tag: str
    rules: list[str] = field(default_factory=list)
    file_path: Path = field(default_factory=default_geosite_path)
    use_mph: bool = False


@dataclass
class GeoIpRules:
    tag: str
    rules: set[str] = field(default_factory=set)
    file_path: Path = field(default_factory=default_geoip_path)


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ProxyError("truncated varint")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift >= 70:
            raise ProxyError("varint too long")


def _iter_fields(data: bytes) -> Iterator[tuple[int, int | bytes]]:
    """Yield ``(field_number, value)`` pairs of an encoded protobuf message."""
    pos = 0
    end = len(data)
    while pos < end:
        key, pos = _read_varint(data, pos)
        wire_type = key & _TAG_TYPE_MASK
        field_number = key >> _TAG_TYPE_BITS
        if wire_type in (_WIRE_START_GROUP, _WIRE_END_GROUP):
            raise ProxyError(f"unsupported wire type: {wire_type}")
        if wire_type not in (_WIRE_VARINT, _WIRE_FIXED64, _WIRE_LEN, _WIRE_FIXED32):
            raise ProxyError(f"unexpected wire type: {wire_type}")
        if field_number == 0:
            raise ProxyError("unexpected field number: 0")
        if wire_type == _WIRE_VARINT:
            value, pos = _read_varint(data, pos)
            yield field_number, value
            continue
        if wire_type == _WIRE_LEN:
            length, pos = _read_varint(data, pos)
        else:
            length = 8 if wire_type == _WIRE_FIXED64 else 4
        if pos + length > end:
            raise ProxyError("truncated message")
        yield field_number, data[pos : pos + length]
        pos += length


def _decode_str(raw: int | bytes) -> str:
    if not isinstance(raw, bytes):
        raise ProxyError("expected a length-delimited string field")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ProxyError(f"invalid utf8 string: {exc}") from exc


def _read_file(path: Path | str, kind: str) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise ProxyError(f"open {kind} file {path} failed: {exc}") from exc


def _messages(data: bytes, number: int) -> Iterator[bytes]:
    for field_number, value in _iter_fields(data):
        if field_number == number and isinstance(value, bytes):
            yield value


class RouterBuilder:
    """Collects routing rules and builds a Router."""

    def __init__(self) -> None:
        self._domain_matchers: dict[str, DomainMatcher] = {}
        self._ip_matcher = GeoIPMatcher()
        self._regex_rules: dict[str, list[str]] = {}

    def add_regex_rules(self, outbound_tag: str, rules: Iterable[str]) -> None:
        self._regex_rules.setdefault(outbound_tag, []).extend(rules)

    def add_cidr_rules(self, outbound_tag: str, rules: Iterable[str]) -> None:
        for rule in rules:
            try:
                network = ip_network(rule.strip(), strict=False)
            except ValueError:
                log.warning("Add IP rule failed. Ignore invalid IP CIDR:%s", rule)
                continue
            if network.version == 4:
                self._ip_matcher.put_v4(
                    int(network.network_address), network.prefixlen, outbound_tag
                )
            else:
                self._ip_matcher.put_v6(
                    int(network.network_address), network.prefixlen, outbound_tag
                )

    def add_domain_rule(self, rule: str, outbound_tag: str, match_type: MatchType) -> None:
        self._domain_matchers.setdefault(outbound_tag, DomainMatcher()).add(rule, match_type)

    def read_geosite_file(self, path: Path | str, geosite_tags: Mapping[str, str]) -> None:
        """Load the domains of the selected site groups; keys are group names, values outbounds."""
        selected = {name.upper(): outbound for name, outbound in geosite_tags.items()}
        for outbound in selected.values():
            self._domain_matchers.setdefault(outbound, DomainMatcher())
        data = _read_file(path, "geosite")
        for group in _messages(data, 1):
            group_tag = ""
            domains: list[bytes] = []
            for number, value in _iter_fields(group):
                if number == 1:
                    group_tag = _decode_str(value)
                elif number == 2 and isinstance(value, bytes):
                    domains.append(value)
            outbound = selected.get(group_tag.upper())
            if outbound is None:
                continue
            for raw in domains:
                self._add_geosite_domain(raw, outbound)

    def _add_geosite_domain(self, raw: bytes, outbound: str) -> None:
        domain_type = _GEOSITE_PLAIN
        value = ""
        for number, item in _iter_fields(raw):
            if number == 1 and isinstance(item, int):
                domain_type = item
            elif number == 2:
                value = _decode_str(item)
        matcher = self._domain_matchers[outbound]
        if domain_type == _GEOSITE_PLAIN:
            matcher.add(value, MatchType.SUBSTR)
        elif domain_type == _GEOSITE_DOMAIN:
            matcher.add(value, MatchType.DOMAIN)
        elif domain_type == _GEOSITE_FULL:
            matcher.add(value, MatchType.FULL)
        else:
            self._regex_rules.setdefault(outbound, []).append(value)

    def read_geoip_file(
        self, path: Path | str, outbound_tag: str, geoip_tags: Iterable[str]
    ) -> None:
        """Load the CIDRs of the selected country codes, routing them to ``outbound_tag``."""
        wanted = {code.upper() for code in geoip_tags}
        data = _read_file(path, "geoip")
        for entry in _messages(data, 1):
            country_code = ""
            cidrs: list[bytes] = []
            for number, value in _iter_fields(entry):
                if number == 1:
                    country_code = _decode_str(value).upper()
                elif number == 2 and isinstance(value, bytes):
                    cidrs.append(value)
            if country_code not in wanted:
                continue
            for raw in cidrs:
                self._add_geoip_cidr(raw, outbound_tag)

    def _add_geoip_cidr(self, raw: bytes, outbound_tag: str) -> None:
        ip = b""
        prefix = 0
        for number, value in _iter_fields(raw):
            if number == 1 and isinstance(value, bytes):
                ip = value
            elif number == 2 and isinstance(value, int):
                prefix = value
        try:
            if len(ip) == 16:
                self._ip_matcher.put_v6(int.from_bytes(ip, "big"), prefix, outbound_tag)
            elif len(ip) == 4:
                self._ip_matcher.put_v4(int.from_bytes(ip, "big"), prefix, outbound_tag)
            else:
                log.debug("invalid ip length detected")
        except ValueError as exc:
            raise ProxyError(f"invalid geoip cidr: {exc}") from exc

    def build(self, default_outbound_tag: str) -> Router:
        regex_matchers: list[tuple[str, list[re.Pattern[str]]]] = []
        for outbound, rules in self._regex_rules.items():
            try:
                patterns = [re.compile(rule) for rule in rules]
            except re.error as exc:
                raise ProxyError(f"router builder build regex set failed:{exc}") from exc
            regex_matchers.append((outbound, patterns))
        return Router(
            domain_matchers=list(self._domain_matchers.items()),
            ip_matcher=self._ip_matcher,
            regex_matchers=regex_matchers,
            default_outbound_tag=default_outbound_tag,
        )


class Router:
    """Chooses an outbound tag for addresses."""

    def __init__(
        self,
        domain_matchers: list[tuple[str, DomainMatcher]],
        ip_matcher: GeoIPMatcher,
        regex_matchers: list[tuple[str, list[re.Pattern[str]]]],
        default_outbound_tag: str,
    ) -> None:
        self._domain_matchers = domain_matchers
        self._ip_matcher = ip_matcher
        self._regex_matchers = regex_matchers
        self.default_outbound_tag = default_outbound_tag

    def match_ip(self, ip: IPv4Address | IPv6Address | str) -> str:
        if isinstance(ip, str):
            ip = ip_address(ip)
        if isinstance(ip, IPv4Address):
            found = self._ip_matcher.match4(ip)
        else:
            found = self._ip_matcher.match6(ip)
        return found or self.default_outbound_tag

    def match_addr(self, addr: Address) -> str:
        if not isinstance(addr.host, str):
            return self.match_ip(addr.host)
        domain = addr.host
        for tag, matcher in self._domain_matchers:
            if matcher.matches(domain):
                return tag
        for tag, patterns in self._regex_matchers:
            if any(pattern.search(domain) for pattern in patterns):
                return tag
        return self.default_outbound_tag


def build_router(
    domain_rules: Iterable[DomainRoutingRules],
    ip_rules: Iterable[IpRoutingRules],
    geosite_rules: Iterable[GeoSiteRules],
    geoip_rules: Iterable[GeoIpRules],
    default_outbound_tag: str,
) -> Router:
    """Build a Router from every kind of routing rule."""
    builder = RouterBuilder()
    for rules in domain_rules:
        for rule in rules.full_rules:
            builder.add_domain_rule(rule, rules.tag, MatchType.FULL)
        for rule in rules.domain_rules:
            builder.add_domain_rule(rule, rules.tag, MatchType.DOMAIN)
        for rule in rules.substr_rules:
            builder.add_domain_rule(rule, rules.tag, MatchType.SUBSTR)
        builder.add_regex_rules(rules.tag, rules.regex_rules)
    for rules in ip_rules:
        builder.add_cidr_rules(rules.tag, rules.cidr_rules)
    for rules in geosite_rules:
        tags = {name.upper(): rules.tag for name in rules.rules}
        builder.read_geosite_file(rules.file_path, tags)
    for rules in geoip_rules:
        builder.read_geoip_file(rules.file_path, rules.tag, rules.rules)
    return builder.build(default_outbound_tag)