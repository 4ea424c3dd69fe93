"""Configuration file loading and outbound chain assembly."""

from __future__ import annotations

import enum
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

from vrelay.address import Address
from vrelay.common import ProxyError
from vrelay.options import (
    DEFAULT_BACKLOG,
    DEFAULT_GRPC_PATH,
    DEFAULT_HTTP2_METHOD,
    DEFAULT_RELAY_BUFFER_SIZE,
    EarlyDataUri,
    default_geoip_path,
    default_geosite_path,
    default_random_string,
    grpc_path,
    parse_cipher_kind,
    parse_http_method,
    parse_path,
    parse_security_num,
    parse_sni,
    parse_uuid,
)
from vrelay.route import (
    DomainRoutingRules,
    GeoIpRules,
    GeoSiteRules,
    IpRoutingRules,
    Router,
    build_router,
)

_MISSING = object()
_U32_MAX = 0xFFFFFFFF


class ProtocolType(enum.Enum):
    """Outbound protocols, in the order their tags are registered."""

    SS = "ss"
    TLS = "tls"
    VMESS = "vmess"
    WS = "ws"
    TROJAN = "trojan"
    DIRECT = "direct"
    H2 = "h2"
    GRPC = "grpc"
    BLACKHOLE = "blackhole"


# Protocols that carry the address of the next hop inside their own handshake.
_ADDRESSED = frozenset({ProtocolType.TROJAN, ProtocolType.SS, ProtocolType.VMESS})


@dataclass(frozen=True)
class ChainLink:
    """One protocol layer of an outbound chain."""

    protocol: ProtocolType
    tag: str
    settings: dict[str, Any] = field(default_factory=dict)
    target: Address | None = None


@dataclass(frozen=True)
class OutboundChain:
    """An outbound: the first server to dial, the layers on top, and the final proxy layer."""

    tag: str
    remote_addr: Address | None
    links: tuple[ChainLink, ...]
    last_link: ChainLink | None


@dataclass(frozen=True)
class _ProxySpec:
    protocol: ProtocolType
    tag: str
    addr: Address | None
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class _OutboundSpec:
    tag: str
    chain: list[str]


@dataclass(frozen=True)
class _Inbound:
    addr: Address
    enable_udp: bool
    tag: str


@dataclass(frozen=True)
class _DokodemoDoor:
    addr: Address
    target_addr: Address | None
    tproxy: bool


def _non_negative(value: int) -> int:
    if value < 0:
        raise ValueError(f"expected a non-negative integer, got {value}")
    return value


def _u32(value: int) -> int:
    if not 0 <= value <= _U32_MAX:
        raise ValueError(f"expected an unsigned 32-bit integer, got {value}")
    return value


class _Table:
    """Typed access to one TOML table."""

    def __init__(self, data: object, where: str) -> None:
        if not isinstance(data, Mapping):
            raise ProxyError(f"invalid type for {where}: expected a table")
        self._data = data
        self.where = where

    def get(
        self,
        key: str,
        kind: type | tuple[type, ...],
        default: Any = _MISSING,
        convert: Callable[[Any], Any] | None = None,
    ) -> Any:
        if key not in self._data:
            if default is _MISSING:
                raise ProxyError(f"missing field `{key}` in {self.where}")
            return default() if callable(default) else default
        value = self._data[key]
        if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
            raise ProxyError(f"invalid type for `{key}` in {self.where}")
        if convert is None:
            return value
        try:
            return convert(value)
        except (ValueError, ProxyError) as exc:
            raise ProxyError(f"invalid `{key}` in {self.where}: {exc}") from exc

    def strings(self, key: str, default: Any = _MISSING) -> list[str]:
        values = self.get(key, list, default)
        if not all(isinstance(value, str) for value in values):
            raise ProxyError(f"invalid type for `{key}` in {self.where}: expected strings")
        return list(values)

    def string_map(self, key: str) -> dict[str, str]:
        values = self.get(key, Mapping, dict)
        if not all(isinstance(k, str) and isinstance(v, str) for k, v in values.items()):
            raise ProxyError(f"invalid type for `{key}` in {self.where}: expected strings")
        return dict(values)

    def tables(self, key: str) -> list[_Table]:
        items = self.get(key, list, list)
        return [_Table(item, f"{key}[{index}]") for index, item in enumerate(items)]


def _parse_ss(t: _Table) -> _ProxySpec:
    return _ProxySpec(
        ProtocolType.SS,
        t.get("tag", str),
        t.get("addr", str, convert=Address.parse),
        {
            "password": t.get("password", str),
            "method": t.get("method", str, convert=parse_cipher_kind),
        },
    )


def _parse_tls(t: _Table) -> _ProxySpec:
    return _ProxySpec(
        ProtocolType.TLS,
        t.get("tag", str),
        None,
        {
            "sni": t.get("sni", str, convert=parse_sni),
            "cert_file": t.get("cert_file", str, None),
            "verify_hostname": t.get("verify_hostname", bool, True),
            "verify_sni": t.get("verify_sni", bool, True),
        },
    )


def _parse_vmess(t: _Table) -> _ProxySpec:
    return _ProxySpec(
        ProtocolType.VMESS,
        t.get("tag", str),
        t.get("addr", str, convert=Address.parse),
        {
            "uuid": t.get("uuid", str, convert=parse_uuid),
            "security_num": t.get("method", str, convert=parse_security_num),
            "alter_id": 0,
        },
    )


def _parse_ws(t: _Table) -> _ProxySpec:
    uri: EarlyDataUri = t.get("uri", str, convert=EarlyDataUri.parse)
    header_name = t.get("early_data_header_name", str, "")
    max_early_data = t.get("max_early_data", int, 0, convert=_non_negative)
    # Early data given in the URI query takes precedence over the explicit fields.
    if uri.max_early_data > 0:
        max_early_data, header_name = uri.max_early_data, uri.early_data_header_name
    elif not (max_early_data > 0 and header_name):
        max_early_data, header_name = 0, ""
    return _ProxySpec(
        ProtocolType.WS,
        t.get("tag", str),
        None,
        {
            "uri": uri.uri,
            "max_early_data": max_early_data,
            "early_data_header_name": header_name,
            "headers": t.string_map("headers"),
        },
    )


def _parse_trojan(t: _Table) -> _ProxySpec:
    return _ProxySpec(
        ProtocolType.TROJAN,
        t.get("tag", str),
        t.get("addr", str, convert=Address.parse),
        {"password": t.get("password", str)},
    )


def _parse_direct(t: _Table) -> _ProxySpec:
    return _ProxySpec(ProtocolType.DIRECT, t.get("tag", str), None)


def _parse_blackhole(t: _Table) -> _ProxySpec:
    return _ProxySpec(ProtocolType.BLACKHOLE, t.get("tag", str), None)


def _parse_h2(t: _Table) -> _ProxySpec:
    return _ProxySpec(
        ProtocolType.H2,
        t.get("tag", str),
        None,
        {
            "hosts": t.strings("hosts"),
            "headers": t.string_map("headers"),
            "method": t.get("method", str, DEFAULT_HTTP2_METHOD, convert=parse_http_method),
            "path": t.get("path", str, convert=parse_path),
        },
    )


def _parse_grpc(t: _Table) -> _ProxySpec:
    return _ProxySpec(
        ProtocolType.GRPC,
        t.get("tag", str),
        None,
        {
            "host": t.get("host", str),
            "path": t.get("service_name", str, DEFAULT_GRPC_PATH, convert=grpc_path),
        },
    )


_PARSERS: dict[ProtocolType, Callable[[_Table], _ProxySpec]] = {
    ProtocolType.SS: _parse_ss,
    ProtocolType.TLS: _parse_tls,
    ProtocolType.VMESS: _parse_vmess,
    ProtocolType.WS: _parse_ws,
    ProtocolType.TROJAN: _parse_trojan,
    ProtocolType.DIRECT: _parse_direct,
    ProtocolType.H2: _parse_h2,
    ProtocolType.GRPC: _parse_grpc,
    ProtocolType.BLACKHOLE: _parse_blackhole,
}


@dataclass
class Config:
    """A parsed configuration file."""

    outbounds: list[_OutboundSpec]
    inbounds: list[_Inbound]
    proxies: dict[ProtocolType, list[_ProxySpec]] = field(default_factory=dict)
    dokodemo: list[_DokodemoDoor] = field(default_factory=list)
    domain_routing_rules: list[DomainRoutingRules] = field(default_factory=list)
    ip_routing_rules: list[IpRoutingRules] = field(default_factory=list)
    geosite_rules: list[GeoSiteRules] = field(default_factory=list)
    geoip_rules: list[GeoIpRules] = field(default_factory=list)
    enable_api_server: bool = False
    relay_buffer_size: int = DEFAULT_RELAY_BUFFER_SIZE
    api_server_addr: Address = field(default_factory=Address.dummy)
    backlog: int = DEFAULT_BACKLOG
    default_outbound: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Config:
        """Build a Config from the decoded contents of a configuration file."""
        root = _Table(data, "config")
        proxies = {
            protocol: [parser(t) for t in root.tables(protocol.value)]
            for protocol, parser in _PARSERS.items()
        }
        outbounds = [
            _OutboundSpec(tag=t.get("tag", str), chain=t.strings("chain"))
            for t in root.tables("outbounds")
        ] if "outbounds" in data else root.get("outbounds", list)
        inbounds = [
            _Inbound(
                addr=t.get("addr", str, convert=Address.parse),
                enable_udp=t.get("enable_udp", bool, False),
                tag=t.get("tag", str, default_random_string),
            )
            for t in root.tables("inbounds")
        ] if "inbounds" in data else root.get("inbounds", list)
        dokodemo = [
            _DokodemoDoor(
                addr=t.get("addr", str, convert=Address.parse),
                target_addr=t.get("target_addr", str, None, convert=Address.parse),
                tproxy=t.get("tproxy", bool, False),
            )
            for t in root.tables("dokodemo")
        ]
        domain_rules = [
            DomainRoutingRules(
                tag=t.get("tag", str),
                full_rules=t.strings("full_rules", list),
                domain_rules=t.strings("domain_rules", list),
                regex_rules=t.strings("regex_rules", list),
                substr_rules=t.strings("substr_rules", list),
                use_mph=t.get("use_mph", bool, False),
            )
            for t in root.tables("domain_routing_rules")
        ]
        ip_rules = [
            IpRoutingRules(tag=t.get("tag", str), cidr_rules=t.strings("cidr_rules"))
            for t in root.tables("ip_routing_rules")
        ]
        geosite_rules = [
            GeoSiteRules(
                tag=t.get("tag", str),
                rules=t.strings("rules"),
                file_path=t.get("file_path", str, default_geosite_path, convert=Path),
                use_mph=t.get("use_mph", bool, False),
            )
            for t in root.tables("geosite_rules")
        ]
        geoip_rules = [
            GeoIpRules(
                tag=t.get("tag", str),
                rules=set(t.strings("rules")),
                file_path=t.get("file_path", str, default_geoip_path, convert=Path),
            )
            for t in root.tables("geoip_rules")
        ]
        return cls(
            outbounds=outbounds,
            inbounds=inbounds,
            proxies=proxies,
            dokodemo=dokodemo,
            domain_routing_rules=domain_rules,
            ip_routing_rules=ip_rules,
            geosite_rules=geosite_rules,
            geoip_rules=geoip_rules,
            enable_api_server=root.get("enable_api_server", bool, False),
            relay_buffer_size=root.get(
                "relay_buffer_size", int, DEFAULT_RELAY_BUFFER_SIZE, convert=_non_negative
            ),
            api_server_addr=root.get(
                "api_server_addr", str, Address.dummy, convert=Address.parse
            ),
            backlog=root.get("backlog", int, DEFAULT_BACKLOG, convert=_u32),
            default_outbound=root.get("default_outbound", str, ""),
        )

    @classmethod
    def read_from_file(cls, path: str | Path) -> Config:
        """Read and parse a TOML configuration file."""
        raw = Path(path).read_bytes()
        try:
            text = raw.decode("utf-8")
            data = tomllib.loads(text)
        except (UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
            raise ProxyError(f"invalid config file {path}: {exc}") from exc
        return cls.from_dict(data)

    @property
    def default_outbound_tag(self) -> str:
        """The configured default outbound, or the first outbound when none is set."""
        if self.default_outbound:
            return self.default_outbound
        return self.outbounds[0].tag if self.outbounds else ""

    def _specs_by_tag(self) -> dict[str, _ProxySpec]:
        specs: dict[str, _ProxySpec] = {}
        for protocol in ProtocolType:
            for spec in self.proxies.get(protocol, []):
                specs[spec.tag] = spec
        return specs

    def build_chains(self) -> dict[str, OutboundChain]:
        """Resolve every outbound's chain of tags into protocol layers."""
        specs = self._specs_by_tag()
        chains: dict[str, OutboundChain] = {}
        for out in self.outbounds:
            remote: Address | None = None
            hop_addrs: list[Address] = []
            for tag in out.chain:
                spec = specs.get(tag)
                if spec is None:
                    raise ProxyError(
                        f"config parse failed, can't find chain tag `{tag}` "
                        f"in outbound `{out.tag}`"
                    )
                if spec.addr is not None:
                    if remote is None:
                        remote = spec.addr
                        continue
                    hop_addrs.append(spec.addr)
            next_hops = iter(hop_addrs)
            links: list[ChainLink] = []
            last: ChainLink | None = None
            for tag in out.chain:
                spec = specs[tag]
                if spec.protocol in _ADDRESSED:
                    target = next(next_hops, None)
                    link = ChainLink(spec.protocol, spec.tag, spec.settings, target)
                    if target is None:
                        last = link
                    else:
                        links.append(link)
                else:
                    links.append(ChainLink(spec.protocol, spec.tag, spec.settings))
            chains[out.tag] = OutboundChain(out.tag, remote, tuple(links), last)
        if self.default_outbound_tag not in chains:
            raise ProxyError(
                "missing default outbound tag or default outbound tag is not in outbounds"
            )
        return chains

    def build_router(self) -> Router:
        """Build the router from every routing rule, falling back to the default outbound."""
        return build_router(
            self.domain_routing_rules,
            self.ip_routing_rules,
            self.geosite_rules,
            self.geoip_rules,
            self.default_outbound_tag,
        )