import uuid

import pytest

from vrelay.address import Address
from vrelay.common import ProxyError
from vrelay.config import Config, ProtocolType
from vrelay.options import CipherKind

VMESS_ID = "00000000-0000-4000-8000-000000000001"


def _base(**extra):
    data = {
        "outbounds": [{"tag": "out", "chain": ["d"]}],
        "inbounds": [{"addr": "127.0.0.1:1080"}],
        "direct": [{"tag": "d"}],
    }
    data.update(extra)
    return data


def test_defaults():
    cfg = Config.from_dict(_base())
    assert cfg.relay_buffer_size == 20
    assert cfg.backlog == 4096
    assert cfg.api_server_addr == Address.dummy()
    assert cfg.enable_api_server is False
    assert cfg.default_outbound_tag == "out"


def test_inbound_defaults():
    cfg = Config.from_dict(_base())
    inbound = cfg.inbounds[0]
    assert inbound.addr == Address.parse("127.0.0.1:1080")
    assert inbound.enable_udp is False
    assert str(uuid.UUID(inbound.tag)) == inbound.tag


def test_missing_outbounds():
    data = _base()
    del data["outbounds"]
    with pytest.raises(ProxyError, match="outbounds"):
        Config.from_dict(data)


def test_wrong_ss_method():
    data = _base(ss=[{"tag": "s", "addr": "1.2.3.4:8388", "password": "password", "method": "rc4"}])
    with pytest.raises(ProxyError, match="wrong ss encryption method"):
        Config.from_dict(data)


def test_ss_method_parsed():
    data = _base(ss=[{"tag": "s", "addr": "1.2.3.4:8388", "password": "password", "method": "plain"}])
    cfg = Config.from_dict(data)
    assert cfg.proxies[ProtocolType.SS][0].settings["method"] is CipherKind.NONE


def test_vmess_none_rejected():
    data = _base(vmess=[{"tag": "v", "addr": "1.2.3.4:443", "uuid": VMESS_ID, "method": "none"}])
    with pytest.raises(ProxyError, match="not support vmess security type"):
        Config.from_dict(data)


def test_bad_type():
    with pytest.raises(ProxyError, match="relay_buffer_size"):
        Config.from_dict(_base(relay_buffer_size="x"))


def test_invalid_sni():
    with pytest.raises(ProxyError, match="sni"):
        Config.from_dict(_base(tls=[{"tag": "t", "sni": "*.example.com"}]))


def test_chain_tls_ws_vmess():
    data = _base(
        outbounds=[{"tag": "out", "chain": ["t", "w", "v"]}],
        tls=[{"tag": "t", "sni": "example.com"}],
        ws=[{"tag": "w", "uri": "ws://example.com/path"}],
        vmess=[{"tag": "v", "addr": "1.2.3.4:443", "uuid": VMESS_ID, "method": "aes-128-gcm"}],
    )
    chain = Config.from_dict(data).build_chains()["out"]
    assert chain.remote_addr == Address.parse("1.2.3.4:443")
    assert [link.protocol for link in chain.links] == [ProtocolType.TLS, ProtocolType.WS]
    assert chain.last_link.protocol is ProtocolType.VMESS
    assert chain.last_link.target is None
    assert chain.last_link.settings["uuid"] == uuid.UUID(VMESS_ID)


def test_chain_two_shadowsocks_hops():
    data = _base(
        outbounds=[{"tag": "out", "chain": ["a", "b"]}],
        ss=[
            {"tag": "a", "addr": "1.1.1.1:8388", "password": "password", "method": "aes-128-gcm"},
            {"tag": "b", "addr": "2.2.2.2:8388", "password": "password", "method": "aes-256-gcm"},
        ],
    )
    chain = Config.from_dict(data).build_chains()["out"]
    assert chain.remote_addr == Address.parse("1.1.1.1:8388")
    assert len(chain.links) == 1
    assert chain.links[0].tag == "a"
    assert chain.links[0].target == Address.parse("2.2.2.2:8388")
    assert chain.last_link.tag == "b"


def test_missing_chain_tag():
    data = _base(outbounds=[{"tag": "out", "chain": ["nope"]}])
    with pytest.raises(ProxyError, match="can't find chain tag `nope` in outbound `out`"):
        Config.from_dict(data).build_chains()


def test_default_outbound_not_in_outbounds():
    cfg = Config.from_dict(_base(default_outbound="other"))
    with pytest.raises(ProxyError, match="missing default outbound"):
        cfg.build_chains()


def test_ws_early_data_from_uri():
    data = _base(ws=[{"tag": "w", "uri": "ws://example.com/?ed=2048"}])
    settings = Config.from_dict(data).proxies[ProtocolType.WS][0].settings
    assert settings["max_early_data"] == 2048
    assert settings["early_data_header_name"] == "Sec-WebSocket-Protocol"
    assert "ed=" not in settings["uri"]


def test_ws_early_data_from_fields():
    data = _base(ws=[
        {"tag": "w", "uri": "ws://example.com/", "max_early_data": 1024,
         "early_data_header_name": "X-Early"},
        {"tag": "w2", "uri": "ws://example.com/", "max_early_data": 1024},
    ])
    first, second = Config.from_dict(data).proxies[ProtocolType.WS]
    assert (first.settings["max_early_data"], first.settings["early_data_header_name"]) == (1024, "X-Early")
    assert (second.settings["max_early_data"], second.settings["early_data_header_name"]) == (0, "")


def test_grpc_paths():
    data = _base(grpc=[{"tag": "g", "host": "example.com"},
                       {"tag": "g2", "host": "example.com", "service_name": "svc"}])
    first, second = Config.from_dict(data).proxies[ProtocolType.GRPC]
    assert first.settings["path"] == "/GunService/Tun"
    assert second.settings["path"] == "/svc/Tun"


def test_h2_default_method():
    data = _base(h2=[{"tag": "h", "hosts": ["example.com"], "path": "/tunnel"}])
    settings = Config.from_dict(data).proxies[ProtocolType.H2][0].settings
    assert settings["method"] == "PUT"
    assert settings["path"] == "/tunnel"


def test_dokodemo_parsed():
    data = _base(dokodemo=[{"addr": "127.0.0.1:12345", "target_addr": "example.com:443"}])
    door = Config.from_dict(data).dokodemo[0]
    assert door.addr == Address.parse("127.0.0.1:12345")
    assert door.target_addr == Address.parse("example.com:443")
    assert door.tproxy is False


def test_read_from_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        'default_outbound = "out"\n'
        "[[inbounds]]\naddr = \"127.0.0.1:1080\"\ntag = \"in\"\n"
        "[[direct]]\ntag = \"d\"\n"
        "[[outbounds]]\ntag = \"out\"\nchain = [\"d\"]\n"
    )
    cfg = Config.read_from_file(path)
    assert cfg.inbounds[0].tag == "in"
    assert list(cfg.build_chains()) == ["out"]


def test_read_invalid_toml(tmp_path):
    path = tmp_path / "bad.toml"
    path.write_text("this is = = not toml")
    with pytest.raises(ProxyError):
        Config.read_from_file(path)


def test_build_router():
    data = _base(
        outbounds=[{"tag": "out", "chain": ["d"]}, {"tag": "proxy", "chain": ["d"]}],
        domain_routing_rules=[{"tag": "proxy", "domain_rules": ["example.com"]}],
        ip_routing_rules=[{"tag": "proxy", "cidr_rules": ["10.0.0.0/8"]}],
    )
    router = Config.from_dict(data).build_router()
    assert router.match_addr(Address.parse("www.example.com:443")) == "proxy"
    assert router.match_addr(Address.parse("other.org:443")) == "out"
    assert router.match_addr(Address.parse("10.1.2.3:80")) == "proxy"