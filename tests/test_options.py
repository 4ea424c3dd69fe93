import uuid
from ipaddress import IPv4Address

import pytest

from vrelay import options
from vrelay.address import Address
from vrelay.common import ProxyError
from vrelay.options import (
    DEFAULT_GRPC_PATH,
    CipherKind,
    EarlyDataUri,
    default_geoip_path,
    default_geosite_path,
    default_random_string,
    default_v2ray_asset_path,
    grpc_path,
    is_valid_dns_id,
    parse_address,
    parse_cipher_kind,
    parse_http_method,
    parse_path,
    parse_security_num,
    parse_sni,
    parse_uuid,
)


def test_ws_uri_from_source():
    e = EarlyDataUri.parse("ws://example.com/?ed=2048")
    assert e.early_data_header_name
    assert e.max_early_data == 2048
    e = EarlyDataUri.parse("ws://example.com/?key=xx&ed=20488")
    assert e.early_data_header_name
    assert e.max_early_data == 20488
    e = EarlyDataUri.parse("ws://example.com/?key=xx&ed=20488&n=q")
    assert e.early_data_header_name
    assert e.max_early_data == 20488


def test_ws_uri_strips_ed_from_query():
    assert EarlyDataUri.parse("ws://example.com/?ed=2048").uri == "ws://example.com/?"
    assert (
        EarlyDataUri.parse("ws://example.com/?key=xx&ed=20488&n=q").uri
        == "ws://example.com/?key=xx&&n=q"
    )
    assert "ed=" not in EarlyDataUri.parse("ws://example.com/p?key=xx&ed=5").uri


def test_ws_uri_without_ed():
    e = EarlyDataUri.parse("ws://example.com/path?key=xx")
    assert e.uri == "ws://example.com/path?key=xx"
    assert e.early_data_header_name == ""
    assert e.max_early_data == 0


def test_ws_uri_zero_early_data():
    with pytest.raises(ProxyError):
        EarlyDataUri.parse("ws://example.com/?ed=0")


def test_ws_uri_bad_early_data():
    with pytest.raises(ProxyError):
        EarlyDataUri.parse("ws://example.com/?ed=abc")


def test_ws_uri_invalid():
    with pytest.raises(ProxyError):
        EarlyDataUri.parse("ws://exa mple.com/")


def test_is_valid_dns_id_from_source():
    assert not is_valid_dns_id(b"*.google.com")
    assert not is_valid_dns_id(b".google.com")
    assert is_valid_dns_id(b"google.com")
    assert not is_valid_dns_id(b"google.*.com")
    assert not is_valid_dns_id(b"google*.com")
    assert not is_valid_dns_id(b"google*sd.com")
    assert not is_valid_dns_id(b"*googlesd.com")


def test_is_valid_dns_id_more_cases():
    assert not is_valid_dns_id("")
    assert not is_valid_dns_id("example-.com")
    assert not is_valid_dns_id("-example.com")
    assert not is_valid_dns_id("example.123")
    assert is_valid_dns_id("123.example")
    assert not is_valid_dns_id("a" * 64 + ".com")
    assert is_valid_dns_id("a" * 63 + ".com")
    assert not is_valid_dns_id("a" * 254)


def test_parse_sni():
    assert parse_sni("example.com") == "example.com"
    with pytest.raises(ValueError, match="Not a valid sni string"):
        parse_sni("*.example.com")


@pytest.mark.parametrize(
    "name, kind",
    [
        ("none", CipherKind.NONE),
        ("plain", CipherKind.NONE),
        ("aes-128-gcm", CipherKind.AES_128_GCM),
        ("aes-256-gcm", CipherKind.AES_256_GCM),
        ("chacha20-ietf-poly1305", CipherKind.CHACHA20_POLY1305),
        ("chacha20-poly1305", CipherKind.CHACHA20_POLY1305),
    ],
)
def test_parse_cipher_kind(name, kind):
    assert parse_cipher_kind(name) is kind


def test_parse_cipher_kind_wrong():
    with pytest.raises(ValueError, match="wrong ss encryption method"):
        parse_cipher_kind("rc4-md5")


def test_parse_address():
    assert parse_address("127.0.0.1:1080") == Address(IPv4Address("127.0.0.1"), 1080)
    assert parse_address("example.com:443") == Address("example.com", 443)
    with pytest.raises(ValueError):
        parse_address("example.com:notaport")


def test_parse_security_num():
    assert parse_security_num("aes-128-gcm") == 0x03
    assert parse_security_num("chacha20-poly1305") == 0x04


@pytest.mark.parametrize("name", ["none", "zero"])
def test_parse_security_num_unsupported(name):
    with pytest.raises(ValueError, match="not support vmess security type"):
        parse_security_num(name)


def test_parse_security_num_unknown():
    with pytest.raises(ValueError, match="unknown vmess security type"):
        parse_security_num("aes-256-cfb")


def test_parse_security_num_auto(monkeypatch):
    monkeypatch.setattr(options.platform, "machine", lambda: "x86_64")
    assert parse_security_num("auto") == 0x03
    monkeypatch.setattr(options.platform, "machine", lambda: "armv7l")
    assert parse_security_num("auto") == 0x04


def test_parse_uuid_round_trip():
    text = "b831381d-6324-4d53-ad4f-8cda48b30811"
    assert str(parse_uuid(text)) == text


def test_parse_uuid_invalid():
    with pytest.raises(ValueError):
        parse_uuid("not-a-uuid")


def test_parse_path():
    assert parse_path("/ws?x=1") == "/ws?x=1"
    assert parse_path("") == "/"
    assert parse_path("/a#frag") == "/a"
    with pytest.raises(ValueError):
        parse_path("/a b")


def test_grpc_path():
    assert grpc_path("GunService") == DEFAULT_GRPC_PATH
    assert grpc_path("svc") == "/svc/Tun"
    with pytest.raises(ValueError):
        grpc_path("bad name")


def test_parse_http_method():
    assert parse_http_method("PUT") == "PUT"
    assert parse_http_method("POST") == "POST"
    with pytest.raises(ValueError):
        parse_http_method("")
    with pytest.raises(ValueError):
        parse_http_method("GE T")


def test_default_random_string_is_uuid():
    a = default_random_string()
    b = default_random_string()
    assert str(uuid.UUID(a)) == a
    assert a != b


def test_asset_path_from_env(monkeypatch, tmp_path):
    monkeypatch.delenv("v2ray.location.asset", raising=False)
    monkeypatch.setenv("V2RAY_LOCATION_ASSET", str(tmp_path))
    assert default_v2ray_asset_path("x.dat") == tmp_path / "x.dat"
    assert default_geosite_path() == tmp_path / "geosite.dat"
    assert default_geoip_path() == tmp_path / "geoip.dat"


def test_asset_path_dotted_env_wins(monkeypatch, tmp_path):
    first = tmp_path / "first"
    second = tmp_path / "second"
    monkeypatch.setenv("v2ray.location.asset", str(first))
    monkeypatch.setenv("V2RAY_LOCATION_ASSET", str(second))
    assert default_geoip_path() == first / "geoip.dat"


def test_asset_path_fallback_has_file_name(monkeypatch):
    monkeypatch.delenv("v2ray.location.asset", raising=False)
    monkeypatch.delenv("V2RAY_LOCATION_ASSET", raising=False)
    path = default_v2ray_asset_path("geosite.dat")
    assert path.name == "geosite.dat"
    assert path.is_absolute()