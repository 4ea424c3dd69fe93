# vrelay

vrelay is a proxy relay driven by a single TOML file. It reads a
configuration of inbounds, outbound protocol chains and routing rules,
decides for each destination which outbound to use, and relays TCP
traffic from transparent (dokodemo-door) listeners.

## Installation

```
pip install vrelay
```

## Running

Check that a configuration file parses and that its fields are valid,
without starting anything:

```
vrelay -c config.toml -t
```

Run the listeners of a configuration file:

```
vrelay -c config.toml
```

When running, vrelay also resolves every outbound chain and builds the
router, so an unknown chain tag or a missing default outbound is reported
at that point. It exits with status 1 and prints the error when the file
cannot be read or is invalid.

## Configuration

```toml
default_outbound = "out"

[[dokodemo]]
addr = "127.0.0.1:12345"
tproxy = false

[[dokodemo]]
addr = "127.0.0.1:12346"
target_addr = "192.0.2.10:80"

[[direct]]
tag = "direct"

[[blackhole]]
tag = "drop"

[[outbounds]]
chain = ["direct"]
tag = "out"

[[outbounds]]
chain = ["drop"]
tag = "blocked"

[[domain_routing_rules]]
tag = "blocked"
full_rules = ["ads.example.com"]
domain_rules = ["tracker.example.com"]
substr_rules = ["doubleclick"]
regex_rules = ["^metrics[0-9]+\\.example\\.com$"]

[[ip_routing_rules]]
tag = "blocked"
cidr_rules = ["10.0.0.0/8", "fd00::/8"]
```

Notes on the fields:

- Protocol tables are `ss`, `tls`, `vmess`, `ws`, `trojan`, `direct`,
  `h2`, `grpc` and `blackhole`; each entry has a `tag`. An outbound's
  `chain` lists such tags in order.
- `default_outbound` falls back to the first entry of `outbounds` when it
  is omitted; it must name an existing outbound.
- `relay_buffer_size` (default `20`) is the relay buffer size in KiB;
  `backlog` (default `4096`) is the listen backlog.
- A `dokodemo` entry with `target_addr` forwards every connection to that
  address. Without it, the connection's local address (the original
  destination when `tproxy = true` on Linux) is routed through the rules.
- Domain rules are tried in the order their outbound tags first appear,
  then regular expressions; IP destinations use the longest matching CIDR.
  Anything unmatched goes to the default outbound.
- `geosite_rules` (`tag`, `rules`, `file_path`) and `geoip_rules` (`tag`,
  `rules`, `file_path`) read `geosite.dat` / `geoip.dat` files. Without
  `file_path` they look in the directory named by the
  `v2ray.location.asset` or `V2RAY_LOCATION_ASSET` environment variable,
  and otherwise next to the running program.
- WebSocket `uri` values may carry an `ed=<bytes>` query parameter; it is
  removed from the URI and sets the early-data size, with the header name
  `Sec-WebSocket-Protocol`.
- TLS `sni` values must be valid DNS names; VMess `method` is
  `aes-128-gcm`, `chacha20-poly1305` or `auto`.

## Using it from Python

```python
from vrelay.address import Address
from vrelay.config import Config

config = Config.read_from_file("config.toml")
chains = config.build_chains()      # tag -> OutboundChain
router = config.build_router()

tag = router.match_addr(Address.parse("ads.example.com:443"))
print(tag, chains[tag])
```

Other modules:

- `vrelay.address`: `Address.parse` accepts `ip:port`, `[ipv6]:port`,
  `host:port` and a bare `host` (port 80); `to_bytes` / `from_bytes` give
  the SOCKS5 wire form, `to_vmess_bytes` the VMess form.
- `vrelay.route`: `RouterBuilder`, `Router`, `DomainMatcher` and
  `build_router`.
- `vrelay.ip_trie`: `PatriciaTrie` and `GeoIPMatcher` for prefix matching.
- `vrelay.relay`: `relay` and `relay_with_counters` copy between two
  asyncio stream pairs; `TrafficCounter` counts bytes.
- `vrelay.stats`: `StatsRegistry.get_stats(name, reset)` reads named
  counters.
- `vrelay.grpc_frame`: `encode_gun_frame`, `GunFrameDecoder` and
  `grpc_request_headers` for the gRPC tunnel framing.
- `vrelay.common`: hashing helpers, `openssl_bytes_to_key`, `AeadCipher`
  and `Aes128Block`.

## What it does not do

- Entries in `inbounds` are parsed but not served: there is no SOCKS5 or
  HTTP listener, and no UDP relaying. Only `dokodemo` listeners accept
  connections; with none configured, `vrelay -c` exits with an error.
- Outbound chains are resolved but only a chain made of `direct` entries
  can actually be opened. A chain containing `blackhole` drops the
  connection; chains using `ss`, `vmess`, `trojan`, `tls`, `ws`, `h2` or
  `grpc` are rejected per connection.
- `enable_api_server` and `api_server_addr` are read, but no stats server
  is started; `StatsRegistry` is available only as a library.