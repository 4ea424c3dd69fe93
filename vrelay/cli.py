"""Command-line entry point: validate a configuration or run its listeners."""

from __future__ import annotations

import argparse
import asyncio
import functools
import logging
import sys
from ipaddress import ip_address

from vrelay.address import Address
from vrelay.config import Config, OutboundChain, ProtocolType
from vrelay.common import ProxyError
from vrelay.dokodemo import build_dokodemo_listener
from vrelay.relay import relay
from vrelay.route import Router

log = logging.getLogger(__name__)

VERSION = "v0.0.1"


async def _open_outbound(chain: OutboundChain, addr: Address):
    protocols = [link.protocol for link in chain.links]
    if chain.last_link is not None:
        protocols.append(chain.last_link.protocol)
    if ProtocolType.BLACKHOLE in protocols:
        raise ProxyError(f"outbound `{chain.tag}` drops the connection")
    if chain.remote_addr is None and all(p is ProtocolType.DIRECT for p in protocols):
        return await addr.connect_tcp()
    names = ", ".join(p.value for p in protocols)
    raise ProxyError(f"outbound `{chain.tag}` needs protocols that cannot be opened here: {names}")


async def _handle_dokodemo(
    target_addr: Address | None,
    chains: dict[str, OutboundChain],
    router: Router,
    relay_buffer_size: int,
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
) -> None:
    try:
        if target_addr is not None:
            outbound = await target_addr.connect_tcp()
        else:
            local = writer.get_extra_info("sockname")
            addr = Address(ip_address(local[0]), local[1])
            tag = router.match_addr(addr)
            log.info("routing dokodemo addr %s to outbound:%s", addr, tag)
            outbound = await _open_outbound(chains[tag], addr)
        await relay((reader, writer), outbound, relay_buffer_size)
    except (OSError, asyncio.IncompleteReadError) as exc:
        log.info("dokodemo connection failed: %s", exc)
        writer.close()


async def _serve(config: Config, chains: dict[str, OutboundChain], router: Router) -> None:
    for inbound in config.inbounds:
        log.warning("inbound %s on %s is not served by this program", inbound.tag, inbound.addr)
    servers: list[asyncio.Server] = []
    try:
        for door in config.dokodemo:
            sock = build_dokodemo_listener(door.addr, config.backlog, door.tproxy)
            handler = functools.partial(
                _handle_dokodemo, door.target_addr, chains, router, config.relay_buffer_size
            )
            servers.append(await asyncio.start_server(handler, sock=sock))
            log.info("dokodemo door listening on: %s", door.addr)
        if not servers:
            raise ProxyError("no dokodemo door to listen on")
        log.info("backlog is:%d", config.backlog)
        await asyncio.gather(*(server.serve_forever() for server in servers))
    finally:
        for server in servers:
            server.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="vrelay", description="A lightweight V2Ray-compatible proxy."
    )
    parser.add_argument("-c", "--config", required=True, help=".toml config file name")
    parser.add_argument(
        "-t", "--test", action="store_true", help="validate given toml config file"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    try:
        config = Config.read_from_file(args.config)
        if args.test:
            log.info("A valid config file.")
            return 0
        chains = config.build_chains()
        router = config.build_router()
        asyncio.run(_serve(config, chains, router))
    except OSError as exc:
        print(exc, file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        log.info("stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())