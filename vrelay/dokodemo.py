"""Listening sockets for transparent (dokodemo-door) inbounds."""

from __future__ import annotations

import logging
import socket
import sys

from vrelay.address import Address
from vrelay.common import ProxyError

log = logging.getLogger(__name__)

_IP_TRANSPARENT = getattr(socket, "IP_TRANSPARENT", 19)


def build_dokodemo_listener(addr: Address, backlog: int, tproxy: bool = False) -> socket.socket:
    """Return a bound, listening, non-blocking TCP socket for ``addr``."""
    if not addr.is_socket_addr():
        raise ProxyError("unsupported dokodemo door listen addr type.")
    host, port = addr.sock_addr()
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM, socket.IPPROTO_TCP)
    try:
        sock.setblocking(False)
        if sys.platform.startswith("linux"):
            log.info("set tproxy to %s", tproxy)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_IP, _IP_TRANSPARENT, 1 if tproxy else 0)
        sock.bind((host, port))
        sock.listen(backlog)
    except BaseException:
        sock.close()
        raise
    return sock