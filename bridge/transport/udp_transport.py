"""
UDP transport for the bridge.

The bridge only needs two primitives from the network: receive one datagram
(with its sender) and send one datagram to an address. Transport captures that
so tests can substitute an in-memory fake for the real socket.
"""
from __future__ import annotations

import asyncio
import socket
from typing import Tuple

from shared.log import get_logger

logger = get_logger(__name__)

# Receive buffer of the reference deployment; longer datagrams are truncated
DEFAULT_MAX_DATAGRAM_SIZE = 1024

Address = Tuple


class SocketReceiveError(Exception):
    """Transport-level failure while receiving. Fatal to the wire-to-bus direction."""
    pass
class SocketSendError(Exception):
    """Transport-level failure while sending. Never affects later sends."""
    pass
class TransportClosedError(Exception):
    """Raised by recv_from/send_to once the transport has been closed."""
    pass


class Transport:
    """Datagram capability the bridge loop is built on."""

    async def recv_from(self) -> Tuple[bytes, Address]:  # pragma: no cover
        raise NotImplementedError

    async def send_to(self, data: bytes, addr: Address) -> int:  # pragma: no cover
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover
        raise NotImplementedError

    @property
    def closed(self) -> bool:  # pragma: no cover
        raise NotImplementedError


class UdpSocketTransport(Transport):
    """Non-blocking UDP socket driven by the running asyncio loop."""

    def __init__(self, sock: socket.socket, max_datagram_size: int = DEFAULT_MAX_DATAGRAM_SIZE) -> None:
        sock.setblocking(False)
        self._sock = sock
        self.max_datagram_size = max_datagram_size
        self._closed = False

    @classmethod
    def bind(cls, host: str, port: int, max_datagram_size: int = DEFAULT_MAX_DATAGRAM_SIZE) -> UdpSocketTransport:
        """Open a UDP socket bound to host:port (port 0 picks a free port)."""
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.setblocking(False)
            sock.bind((host, port))
        except OSError as e:
            sock.close()
            logger.error(f"Failed to bind UDP socket on {host}:{port}: {e}")
            raise
        transport = cls(sock, max_datagram_size=max_datagram_size)
        logger.info(f"UDP socket bound on {transport.local_address[0]}:{transport.local_address[1]}")
        return transport

    @property
    def local_address(self) -> Address:
        return self._sock.getsockname()

    @property
    def closed(self) -> bool:
        return self._closed

    async def recv_from(self) -> Tuple[bytes, Address]:
        """Wait for one datagram. Anything beyond max_datagram_size is discarded by the kernel."""
        if self._closed:
            raise TransportClosedError("Transport is closed")
        loop = asyncio.get_running_loop()
        try:
            return await loop.sock_recvfrom(self._sock, self.max_datagram_size)
        except OSError as e:
            if self._closed:
                raise TransportClosedError("Transport closed during receive") from e
            raise SocketReceiveError(str(e) or e.__class__.__name__) from e

    async def send_to(self, data: bytes, addr: Address) -> int:
        if self._closed:
            raise TransportClosedError("Transport is closed")
        loop = asyncio.get_running_loop()
        try:
            return await loop.sock_sendto(self._sock, data, addr)
        except OSError as e:
            raise SocketSendError(str(e) or e.__class__.__name__) from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.close()
        except OSError as e:
            logger.error(f"Error closing UDP socket: {e}")
        logger.debug("UDP socket closed")

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<UdpSocketTransport {state} max={self.max_datagram_size}>"

