from __future__ import annotations
import asyncio
from typing import Awaitable, Callable, Dict, Optional, Tuple

from bridge.transport.udp_transport import SocketReceiveError, TransportClosedError, UdpSocketTransport
from shared.envelope import DEFAULT_TYPE_TAG, Envelope, IncompleteEnvelopeError, MalformedJSONError, create_envelope
from shared.log import get_logger

logger = get_logger(__name__)


MessageHandler = Callable[[Envelope], Awaitable[None]]


class ClientSession:
    """
    UDP peer of a running bridge.

    Sending anything makes this session the bridge's peer, after which the
    bridge forwards its inbound channel here.
    """

    def __init__(self, bridge_host: str, bridge_port: int, *, bind_host: str = "0.0.0.0",
                 type_tag: str = DEFAULT_TYPE_TAG, max_datagram_size: int = 65535) -> None:
        self.bridge_addr: Tuple[str, int] = (bridge_host, bridge_port)
        self.bind_host = bind_host
        self.type_tag = type_tag
        self.max_datagram_size = max_datagram_size
        self.transport: Optional[UdpSocketTransport] = None
        self.handlers: Dict[str, MessageHandler] = {}

    async def connect(self) -> None:
        """Bind an ephemeral local UDP port"""
        self.transport = UdpSocketTransport.bind(self.bind_host, 0, self.max_datagram_size)

    async def send(self, envelope: Envelope) -> int:
        assert self.transport is not None
        return await self.transport.send_to(envelope.to_bytes(), self.bridge_addr)

    async def publish(self, topic: str, data: str) -> int:
        return await self.send(create_envelope(topic, data, self.type_tag))

    def on(self, topic: str, handler: MessageHandler) -> None:
        self.handlers[topic] = handler

    async def recv(self, timeout: Optional[float] = None) -> Envelope:
        """Wait for the next well-formed envelope, skipping anything else."""
        assert self.transport is not None
        while True:
            data, addr = await asyncio.wait_for(self.transport.recv_from(), timeout)
            try:
                return Envelope.from_json(data)
            except (MalformedJSONError, IncompleteEnvelopeError) as e:
                logger.warning("Ignoring datagram from %s: %s", addr, e)

    async def recv_loop(self, default_handler: Optional[MessageHandler] = None) -> None:
        assert self.transport is not None
        while True:
            try:
                env = await self.recv()
            except (TransportClosedError, SocketReceiveError) as e:
                logger.info("Receive loop stopped: %s", e)
                return
            handler = self.handlers.get(env.topic, default_handler)
            if handler:
                try:
                    await handler(env)
                except Exception as e:
                    logger.error("Handler for %s failed: %s", env.topic, e)

    async def close(self) -> None:
        if self.transport:
            self.transport.close()
