#!/usr/bin/env python3

from __future__ import annotations
import asyncio
from contextlib import suppress
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Set, Tuple

from bridge.config import BridgeConfig
from bridge.core.Bus import Bus, LocalBus
from bridge.core.MessageTypes import Direction, ReceiveState
from bridge.core.PeerTable import PeerEndpoint, PeerSlot
from bridge.transport.udp_transport import (
    SocketReceiveError,
    SocketSendError,
    Transport,
    TransportClosedError,
    UdpSocketTransport,
)
from shared.envelope import IncompleteEnvelopeError, MalformedJSONError, decode, encode, extract_data, is_actionable
from shared.log import configure_root_logging, get_logger, log_envelope

logger = get_logger(__name__)

_WIRE_TO_BUS = {"direction": Direction.WIRE_TO_BUS.value}
_BUS_TO_WIRE = {"direction": Direction.BUS_TO_WIRE.value}


@dataclass
class BridgeStats:
    received: int = 0          # datagrams taken off the socket
    published: int = 0         # payloads published on the outbound channel
    filtered: int = 0          # valid JSON that did not match the route
    malformed: int = 0         # datagrams that were not JSON
    bus_messages: int = 0      # payloads seen on the inbound channel
    sent: int = 0
    send_errors: int = 0
    dropped_no_peer: int = 0


class UdpBridge:
    """
    Forwards one bus channel out over UDP and one wire topic back onto the bus.

    Wire-to-bus: a single standing receive; every datagram makes its sender the
    peer, and actionable envelopes have msg.data published on the outbound
    channel. A socket receive error ends this direction for good.

    Bus-to-wire: each payload on the inbound channel is encoded and sent to the
    current peer. Without a peer the payload is dropped with a warning.
    """

    def __init__(self, transport: Transport, bus: Bus, config: Optional[BridgeConfig] = None):
        self.transport = transport
        self.bus = bus
        self.config = config or BridgeConfig()
        self.route = self.config.route

        self.peer = PeerSlot()
        self.state = ReceiveState.IDLE
        self.stats = BridgeStats()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()
        self._stop_event: Optional[asyncio.Event] = None
        self._closed = False

    @classmethod
    def from_config(cls, config: BridgeConfig, bus: Bus) -> UdpBridge:
        """Bind the UDP socket described by config and wrap it in a bridge."""
        transport = UdpSocketTransport.bind(config.host, config.port, config.max_datagram_size)
        return cls(transport, bus, config)

    def _track_background_task(self, task: asyncio.Task) -> None:
        """Keep a strong reference to background tasks until completion."""
        self._background_tasks.add(task)

        def _discard(_task: asyncio.Task) -> None:
            self._background_tasks.discard(_task)
            if not _task.cancelled() and _task.exception() is not None:
                logger.error(f"Background task failed: {_task.exception()!r}", extra=_BUS_TO_WIRE)

        task.add_done_callback(_discard)

    # ========================================
    #           LIFECYCLE
    # ========================================

    async def start(self) -> None:
        """Subscribe to the inbound channel and arm the first receive."""
        if self._loop is not None:
            return
        if self._closed:
            raise RuntimeError("Bridge already closed")
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self.bus.subscribe(self.config.inbound_channel, self.on_bus_message)
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info(
            f"Bridge started: bus {self.config.inbound_channel} -> udp, "
            f"udp {self.route.topic} ({self.route.type}) -> bus {self.config.outbound_channel}"
        )

    async def run(self) -> None:
        """Start and serve until stop() is called or the task is cancelled. Always closes the socket."""
        await self.start()
        assert self._stop_event is not None
        try:
            await self._stop_event.wait()
        finally:
            await self.close()

    def stop(self) -> None:
        """Ask run() to return. Safe to call from any thread."""
        if self._loop is None or self._stop_event is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._stop_event.set()
        else:
            self._loop.call_soon_threadsafe(self._stop_event.set)

    async def close(self) -> None:
        """Unsubscribe, cancel the receive loop and in-flight sends, and close the socket."""
        if self._closed:
            return
        self._closed = True
        if self._loop is not None:
            with suppress(Exception):
                self.bus.unsubscribe(self.config.inbound_channel, self.on_bus_message)
        try:
            tasks = list(self._background_tasks)
            if self._receive_task is not None:
                tasks.append(self._receive_task)
            for task in tasks:
                task.cancel()
            for task in tasks:
                with suppress(asyncio.CancelledError):
                    await task
        finally:
            self.transport.close()
            self.state = ReceiveState.STOPPED
            if self._stop_event is not None:
                self._stop_event.set()
            logger.info("Bridge closed")

    async def __aenter__(self) -> UdpBridge:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def receiving(self) -> bool:
        return self._receive_task is not None and not self._receive_task.done()

    @property
    def closed(self) -> bool:
        return self._closed

    # ========================================
    #           WIRE -> BUS
    # ========================================

    async def _receive_loop(self) -> None:
        """Keep exactly one receive outstanding until a socket error or shutdown."""
        try:
            while True:
                self.state = ReceiveState.RECEIVING
                try:
                    data, addr = await self.transport.recv_from()
                except TransportClosedError:
                    logger.info("Transport closed; receive loop finished")
                    return
                except SocketReceiveError as e:
                    logger.error(f"Error in receiving UDP packet: {e}", extra=_WIRE_TO_BUS)
                    return

                self.state = ReceiveState.PROCESSING
                try:
                    self.handle_datagram(data, addr)
                except Exception as e:
                    logger.error(f"Error processing datagram: {e}", exc_info=True)
        finally:
            self.state = ReceiveState.STOPPED

    def handle_datagram(self, data: bytes, addr: Tuple) -> bool:
        """
        Process one received datagram. Returns True when a payload was published.

        The sender becomes the peer before anything else, so even a rejected
        datagram redirects later outbound traffic.
        """
        peer = PeerEndpoint.from_address(addr)
        previous = self.peer.set(peer)
        if previous != peer:
            logger.info(f"Peer endpoint is now {peer}", extra=_WIRE_TO_BUS)
        self.stats.received += 1

        try:
            parsed = decode(data)
        except MalformedJSONError as e:
            self.stats.malformed += 1
            logger.warning(f"Dropping malformed datagram ({len(data)} bytes): {e}",
                           extra={**_WIRE_TO_BUS, "peer": str(peer)})
            return False

        if not is_actionable(parsed, self.route):
            self.stats.filtered += 1
            log_envelope(logger, "debug", "Ignoring envelope outside the configured route",
                         envelope=parsed, peer=str(peer), **_WIRE_TO_BUS)
            return False

        try:
            payload = extract_data(parsed)
        except IncompleteEnvelopeError as e:
            self.stats.filtered += 1
            log_envelope(logger, "info", f"Ignoring incomplete envelope: {e}",
                         envelope=parsed, peer=str(peer), **_WIRE_TO_BUS)
            return False

        logger.info(f"I received: [{payload}]", extra={**_WIRE_TO_BUS, "peer": str(peer)})
        return self._publish(payload)

    def _publish(self, payload: str) -> bool:
        channel = self.config.outbound_channel
        try:
            self.bus.publish(channel, payload)
        except Exception as e:
            logger.error(f"Bus publish failed: {e}", extra={**_WIRE_TO_BUS, "channel": channel})
            return False
        self.stats.published += 1
        return True

    # ========================================
    #           BUS -> WIRE
    # ========================================

    def on_bus_message(self, payload: str) -> None:
        """
        Subscription callback for the inbound channel.

        Never raises into the bus; the actual send runs on the bridge's loop,
        which may be a different thread from the caller.
        """
        self.stats.bus_messages += 1
        logger.info(f"I heard: [{payload}]", extra={**_BUS_TO_WIRE, "channel": self.config.inbound_channel})
        loop = self._loop
        if loop is None or self._closed or loop.is_closed():
            logger.warning("Bridge is not running; dropping bus message", extra=_BUS_TO_WIRE)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        try:
            if running is loop:
                self._track_background_task(loop.create_task(self.forward_to_wire(payload)))
            else:
                asyncio.run_coroutine_threadsafe(self.forward_to_wire(payload), loop)
        except RuntimeError as e:
            logger.error(f"Could not schedule UDP send: {e}", extra=_BUS_TO_WIRE)

    async def forward_to_wire(self, payload: str) -> bool:
        """Encode payload and send it to the current peer. Returns True if the datagram went out."""
        data = encode(self.config.inbound_channel, payload, self.config.type_tag)

        peer = self.peer.get()
        if peer is None:
            self.stats.dropped_no_peer += 1
            logger.warning("No UDP peer known yet; dropping message", extra=_BUS_TO_WIRE)
            return False

        try:
            sent = await self.transport.send_to(data, peer.as_tuple())
        except (SocketSendError, TransportClosedError) as e:
            self.stats.send_errors += 1
            logger.error(f"Error in sending UDP packet: {e}", extra={**_BUS_TO_WIRE, "peer": str(peer)})
            return False

        if not sent:
            self.stats.send_errors += 1
            logger.error("Error in sending UDP packet: 0 bytes written", extra={**_BUS_TO_WIRE, "peer": str(peer)})
            return False

        self.stats.sent += 1
        logger.info(f"Sent UDP packet: {sent} bytes", extra={**_BUS_TO_WIRE, "peer": str(peer)})
        return True

    # ========================================
    #           STATUS
    # ========================================

    def get_status(self) -> Dict[str, Any]:
        peer = self.peer.get()
        return {
            "state": self.state.value,
            "receiving": self.receiving,
            "closed": self._closed,
            "peer": str(peer) if peer else None,
            "route": {"topic": self.route.topic, "type": self.route.type},
            "inbound_channel": self.config.inbound_channel,
            "outbound_channel": self.config.outbound_channel,
            "stats": asdict(self.stats),
        }


async def main(config: Optional[BridgeConfig] = None, bus: Optional[Bus] = None):
    """Main entry point"""
    config = config or BridgeConfig()
    configure_root_logging(config.log_level)
    bridge = UdpBridge.from_config(config, bus or LocalBus())
    await bridge.run()
if __name__ == "__main__":
    asyncio.run(main())
