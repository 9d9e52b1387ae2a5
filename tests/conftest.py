import asyncio
import logging
import os

import pytest

# Keep test runs from writing logs/udp_bridge.log
os.environ.setdefault("UDP_BRIDGE_LOG_DIR", "")

from bridge.core.Bus import LocalBus
from bridge.transport.udp_transport import SocketSendError, Transport, TransportClosedError

PEER = ("10.0.0.5", 40000)


class FakeTransport(Transport):
    """Queue-backed transport: tests feed datagrams in and inspect what was sent."""

    def __init__(self) -> None:
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list[tuple[bytes, tuple]] = []
        self.send_error: Exception | None = None
        self._closed = False

    def feed(self, data: bytes, addr: tuple = PEER) -> None:
        self.inbox.put_nowait(("datagram", data, addr))

    def fail_receive(self, exc: Exception) -> None:
        self.inbox.put_nowait(("error", exc, None))

    async def recv_from(self):
        if self._closed:
            raise TransportClosedError("closed")
        kind, value, addr = await self.inbox.get()
        if kind == "error":
            raise value
        return value, addr

    async def send_to(self, data: bytes, addr) -> int:
        if self._closed:
            raise TransportClosedError("closed")
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((data, addr))
        return len(data)

    def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed


class RecordingBus(LocalBus):
    def __init__(self) -> None:
        super().__init__()
        self.published: list[tuple[str, str]] = []

    def publish(self, channel: str, payload: str) -> None:
        self.published.append((channel, payload))
        super().publish(channel, payload)


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    end = loop.time() + timeout
    while loop.time() < end:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def send_failure():
    return SocketSendError("Network is unreachable")


@pytest.fixture
def bridge_logs(caplog):
    """Bridge loggers don't propagate to root, so hook caplog in directly."""
    logger = logging.getLogger("bridge.bridge")
    logger.addHandler(caplog.handler)
    caplog.set_level(logging.DEBUG)
    try:
        yield caplog
    finally:
        logger.removeHandler(caplog.handler)


@pytest.fixture
def waiter():
    return wait_for
