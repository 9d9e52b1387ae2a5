import asyncio
import json
import logging
import threading

import pytest

from bridge.bridge import UdpBridge
from bridge.config import BridgeConfig
from bridge.core.MessageTypes import ReceiveState
from bridge.core.PeerTable import PeerEndpoint
from bridge.transport.udp_transport import SocketReceiveError

CHATTER = b'{"op":"publish","topic":"/chatter","msg":{"data":"hello"},"type":"std_msgs/String"}'


def envelope(data, topic="/chatter", type_tag="std_msgs/String", op="publish"):
    return json.dumps({"op": op, "topic": topic, "msg": {"data": data}, "type": type_tag}).encode()


@pytest.mark.asyncio
async def test_actionable_datagram_is_published_once(fake_transport, bus, waiter):
    async with UdpBridge(fake_transport, bus) as bridge:
        fake_transport.feed(CHATTER)
        assert await waiter(lambda: bridge.stats.received == 1)

        assert bus.published == [("/chatter", "hello")]
        assert bridge.peer.get() == PeerEndpoint("10.0.0.5", 40000)


@pytest.mark.asyncio
async def test_malformed_datagram_does_not_stop_loop(fake_transport, bus, waiter, bridge_logs):
    async with UdpBridge(fake_transport, bus) as bridge:
        fake_transport.feed(b"\xff\xfe")
        fake_transport.feed(envelope("after"))
        assert await waiter(lambda: bridge.stats.received == 2)

        assert bus.published == [("/chatter", "after")]
        assert bridge.stats.malformed == 1
        assert bridge.receiving is True
    assert any("malformed" in r.getMessage() and r.levelno == logging.WARNING for r in bridge_logs.records)


@pytest.mark.asyncio
async def test_filtered_envelopes_are_dropped(fake_transport, bus, waiter):
    async with UdpBridge(fake_transport, bus) as bridge:
        fake_transport.feed(envelope("x", op="subscribe"))
        fake_transport.feed(envelope("x", topic="/other"))
        fake_transport.feed(envelope("x", type_tag="std_msgs/Int32"))
        fake_transport.feed(b'{"op":"publish","topic":"/chatter","type":"std_msgs/String"}')
        fake_transport.feed(b'{"op":"publish","topic":"/chatter","msg":{"data":7},"type":"std_msgs/String"}')
        fake_transport.feed(b"[]")
        fake_transport.feed(envelope("kept"))
        assert await waiter(lambda: bridge.stats.received == 7)

        assert bus.published == [("/chatter", "kept")]
        assert bridge.stats.filtered == 6


@pytest.mark.asyncio
async def test_route_follows_config(fake_transport, bus, waiter):
    config = BridgeConfig(outbound_channel="/cmd", type_tag="my_msgs/Text")
    async with UdpBridge(fake_transport, bus, config) as bridge:
        fake_transport.feed(CHATTER)
        fake_transport.feed(envelope("go", topic="/cmd", type_tag="my_msgs/Text"))
        assert await waiter(lambda: bridge.stats.received == 2)

    assert bus.published == [("/cmd", "go")]


@pytest.mark.asyncio
async def test_receive_error_stops_ingest_but_not_sends(fake_transport, bus, waiter, bridge_logs):
    async with UdpBridge(fake_transport, bus) as bridge:
        fake_transport.feed(CHATTER)
        fake_transport.fail_receive(SocketReceiveError("Connection refused"))
        fake_transport.feed(envelope("never"))
        assert await waiter(lambda: not bridge.receiving)

        assert bridge.state == ReceiveState.STOPPED
        assert bus.published == [("/chatter", "hello")]
        assert not fake_transport.closed

        bus.publish("/listener", "still sending")
        assert await waiter(lambda: len(fake_transport.sent) == 1)
    assert fake_transport.closed
    assert any(r.levelno == logging.ERROR and "receiving" in r.getMessage() for r in bridge_logs.records)


@pytest.mark.asyncio
async def test_bus_message_is_sent_to_last_peer(fake_transport, bus, waiter):
    async with UdpBridge(fake_transport, bus) as bridge:
        fake_transport.feed(CHATTER, ("10.0.0.5", 40000))
        assert await waiter(lambda: bridge.stats.received == 1)

        bus.publish("/listener", "ping")
        assert await waiter(lambda: bridge.stats.sent == 1)

    assert len(fake_transport.sent) == 1
    data, addr = fake_transport.sent[0]
    assert addr == ("10.0.0.5", 40000)
    assert json.loads(data) == {
        "op": "publish",
        "topic": "/listener",
        "msg": {"data": "ping"},
        "type": "std_msgs/String",
    }


@pytest.mark.asyncio
async def test_peer_tracks_most_recent_sender(fake_transport, bus, waiter):
    async with UdpBridge(fake_transport, bus) as bridge:
        fake_transport.feed(CHATTER, ("10.0.0.5", 40000))
        fake_transport.feed(b"garbage", ("10.0.0.6", 40001))
        assert await waiter(lambda: bridge.stats.received == 2)

        bus.publish("/listener", "ping")
        assert await waiter(lambda: bridge.stats.sent == 1)

    assert fake_transport.sent[0][1] == ("10.0.0.6", 40001)


@pytest.mark.asyncio
async def test_send_without_peer_is_dropped_with_warning(fake_transport, bus, bridge_logs):
    async with UdpBridge(fake_transport, bus) as bridge:
        sent = await asyncio.wait_for(bridge.forward_to_wire("ping"), timeout=1.0)

        assert sent is False
        assert fake_transport.sent == []
        assert bridge.stats.dropped_no_peer == 1

    warnings = [r for r in bridge_logs.records if r.levelno == logging.WARNING and "peer" in r.getMessage()]
    assert len(warnings) == 1


@pytest.mark.asyncio
async def test_send_error_is_not_fatal(fake_transport, bus, waiter, send_failure):
    async with UdpBridge(fake_transport, bus) as bridge:
        fake_transport.feed(CHATTER)
        assert await waiter(lambda: bridge.stats.received == 1)

        fake_transport.send_error = send_failure
        assert await bridge.forward_to_wire("lost") is False
        fake_transport.send_error = None
        assert await bridge.forward_to_wire("delivered") is True

        assert bridge.stats.send_errors == 1
        assert [json.loads(d)["msg"]["data"] for d, _ in fake_transport.sent] == ["delivered"]
        assert bridge.receiving is True


@pytest.mark.asyncio
async def test_payload_with_lone_surrogate_is_still_sent(fake_transport, bus, waiter):
    async with UdpBridge(fake_transport, bus) as bridge:
        fake_transport.feed(CHATTER)
        assert await waiter(lambda: bridge.stats.received == 1)

        bus.publish("/listener", "bad\udcff")
        assert await waiter(lambda: bridge.stats.sent == 1)

    data, _ = fake_transport.sent[0]
    assert data.isascii()
    assert json.loads(data)["msg"]["data"] == "bad\udcff"


@pytest.mark.asyncio
async def test_unexpected_send_failure_is_logged(fake_transport, bus, waiter, bridge_logs):
    async with UdpBridge(fake_transport, bus) as bridge:
        fake_transport.feed(CHATTER)
        assert await waiter(lambda: bridge.stats.received == 1)

        fake_transport.send_error = RuntimeError("socket gone sideways")
        bus.publish("/listener", "ping")
        assert await waiter(lambda: any(
            r.levelno == logging.ERROR and "Background task failed" in r.getMessage() for r in bridge_logs.records
        ))

        assert bridge.receiving is True
    assert any("socket gone sideways" in r.getMessage() for r in bridge_logs.records)


@pytest.mark.asyncio
async def test_bus_callback_from_other_thread(fake_transport, bus, waiter):
    async with UdpBridge(fake_transport, bus) as bridge:
        fake_transport.feed(CHATTER)
        assert await waiter(lambda: bridge.stats.received == 1)

        thread = threading.Thread(target=bridge.on_bus_message, args=("from thread",))
        thread.start()
        thread.join()
        assert await waiter(lambda: bridge.stats.sent == 1)

    assert json.loads(fake_transport.sent[0][0])["msg"]["data"] == "from thread"


@pytest.mark.asyncio
async def test_bus_publish_failure_is_contained(fake_transport, waiter):
    class BrokenBus:
        def __init__(self):
            self.subscriptions = []

        def subscribe(self, channel, callback):
            self.subscriptions.append(channel)

        def unsubscribe(self, channel, callback):
            self.subscriptions.remove(channel)

        def publish(self, channel, payload):
            raise RuntimeError("bus down")

    bus = BrokenBus()
    async with UdpBridge(fake_transport, bus) as bridge:
        assert bus.subscriptions == ["/listener"]
        fake_transport.feed(CHATTER)
        fake_transport.feed(envelope("second"))
        assert await waiter(lambda: bridge.stats.received == 2)

        assert bridge.stats.published == 0
        assert bridge.receiving is True
    assert bus.subscriptions == []


@pytest.mark.asyncio
async def test_run_closes_transport_when_stopped(fake_transport, bus, waiter):
    bridge = UdpBridge(fake_transport, bus)
    task = asyncio.create_task(bridge.run())
    assert await waiter(lambda: bridge.receiving)

    bridge.stop()
    await asyncio.wait_for(task, timeout=1.0)

    assert fake_transport.closed
    assert bridge.closed
    assert bridge.state == ReceiveState.STOPPED
    assert bus.subscribers("/listener") == []


@pytest.mark.asyncio
async def test_run_closes_transport_when_cancelled(fake_transport, bus, waiter):
    bridge = UdpBridge(fake_transport, bus)
    task = asyncio.create_task(bridge.run())
    assert await waiter(lambda: bridge.receiving)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert fake_transport.closed


@pytest.mark.asyncio
async def test_messages_after_close_are_dropped(fake_transport, bus):
    bridge = UdpBridge(fake_transport, bus)
    await bridge.start()
    await bridge.close()

    bridge.on_bus_message("late")

    assert fake_transport.sent == []
    assert bridge.stats.bus_messages == 1


@pytest.mark.asyncio
async def test_get_status_reports_peer_and_stats(fake_transport, bus, waiter):
    async with UdpBridge(fake_transport, bus) as bridge:
        assert bridge.get_status()["peer"] is None
        fake_transport.feed(CHATTER)
        assert await waiter(lambda: bridge.stats.published == 1)

        status = bridge.get_status()

    assert status["peer"] == "10.0.0.5:40000"
    assert status["route"] == {"topic": "/chatter", "type": "std_msgs/String"}
    assert status["stats"]["received"] == 1
    assert status["stats"]["published"] == 1
    assert status["receiving"] is True
