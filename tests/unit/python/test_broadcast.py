"""Tests for partysync.broadcast — audiences, plans and per-session queues."""

import asyncio
import json

import pytest

from conftest import RecordingChannel
from partysync.broadcast import Audience, Broadcaster, Delivery, QueueChannel, encode
from partysync.sessions import CONTROLLER, VIEWER, SessionRegistry


@pytest.fixture
def registry(clock):
    reg = SessionRegistry(clock)
    reg.register("ctl", CONTROLLER)
    reg.register("v1", VIEWER)
    reg.register("v2", VIEWER)
    return reg


@pytest.fixture
def channels():
    return {sid: RecordingChannel() for sid in ("ctl", "v1", "v2", "anon")}


@pytest.fixture
def broadcaster(registry, channels):
    b = Broadcaster(registry)
    for sid, ch in channels.items():
        b.attach(sid, ch)
    return b


def receivers(channels, event):
    return sorted(sid for sid, ch in channels.items() if event in ch.types)


class TestAudiences:
    def test_everyone_includes_unidentified(self, broadcaster, channels):
        assert broadcaster.to_all("ping", {}) == 4
        assert receivers(channels, "ping") == ["anon", "ctl", "v1", "v2"]

    def test_all_except_sender(self, broadcaster, channels):
        broadcaster.to_all_except("ctl", "command", {"type": "play"})
        assert receivers(channels, "command") == ["anon", "v1", "v2"]

    def test_controllers_only(self, broadcaster, channels):
        broadcaster.to_controllers("file_added", {"file": {}})
        assert receivers(channels, "file_added") == ["ctl"]

    def test_role_viewer(self, broadcaster, channels):
        broadcaster.to_role(VIEWER, "x", {})
        assert receivers(channels, "x") == ["v1", "v2"]

    def test_single_session(self, broadcaster, channels):
        broadcaster.to_session("v2", "current_state", {})
        assert receivers(channels, "current_state") == ["v2"]

    def test_detached_session_gets_nothing(self, broadcaster, channels):
        broadcaster.detach("v1")
        broadcaster.to_all("ping", {})
        assert "v1" not in receivers(channels, "ping")
        assert broadcaster.connected == 3

    def test_custom_predicate(self, broadcaster):
        audience = Audience("odd", lambda sid, role: sid.endswith("1"))
        assert broadcaster.select(audience) == ["v1"]


class TestDispatch:
    def test_plan_runs_in_order(self, broadcaster, channels):
        broadcaster.dispatch([
            Delivery(Audience.all_except("ctl"), "command", {"type": "load"}),
            Delivery(Audience.everyone(), "current_state", {"n": 1}),
        ])
        assert channels["v1"].types == ["command", "current_state"]
        assert channels["ctl"].types == ["current_state"]

    @pytest.mark.parametrize("plan", [None, []])
    def test_empty_plan_is_noop(self, broadcaster, channels, plan):
        broadcaster.dispatch(plan)
        assert all(not ch.messages for ch in channels.values())

    def test_refusing_channel_does_not_stop_others(self, broadcaster, channels):
        channels["v1"].accept = False
        assert broadcaster.to_all("ping", {}) == 3
        assert receivers(channels, "ping") == ["anon", "ctl", "v2"]

    def test_broadcast_counts(self, broadcaster, channels):
        assert broadcaster.broadcast_counts() == {"controllers": 1, "viewers": 2}
        assert channels["anon"].events("clients_count") == [{"controllers": 1, "viewers": 2}]


def test_encode_frame():
    assert json.loads(encode("error", {"message": "nope"})) == {"type": "error", "data": {"message": "nope"}}


class TestQueueChannel:
    @pytest.mark.asyncio
    async def test_drains_in_order(self):
        sent = []

        async def send(text):
            sent.append(text)

        channel = QueueChannel("s1", send)
        writer = asyncio.create_task(channel.run())
        for i in range(3):
            assert channel.deliver(f"m{i}")
        channel.close()
        await asyncio.wait_for(writer, 1)
        assert sent == ["m0", "m1", "m2"]
        assert channel.closed

    @pytest.mark.asyncio
    async def test_full_queue_drops_without_blocking(self, caplog):
        async def send(text):
            pass

        channel = QueueChannel("slow", send, maxsize=2)
        assert channel.deliver("a")
        assert channel.deliver("b")
        with caplog.at_level("WARNING"):
            assert channel.deliver("c") is False
        assert any("queue full" in r.message for r in caplog.records)

    @pytest.mark.asyncio
    async def test_send_failure_ends_writer(self):
        async def send(text):
            raise ConnectionError("gone")

        channel = QueueChannel("s1", send)
        writer = asyncio.create_task(channel.run())
        channel.deliver("hello")
        await asyncio.wait_for(writer, 1)
        assert channel.closed
        assert channel.deliver("again") is False

    @pytest.mark.asyncio
    async def test_flush_waits_for_queue(self):
        sent = []

        async def send(text):
            await asyncio.sleep(0)
            sent.append(text)

        channel = QueueChannel("s1", send)
        writer = asyncio.create_task(channel.run())
        channel.deliver("bye")
        await channel.flush(1.0)
        assert sent == ["bye"]
        channel.close()
        await asyncio.wait_for(writer, 1)

    def test_closed_channel_refuses(self):
        channel = QueueChannel("s1", None)
        channel.close()
        assert channel.deliver("late") is False
