"""Tests for the audio sink state machine and frame fan-out."""
import asyncio
import time

import discord
import pytest

from musicbox.player.sink import AudioResource, AudioSink, EndReason, SinkStatus

from fakes import FRAME, BlockingSource, FakeConnection, FakeSource


@pytest.fixture
def sink():
    return AudioSink(name="test")


@pytest.fixture
def events(sink):
    received = []
    sink.add_listener(received.append)
    return received


class TestAudioResource:
    def test_inline_volume(self):
        resource = AudioResource(FakeSource(), inline_volume=True, volume=0.5)
        assert isinstance(resource.source, discord.PCMVolumeTransformer)
        resource.volume = 1.5
        assert resource.volume == 1.5

    def test_volume_without_transformer(self):
        resource = AudioResource(FakeSource())
        resource.volume = 2.0
        assert resource.volume is None

    def test_cleanup_is_idempotent(self):
        source = FakeSource()
        resource = AudioResource(source)
        resource.cleanup()
        resource.cleanup()
        assert source.cleaned
        assert resource.read() == b""


class TestTransitions:
    async def test_play_buffers_until_first_frame(self, sink, events, settle):
        connection = FakeConnection(1, 10)
        sink.subscribe(connection)
        resource = AudioResource(FakeSource())
        sink.play(resource)
        assert sink.status is SinkStatus.BUFFERING

        assert connection.pull() == FRAME
        await settle()
        assert sink.status is SinkStatus.PLAYING
        assert [e.current for e in events] == [SinkStatus.BUFFERING, SinkStatus.PLAYING]

    async def test_natural_end_is_finished(self, sink, events, settle):
        connection = FakeConnection(1, 10)
        sink.subscribe(connection)
        resource = AudioResource(FakeSource(frames=1))
        sink.play(resource)

        connection.pull()
        assert connection.pull() == b""
        await settle()
        assert sink.status is SinkStatus.IDLE
        assert events[-1].reason is EndReason.FINISHED
        assert resource.closed

    async def test_superseded_is_not_finished(self, sink, events):
        first = AudioResource(FakeSource())
        second = AudioResource(FakeSource())
        sink.play(first)
        sink.play(second)
        assert first.closed
        assert events[-1].reason is EndReason.SUPERSEDED
        assert sink.resource is second

    async def test_stale_end_is_ignored(self, sink, events):
        first = AudioResource(FakeSource())
        second = AudioResource(FakeSource())
        sink.play(first)
        sink.play(second)
        sink.handle_end(first)
        assert sink.resource is second
        assert all(e.reason is not EndReason.FINISHED for e in events)

    async def test_stop(self, sink, events):
        resource = AudioResource(FakeSource())
        sink.play(resource)
        assert sink.stop() is True
        assert sink.status is SinkStatus.IDLE
        assert events[-1].reason is EndReason.STOPPED
        assert resource.closed
        assert sink.stop() is False

    async def test_pause_and_unpause(self, sink, settle):
        connection = FakeConnection(1, 10)
        sink.subscribe(connection)
        sink.play(AudioResource(FakeSource()))
        connection.pull()
        await settle()

        assert sink.pause() is True
        assert connection.is_paused()
        assert sink.status is SinkStatus.PAUSED
        assert sink.unpause() is True
        assert connection.is_playing()
        assert sink.status is SinkStatus.PLAYING

    async def test_pause_when_idle(self, sink):
        assert sink.pause() is False
        assert sink.unpause() is False

    async def test_listener_errors_do_not_propagate(self, sink):
        def broken(event):
            raise RuntimeError("boom")

        sink.add_listener(broken)
        sink.play(AudioResource(FakeSource()))
        assert sink.status is SinkStatus.BUFFERING


class TestSubscriptions:
    async def test_subscribe_is_idempotent_per_connection(self, sink):
        connection = FakeConnection(1, 10)
        assert sink.subscribe(connection) is sink.subscribe(connection)
        assert sink.subscriber_count == 1

    async def test_subscription_listener(self, sink):
        seen = []
        sink.add_subscription_listener(lambda sub, subscribed: seen.append(subscribed))
        subscription = sink.subscribe(FakeConnection(1, 10))
        subscription.unsubscribe()
        assert seen == [True, False]
        assert sink.subscriber_count == 0

    async def test_unsubscribe_stops_connection(self, sink):
        connection = FakeConnection(1, 10)
        subscription = sink.subscribe(connection)
        sink.play(AudioResource(FakeSource()))
        assert connection.is_playing()
        subscription.unsubscribe()
        assert connection.source is None

    async def test_frames_fan_out_to_every_subscriber(self, sink):
        first, second = FakeConnection(1, 10), FakeConnection(2, 20)
        sink.subscribe(first)
        sink.subscribe(second)
        source = FakeSource(frames=2)
        sink.play(AudioResource(source))

        assert first.pull() == FRAME
        assert second.pull() == FRAME
        assert first.pull() == FRAME
        assert second.pull() == FRAME
        # Both listeners got both frames out of a single decode
        assert source.remaining == 0

    async def test_late_subscriber_joins_live(self, sink):
        first = FakeConnection(1, 10)
        sink.subscribe(first)
        sink.play(AudioResource(FakeSource(frames=5)))
        first.pull()
        first.pull()

        late = FakeConnection(2, 20)
        sink.subscribe(late)
        assert late.is_playing()
        assert late.pull() == FRAME

    async def test_remove_subscriptions(self, sink):
        connections = [FakeConnection(i, i * 10) for i in range(3)]
        for connection in connections:
            sink.subscribe(connection)
        sink.remove_subscriptions()
        assert sink.subscriber_count == 0


class TestSlowReads:
    async def start_blocked_read(self, sink, connection):
        source = BlockingSource()
        sink.play(AudioResource(source))
        reader = asyncio.get_running_loop().run_in_executor(None, connection.pull)
        assert await asyncio.to_thread(source.reading.wait, 1)
        return source, reader

    async def test_stop_does_not_wait_for_a_pending_read(self, sink):
        connection = FakeConnection(1, 10)
        sink.subscribe(connection)
        source, reader = await self.start_blocked_read(sink, connection)

        started = time.monotonic()
        assert sink.stop() is True
        assert time.monotonic() - started < 0.1
        assert source.cleaned
        assert await reader == b""

    async def test_swap_mid_read_moves_to_the_new_resource(self, sink):
        connection = FakeConnection(1, 10)
        sink.subscribe(connection)
        _, reader = await self.start_blocked_read(sink, connection)

        started = time.monotonic()
        sink.play(AudioResource(FakeSource()))
        assert time.monotonic() - started < 0.1
        assert await reader == FRAME
