import asyncio
import threading

import pytest
import redis

from core.events import (HEARTBEAT, CompletedEvent, FailedEvent, ProcessingEvent, dump_event,
                         parse_event)
from core.publisher import InMemoryProgressPublisher, RedisProgressPublisher, channel_name
from core.streaming import stream_progress
from core.errors import InfrastructureError, JobNotFoundError


def processing(job_id, progress, kind="compress"):
    return ProcessingEvent(job_id=job_id, kind=kind, progress=progress)


class TestEvents:

    def test_round_trip_discriminates_on_status(self):
        event = CompletedEvent(job_id="j1", kind="frames", output_ref="/out",
                               output_size=10, output_files=["/out/a.jpg"])
        parsed = parse_event(dump_event(event))
        assert isinstance(parsed, CompletedEvent)
        assert parsed.terminal
        assert parsed.output_files == ["/out/a.jpg"]

    def test_processing_is_not_terminal(self):
        assert not processing("j1", 10.0).terminal

    def test_channel_name(self):
        assert channel_name("gif", "abc") == "progress:gif:abc"


class TestInMemoryPublisher:

    @pytest.mark.asyncio
    async def test_publish_reaches_subscriber(self):
        pub = InMemoryProgressPublisher()
        sub = await pub.subscribe("compress", "j1")

        assert pub.publish("compress", "j1", processing("j1", 12.0)) == 1
        assert pub.publish("compress", "other", processing("other", 5.0)) == 0
        event = await sub.get(1.0)
        assert event.progress == 12.0
        await sub.close()

    @pytest.mark.asyncio
    async def test_get_times_out_with_none(self):
        pub = InMemoryProgressPublisher()
        async with await pub.subscribe("compress", "j1") as sub:
            assert await sub.get(0.05) is None
        assert pub.subscriber_count("compress", "j1") == 0

    @pytest.mark.asyncio
    async def test_publish_from_worker_thread(self):
        pub = InMemoryProgressPublisher()
        sub = await pub.subscribe("trim", "j1")
        thread = threading.Thread(
            target=lambda: [pub.publish("trim", "j1", processing("j1", p, "trim"))
                            for p in (10.0, 20.0, 30.0)])
        thread.start()
        thread.join()

        received = [await sub.get(1.0) for _ in range(3)]
        assert [e.progress for e in received] == [10.0, 20.0, 30.0]
        await sub.close()

    @pytest.mark.asyncio
    async def test_unsubscribe_racing_publish(self):
        pub = InMemoryProgressPublisher()
        subs = [await pub.subscribe("gif", "j1") for _ in range(20)]
        stop = threading.Event()

        def spam():
            while not stop.is_set():
                pub.publish("gif", "j1", processing("j1", 1.0, "gif"))

        thread = threading.Thread(target=spam)
        thread.start()
        try:
            for sub in subs:
                await sub.close()
                await sub.close()
        finally:
            stop.set()
            thread.join(5)

        assert pub.subscriber_count("gif", "j1") == 0
        assert pub.publish("gif", "j1", processing("j1", 2.0, "gif")) == 0


class UnreachablePubSub:
    def __init__(self):
        self.closed = False

    async def subscribe(self, channel):
        raise redis.ConnectionError("connection refused")

    async def aclose(self):
        self.closed = True


class TestRedisPublisher:

    @pytest.mark.asyncio
    async def test_failed_subscribe_closes_pubsub(self):
        pubsub = UnreachablePubSub()
        pub = RedisProgressPublisher("redis://localhost:1/0")
        pub._async_client = type("Client", (), {"pubsub": lambda self: pubsub})()

        with pytest.raises(InfrastructureError, match="subscribe failed"):
            await pub.subscribe("compress", "j1")
        assert pubsub.closed


class TestStreamProgress:
    """Snapshot first, then live events"""

    @pytest.mark.asyncio
    async def test_terminal_job_yields_snapshot_only(self, store, publisher):
        job = store.create("compress", "/in.mp4")
        store.mark_processing("compress", job.job_id)
        store.complete("compress", job.job_id, "/out.mp4", 100)

        items = [item async for item in stream_progress("compress", job.job_id, store, publisher)]

        assert len(items) == 1
        assert items[0].status == "completed"
        assert items[0].output_ref == "/out.mp4"
        assert publisher.subscriber_count("compress", job.job_id) == 0

    @pytest.mark.asyncio
    async def test_snapshot_read_off_the_event_loop(self, store, publisher, monkeypatch):
        job = store.create("compress", "/in.mp4")
        store.cancel("compress", job.job_id)
        real_snapshot = store.snapshot
        threads = []

        def recording_snapshot(kind, job_id):
            threads.append(threading.get_ident())
            return real_snapshot(kind, job_id)

        monkeypatch.setattr(store, "snapshot", recording_snapshot)
        items = [item async for item in stream_progress("compress", job.job_id, store, publisher)]

        assert [e.status for e in items] == ["failed"]
        assert threads and threading.get_ident() not in threads

    @pytest.mark.asyncio
    async def test_missing_job(self, store, publisher):
        with pytest.raises(JobNotFoundError):
            async for _ in stream_progress("compress", "nope", store, publisher):
                pass
        assert publisher.subscriber_count("compress", "nope") == 0

    @pytest.mark.asyncio
    async def test_reconnect_sees_snapshot_then_terminal(self, store, publisher):
        job = store.create("compress", "/in.mp4")
        store.mark_processing("compress", job.job_id)
        store.update_progress("compress", job.job_id, 60.0)

        stream = stream_progress("compress", job.job_id, store, publisher, heartbeat_interval=5)
        first = await stream.__anext__()
        assert first.status == "processing"
        assert first.progress >= 60.0

        # stale event from before the snapshot is dropped
        publisher.publish("compress", job.job_id, processing(job.job_id, 40.0))
        publisher.publish("compress", job.job_id, processing(job.job_id, 80.0))
        store.complete("compress", job.job_id, "/out.mp4", 5)
        publisher.publish("compress", job.job_id,
                          CompletedEvent(job_id=job.job_id, kind="compress",
                                         output_ref="/out.mp4", output_size=5))

        rest = [item async for item in stream]
        assert [e.status for e in rest] == ["processing", "completed"]
        assert rest[0].progress == 80.0
        assert publisher.subscriber_count("compress", job.job_id) == 0

    @pytest.mark.asyncio
    async def test_heartbeat_during_silence(self, store, publisher):
        job = store.create("gif", "/in.mp4")
        stream = stream_progress("gif", job.job_id, store, publisher, heartbeat_interval=0.05)

        assert (await stream.__anext__()).status == "pending"
        assert await stream.__anext__() is HEARTBEAT

        publisher.publish("gif", job.job_id,
                          FailedEvent(job_id=job.job_id, kind="gif", error="boom"))
        items = [item async for item in stream]
        assert items[-1].status == "failed"
        assert all(item is HEARTBEAT for item in items[:-1])

    @pytest.mark.asyncio
    async def test_closing_early_unsubscribes(self, store, publisher):
        job = store.create("trim", "/in.mp4")
        stream = stream_progress("trim", job.job_id, store, publisher, heartbeat_interval=0.05)
        await stream.__anext__()
        assert publisher.subscriber_count("trim", job.job_id) == 1
        await stream.aclose()
        assert publisher.subscriber_count("trim", job.job_id) == 0

    @pytest.mark.asyncio
    async def test_late_subscriber_after_publish_race(self, store, publisher):
        job = store.create("audio", "/in.mp4")
        store.mark_processing("audio", job.job_id)
        stream = stream_progress("audio", job.job_id, store, publisher, heartbeat_interval=1)
        await stream.__anext__()

        async def finish():
            await asyncio.sleep(0.05)
            store.complete("audio", job.job_id, "/out.mp3", 3)
            publisher.publish("audio", job.job_id,
                              CompletedEvent(job_id=job.job_id, kind="audio",
                                             output_ref="/out.mp3", output_size=3))

        task = asyncio.create_task(finish())
        items = [item async for item in stream]
        await task
        assert items[-1].status == "completed"
