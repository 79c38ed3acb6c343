"""
Tests for progress fan-out and the per-case analysis run registry.
"""
import asyncio
import json

import pytest

from casefusion.api.streaming import progress_event_stream
from casefusion.errors import AnalysisAlreadyRunningError
from casefusion.models.schemas import AnalysisProgress
from casefusion.services.analysis_runs import AnalysisRunManager
from casefusion.services.progress_bus import ProgressBus


def _progress(value, step="Working", status="running"):
    return AnalysisProgress(step=step, progress=value, status=status)


async def _drain(sub):
    events = []
    while True:
        event = await sub.get(timeout=1)
        if event is None:
            return events
        events.append(event)


class TestProgressBus:

    async def test_every_subscriber_sees_every_event(self):
        bus = ProgressBus("case-1", queue_size=10)
        first, second = bus.subscribe(), bus.subscribe()

        for value in (0, 40, 100):
            bus.publish(_progress(value))
        bus.close()

        assert [e.progress for e in await _drain(first)] == [0, 40, 100]
        assert [e.progress for e in await _drain(second)] == [0, 40, 100]
        assert bus.subscriber_count == 0

    async def test_progress_never_goes_backwards(self):
        bus = ProgressBus("case-1")

        bus.publish(_progress(30))
        clamped = bus.publish(_progress(10))

        assert clamped.progress == 30
        assert bus.last_progress == 30
        assert [e.progress for e in bus.history] == [30, 30]

    async def test_slow_subscriber_is_dropped_without_blocking(self):
        bus = ProgressBus("case-1", queue_size=2)
        slow = bus.subscribe()
        fast = bus.subscribe()

        bus.publish(_progress(1))
        await fast.get(timeout=1)
        bus.publish(_progress(2))
        await fast.get(timeout=1)
        bus.publish(_progress(3))

        assert slow.dropped
        assert not fast.dropped
        assert bus.subscriber_count == 1
        assert [e.progress for e in await _drain(slow)] == [1, 2]

    async def test_late_subscriber_gets_history_replayed(self):
        bus = ProgressBus("case-1", queue_size=10)
        bus.publish(_progress(0))
        bus.publish(_progress(16))

        late = bus.subscribe()
        bus.publish(_progress(30))
        bus.close()

        assert [e.progress for e in await _drain(late)] == [0, 16, 30]

    async def test_subscribing_to_closed_bus_ends_immediately(self):
        bus = ProgressBus("case-1", queue_size=10)
        bus.publish(_progress(100, status="completed"))
        bus.close()

        sub = bus.subscribe()

        assert [e.status for e in await _drain(sub)] == ["completed"]
        assert await sub.get(timeout=1) is None

    async def test_get_times_out_when_idle(self):
        bus = ProgressBus("case-1")
        sub = bus.subscribe()

        with pytest.raises(asyncio.TimeoutError):
            await sub.get(timeout=0.01)

    async def test_close_records_error(self):
        bus = ProgressBus("case-1")
        bus.close(error="No evidence found for case")
        bus.close()

        assert bus.closed
        assert bus.error == "No evidence found for case"

    async def test_unsubscribe_detaches_reader(self):
        bus = ProgressBus("case-1")
        sub = bus.subscribe()

        sub.close()
        bus.publish(_progress(10))

        assert bus.subscriber_count == 0


class TestAnalysisRunManager:

    async def test_single_active_run_per_case(self):
        release = asyncio.Event()
        started = []

        async def pipeline(case_id, bus):
            started.append(case_id)
            bus.publish(_progress(0))
            await release.wait()

        manager = AnalysisRunManager(pipeline, queue_size=10)
        run = manager.start("case-1")

        assert manager.start("case-1") is run
        with pytest.raises(AnalysisAlreadyRunningError):
            manager.start_new("case-1")

        other = manager.start_new("case-2")
        assert other is not run

        release.set()
        await manager.wait("case-1")
        await manager.wait("case-2")

        assert sorted(started) == ["case-1", "case-2"]
        assert not manager.is_running("case-1")
        assert run.bus.closed and run.bus.error is None

    async def test_finished_run_allows_a_new_one(self):
        async def pipeline(case_id, bus):
            bus.publish(_progress(100, status="completed"))

        manager = AnalysisRunManager(pipeline)
        first = manager.start_new("case-1")
        await manager.wait("case-1")

        second = manager.start_new("case-1")
        await manager.wait("case-1")

        assert second is not first
        assert second.bus is not first.bus

    async def test_pipeline_failure_closes_bus_with_error(self):
        async def pipeline(case_id, bus):
            raise RuntimeError("disk full")

        manager = AnalysisRunManager(pipeline)
        run = manager.start("case-1")
        await manager.wait("case-1")

        assert run.done
        assert run.bus.closed
        assert run.bus.error == "disk full"

    async def test_reader_leaving_does_not_cancel_run(self):
        release = asyncio.Event()

        async def pipeline(case_id, bus):
            await release.wait()
            bus.publish(_progress(100, status="completed"))

        manager = AnalysisRunManager(pipeline)
        run = manager.start("case-1")
        sub = run.bus.subscribe()
        sub.close()

        release.set()
        await manager.wait("case-1")

        assert not run.task.cancelled()
        assert run.bus.last.status == "completed"

    async def test_shutdown_cancels_active_runs(self):
        async def pipeline(case_id, bus):
            await asyncio.sleep(60)

        manager = AnalysisRunManager(pipeline)
        run = manager.start("case-1")
        await asyncio.sleep(0)

        await manager.shutdown()

        assert run.task.cancelled()
        assert run.bus.error == "Analysis cancelled"
        assert not manager.is_running("case-1")


class ConnectedRequest:
    async def is_disconnected(self):
        return False


async def _collect_stream(bus, heartbeat_seconds):
    frames = []
    stream = progress_event_stream(ConnectedRequest(), bus, bus.subscribe(), heartbeat_seconds=heartbeat_seconds)
    async for frame in stream:
        frames.append(json.loads(frame[len("data: "):]))
    return frames


class TestProgressEventStream:

    async def test_heartbeats_keep_flowing_during_busy_progress(self):
        bus = ProgressBus("case-1", queue_size=100)

        async def publish():
            for value in range(40):
                bus.publish(_progress(value))
                await asyncio.sleep(0.02)
            bus.close()

        publisher = asyncio.create_task(publish())
        frames = await _collect_stream(bus, heartbeat_seconds=0.1)
        await publisher

        heartbeats = [f for f in frames if f.get("type") == "heartbeat"]
        progress = [f["progress"] for f in frames if "type" not in f]
        assert len(heartbeats) >= 3
        assert progress == list(range(40))
        assert frames[0] == {"type": "connected"}
        assert frames[-1] == {"type": "complete"}

    async def test_quiet_stream_sends_heartbeats_then_error(self):
        bus = ProgressBus("case-1", queue_size=10)

        async def fail_later():
            await asyncio.sleep(0.25)
            bus.close(error="No evidence found for case")

        failer = asyncio.create_task(fail_later())
        frames = await _collect_stream(bus, heartbeat_seconds=0.05)
        await failer

        assert len([f for f in frames if f.get("type") == "heartbeat"]) >= 2
        assert frames[-1] == {
            "type": "error",
            "error": "No evidence found for case",
            "step": "Analysis failed",
            "status": "error",
        }
