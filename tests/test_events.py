"""
Tests for pagesmith/services/events.py and pagesmith/background.py.
"""
import asyncio
import json

from pagesmith.background import TaskSupervisor
from pagesmith.services.events import EventChannel, ProgressEvent


class TestProgressEvent:
    def test_camel_case_without_nulls(self):
        event = ProgressEvent(type="complete", page_index=2, image_url="https://x/1.png")
        assert event.to_dict() == {"type": "complete", "pageIndex": 2, "imageUrl": "https://x/1.png"}

    def test_sse_frame(self):
        frame = ProgressEvent(type="error", code="GEN_6001", message="下线").to_sse()
        head, data, *_ = frame.split("\n")
        assert head == "event: error"
        assert json.loads(data[len("data: "):]) == {"type": "error", "code": "GEN_6001", "message": "下线"}
        assert frame.endswith("\n\n")

    def test_accepts_wire_names(self):
        event = ProgressEvent.model_validate({"type": "complete", "pageIndex": 1, "taskId": "t-1"})
        assert (event.page_index, event.task_id) == (1, "t-1")
        assert event.model_dump_json(by_alias=True, exclude_none=True) in event.to_sse()


class TestEventChannel:
    async def test_reader_drains_then_stops(self):
        channel = EventChannel()
        channel.publish(ProgressEvent(type="start"))
        channel.publish(ProgressEvent(type="finish"))
        channel.close()
        channel.publish(ProgressEvent(type="late"))

        assert [e.type async for e in channel] == ["start", "finish"]

    async def test_unsubscribed_channel_drops_events(self):
        channel = EventChannel()
        channel.publish(ProgressEvent(type="start"))
        channel.unsubscribe()
        channel.publish(ProgressEvent(type="complete"))
        channel.close()

        assert not channel.subscribed
        assert [e async for e in channel] == []

    async def test_sse_stream_with_heartbeat(self):
        channel = EventChannel(heartbeat=0.01)

        async def later():
            await asyncio.sleep(0.05)
            channel.publish(ProgressEvent(type="finish"))
            channel.close()

        producer = asyncio.create_task(later())
        frames = [f async for f in channel.sse()]
        await producer

        assert frames[0].startswith(": ping")
        assert frames[-1].startswith("event: finish")
        assert not channel.subscribed

    async def test_abandoned_stream_unsubscribes(self):
        channel = EventChannel()
        channel.publish(ProgressEvent(type="start"))
        stream = channel.sse()
        assert (await stream.__anext__()).startswith("event: start")
        await stream.aclose()

        assert not channel.subscribed
        channel.publish(ProgressEvent(type="complete"))


class TestTaskSupervisor:
    async def test_join_waits_for_spawned_work(self):
        supervisor = TaskSupervisor()
        done = []

        async def work():
            await asyncio.sleep(0.01)
            done.append(True)

        supervisor.spawn(work(), name="work")
        assert len(supervisor) == 1
        await supervisor.join()
        await asyncio.sleep(0)
        assert done == [True]
        assert len(supervisor) == 0

    async def test_errors_are_reported_not_raised(self):
        supervisor = TaskSupervisor()
        seen = []

        async def broken():
            raise RuntimeError("nope")

        supervisor.spawn(broken(), name="broken", on_error=seen.append)
        await supervisor.join()
        await asyncio.sleep(0)
        assert [str(e) for e in seen] == ["nope"]

    async def test_shutdown_cancels_stragglers(self):
        supervisor = TaskSupervisor()

        async def forever():
            await asyncio.sleep(60)

        task = supervisor.spawn(forever(), name="forever")
        await supervisor.shutdown(grace=0.01)
        assert task.cancelled()
