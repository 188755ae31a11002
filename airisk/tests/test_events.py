from __future__ import annotations

import asyncio
import json
from datetime import date

import pytest

from airisk import events
from airisk.events import EventChannel, sse_frame


def _parse(frame: str) -> tuple[str, dict]:
    event_line, data_line, *_ = frame.split("\n")
    assert event_line.startswith("event: ")
    assert data_line.startswith("data: ")
    return event_line[len("event: "):], json.loads(data_line[len("data: "):])


class TestFraming:
    def test_frame_shape(self):
        frame = sse_frame("progress", {"message": "Starting analysis...", "step": 1, "totalSteps": 5})
        assert frame.endswith("\n\n")
        assert _parse(frame) == ("progress", {"message": "Starting analysis...", "step": 1, "totalSteps": 5})

    def test_non_json_values_are_stringified(self):
        _, data = _parse(sse_frame("complete", {"when": date(2026, 1, 2)}))
        assert data == {"when": "2026-01-02"}


class TestEventChannel:
    @pytest.mark.asyncio
    async def test_order_preserved_until_close(self):
        channel = EventChannel()
        channel.emit("batch_start", {"total": 2})
        channel.emit("company_start", {"index": 0})
        channel.close()
        channel.emit("late", {})

        received = [e async for e in channel.events()]
        assert received == [("batch_start", {"total": 2}), ("company_start", {"index": 0})]
        assert channel.closed

    def test_cancel_flag(self):
        channel = EventChannel()
        assert not channel.is_cancelled()
        channel.cancel()
        assert channel.is_cancelled()


class TestDrive:
    @pytest.mark.asyncio
    async def test_failure_becomes_error_event(self):
        async def run(channel):
            channel.emit("progress", {"message": "working"})
            raise RuntimeError("boom")

        channel = EventChannel()
        await events.drive(channel, run)
        received = [e async for e in channel.events()]
        assert received == [("progress", {"message": "working"}), ("error", {"message": "boom"})]

    @pytest.mark.asyncio
    async def test_stream_yields_frames(self):
        async def run(channel):
            channel.emit("progress", {"message": "one"})
            await asyncio.sleep(0)
            channel.emit("complete", {"ok": True})

        frames = [f async for f in events.stream(run)]
        assert [_parse(f)[0] for f in frames] == ["progress", "complete"]

    @pytest.mark.asyncio
    async def test_consumer_leaving_cancels_between_items(self):
        seen: list[int] = []

        async def run(channel):
            for i in range(5):
                if channel.is_cancelled():
                    return
                seen.append(i)
                channel.emit("company_start", {"index": i})
                await asyncio.sleep(0.01)

        gen = events.stream(run)
        first = await gen.__anext__()
        assert _parse(first) == ("company_start", {"index": 0})
        await gen.aclose()
        await asyncio.sleep(0.05)
        assert len(seen) < 5
