from __future__ import annotations

import asyncio

from cam_node.status import CameraStatus, StatusBroadcaster, StatusTable

from conftest import FakeClock


def test_status_table_updates_notify_listener() -> None:
    clock = FakeClock(1000.0)
    published: list[dict] = []
    table = StatusTable(clock=clock, on_change=published.append)

    table.update("cam1", CameraStatus.RESTARTING)
    clock.advance(2.5)
    table.update("cam1", CameraStatus.RECORDING)

    assert table.get("cam1").status is CameraStatus.RECORDING
    assert published[-1] == {"cam1": {"status": "recording", "lastUpdate": 1_002_500}}
    assert len(published) == 2


def test_touch_refreshes_timestamp_without_broadcast() -> None:
    clock = FakeClock(1000.0)
    published: list[dict] = []
    table = StatusTable(clock=clock, on_change=published.append)
    table.update("cam1", CameraStatus.RECORDING)

    clock.advance(40)
    assert table.seconds_since_update("cam1") == 40
    table.touch("cam1")

    assert table.seconds_since_update("cam1") == 0
    assert len(published) == 1
    assert table.touch("unknown") is None
    assert table.seconds_since_update("unknown") is None


def test_listener_failure_does_not_break_updates() -> None:
    def explode(_snapshot: dict) -> None:
        raise RuntimeError("observer failed")

    table = StatusTable(on_change=explode)
    entry = table.update("cam1", CameraStatus.ERROR)
    assert entry.status is CameraStatus.ERROR


def test_subscriber_receives_full_table_on_connect() -> None:
    async def runner() -> None:
        broadcaster = StatusBroadcaster()
        broadcaster.publish({"cam1": {"status": "recording", "lastUpdate": 1}})

        async with broadcaster.subscribe() as queue:
            assert broadcaster.subscriber_count == 1
            assert queue.get_nowait() == {"cam1": {"status": "recording", "lastUpdate": 1}}
        assert broadcaster.subscriber_count == 0

    asyncio.run(runner())


def test_subscriber_sees_touched_timestamps_from_live_table() -> None:
    clock = FakeClock(100.0)
    table = StatusTable(clock=clock)
    broadcaster = StatusBroadcaster(source=table.snapshot)
    table.set_listener(broadcaster.publish)

    async def runner() -> None:
        table.update("cam1", CameraStatus.RECORDING)
        clock.advance(30)
        table.touch("cam1")

        async with broadcaster.subscribe() as queue:
            assert queue.get_nowait() == {"cam1": {"status": "recording", "lastUpdate": 130_000}}

    asyncio.run(runner())


def test_slow_observer_only_keeps_latest_update() -> None:
    async def runner() -> None:
        broadcaster = StatusBroadcaster()
        async with broadcaster.subscribe() as slow, broadcaster.subscribe() as fast:
            slow.get_nowait()
            fast.get_nowait()

            broadcaster.publish({"cam1": {"status": "restarting", "lastUpdate": 1}})
            assert fast.get_nowait()["cam1"]["status"] == "restarting"
            broadcaster.publish({"cam1": {"status": "recording", "lastUpdate": 2}})
            broadcaster.publish({"cam1": {"status": "error", "lastUpdate": 3}})

            assert slow.qsize() == 1
            assert slow.get_nowait()["cam1"]["status"] == "error"
            assert fast.get_nowait()["cam1"]["status"] == "error"

    asyncio.run(runner())


def test_stream_yields_updates_in_order() -> None:
    async def runner() -> list[str]:
        broadcaster = StatusBroadcaster()
        received: list[str] = []

        async def consume() -> None:
            async for table in broadcaster.stream():
                received.append(table.get("cam1", {}).get("status", "none"))
                if len(received) == 2:
                    return

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        broadcaster.publish({"cam1": {"status": "recording", "lastUpdate": 5}})
        await asyncio.wait_for(task, timeout=1)
        return received

    assert asyncio.run(runner()) == ["none", "recording"]
