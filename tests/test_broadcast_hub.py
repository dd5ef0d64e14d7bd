from __future__ import annotations

import asyncio
import json
import threading
from datetime import UTC, datetime

import allure

from genqueue.broadcast.hub import BroadcastHub
from genqueue.broadcast.messages import new_task_message, update_message
from genqueue.jobs.models import TaskStatus, TaskView

pytestmark = [
    allure.epic("Generation Queue"),
    allure.feature("Live Broadcast"),
]


class _RecordingConnection:
    def __init__(self, *, fail: bool = False, delay: float = 0.0) -> None:
        self.fail = fail
        self.delay = delay
        self.sent: list[dict] = []
        self.closed = False

    async def send_text(self, data: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True

    def task_ids(self) -> list[int]:
        return [message["data"]["id"] for message in self.sent]


def _task(task_id: int, status: TaskStatus = TaskStatus.PENDING) -> TaskView:
    now = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
    return TaskView(
        id=task_id,
        prompt=f"prompt {task_id}",
        status=status,
        result_path=None,
        failure_reason=None,
        error_summary=None,
        created_at=now,
        updated_at=now,
    )


def test_every_connection_receives_events_in_publish_order() -> None:
    async def scenario() -> tuple[_RecordingConnection, _RecordingConnection]:
        hub = BroadcastHub()
        await hub.start()
        first, second = _RecordingConnection(), _RecordingConnection()
        hub.register(first)
        hub.register(second)
        for task_id in range(1, 6):
            assert hub.publish(update_message(_task(task_id, TaskStatus.PROCESSING))) is True
        await hub.wait_idle()
        await hub.stop()
        return first, second

    first, second = asyncio.run(scenario())

    assert first.task_ids() == [1, 2, 3, 4, 5]
    assert second.task_ids() == [1, 2, 3, 4, 5]
    assert {message["type"] for message in first.sent} == {"update"}
    assert first.sent[0]["data"]["status"] == "Processing"


def test_payload_matches_wire_format() -> None:
    async def scenario() -> _RecordingConnection:
        hub = BroadcastHub()
        await hub.start()
        connection = _RecordingConnection()
        hub.register(connection)
        hub.publish(new_task_message(_task(42)))
        await hub.wait_idle()
        await hub.stop()
        return connection

    connection = asyncio.run(scenario())

    assert connection.sent == [
        {
            "type": "new_task",
            "data": {
                "id": 42,
                "prompt": "prompt 42",
                "status": "Pending",
                "result_path": None,
                "created_at": "2026-10-19T12:00:00Z",
                "updated_at": "2026-10-19T12:00:00Z",
            },
        },
    ]


def test_failed_connection_is_pruned_and_others_keep_receiving() -> None:
    async def scenario() -> tuple[BroadcastHub, _RecordingConnection, _RecordingConnection]:
        hub = BroadcastHub()
        await hub.start()
        healthy, broken = _RecordingConnection(), _RecordingConnection(fail=True)
        hub.register(broken)
        hub.register(healthy)
        hub.publish(update_message(_task(1)))
        hub.publish(update_message(_task(2)))
        await hub.wait_idle()
        count = hub.connection_count
        await hub.stop()
        assert count == 1
        return hub, healthy, broken

    _, healthy, broken = asyncio.run(scenario())

    assert healthy.task_ids() == [1, 2]
    assert broken.sent == []
    assert broken.closed is True


def test_slow_connection_is_dropped_after_send_timeout() -> None:
    async def scenario() -> tuple[int, _RecordingConnection, _RecordingConnection]:
        hub = BroadcastHub(send_timeout_seconds=0.05)
        await hub.start()
        slow, fast = _RecordingConnection(delay=1.0), _RecordingConnection()
        hub.register(slow)
        hub.register(fast)
        hub.publish(update_message(_task(1)))
        await hub.wait_idle()
        count = hub.connection_count
        await hub.stop()
        return count, slow, fast

    count, slow, fast = asyncio.run(scenario())

    assert count == 1
    assert slow.closed is True
    assert slow.sent == []
    assert fast.task_ids() == [1]


def test_publish_from_other_thread_preserves_order() -> None:
    async def scenario() -> _RecordingConnection:
        hub = BroadcastHub()
        await hub.start()
        connection = _RecordingConnection()
        hub.register(connection)

        def _publisher() -> None:
            for task_id in range(1, 51):
                hub.publish(update_message(_task(task_id)))

        thread = threading.Thread(target=_publisher)
        thread.start()
        await asyncio.to_thread(thread.join)
        await hub.wait_idle()
        await hub.stop()
        return connection

    connection = asyncio.run(scenario())

    assert connection.task_ids() == list(range(1, 51))


def test_register_is_idempotent_and_unregister_stops_delivery() -> None:
    async def scenario() -> tuple[_RecordingConnection, _RecordingConnection]:
        hub = BroadcastHub()
        await hub.start()
        kept, removed = _RecordingConnection(), _RecordingConnection()
        hub.register(kept)
        hub.register(kept)
        hub.register(removed)
        hub.unregister(removed)
        hub.unregister(removed)
        assert hub.connection_count == 1
        hub.publish(update_message(_task(1)))
        await hub.wait_idle()
        await hub.stop()
        return kept, removed

    kept, removed = asyncio.run(scenario())

    assert kept.task_ids() == [1]
    assert removed.sent == []


def test_publish_is_refused_when_hub_is_not_running() -> None:
    hub = BroadcastHub()
    assert hub.publish(update_message(_task(1))) is False

    async def scenario() -> bool:
        await hub.start()
        await hub.stop()
        return hub.publish(update_message(_task(2)))

    assert asyncio.run(scenario()) is False
    assert hub.running is False


def test_stop_delivers_already_published_events() -> None:
    async def scenario() -> _RecordingConnection:
        hub = BroadcastHub()
        await hub.start()
        connection = _RecordingConnection()
        hub.register(connection)
        hub.publish(update_message(_task(1)))
        hub.publish(update_message(_task(2)))
        await hub.stop()
        return connection

    connection = asyncio.run(scenario())

    assert connection.task_ids() == [1, 2]
