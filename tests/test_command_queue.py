import asyncio

import pytest

from grbl_link.command_queue import CommandQueue
from grbl_link.core import Command


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _command(index: int, clock: FakeClock) -> Command:
    loop = asyncio.get_running_loop()
    return Command(
        command_id=f"cmd_{index}",
        payload=f"G0 X{index}",
        submitted_at=clock(),
        timeout=5.0,
        future=loop.create_future(),
    )


def test_queue_rejects_non_positive_capacity() -> None:
    with pytest.raises(ValueError):
        CommandQueue(0)


@pytest.mark.asyncio
async def test_queue_is_fifo() -> None:
    clock = FakeClock()
    queue = CommandQueue(10, clock=clock)
    for index in range(3):
        assert queue.enqueue(_command(index, clock))

    assert queue.peek().command_id == "cmd_0"
    assert [queue.dequeue().command_id for _ in range(3)] == [
        "cmd_0",
        "cmd_1",
        "cmd_2",
    ]
    assert queue.dequeue() is None
    assert queue.is_empty


@pytest.mark.asyncio
async def test_queue_refuses_when_full() -> None:
    clock = FakeClock()
    queue = CommandQueue(2, clock=clock)

    assert queue.enqueue(_command(0, clock))
    assert queue.enqueue(_command(1, clock))
    assert queue.is_full
    assert queue.enqueue(_command(2, clock)) is False
    assert queue.size == 2


@pytest.mark.asyncio
async def test_remove_by_id_and_find_matching() -> None:
    clock = FakeClock()
    queue = CommandQueue(10, clock=clock)
    for index in range(4):
        queue.enqueue(_command(index, clock))

    removed = queue.remove_by_id("cmd_2")
    assert removed is not None and removed.payload == "G0 X2"
    assert queue.remove_by_id("missing") is None

    matches = queue.find_matching(lambda command: command.payload.endswith("3"))
    assert [command.command_id for command in matches] == ["cmd_3"]
    assert [item["id"] for item in queue.snapshot()] == ["cmd_0", "cmd_1", "cmd_3"]


@pytest.mark.asyncio
async def test_remove_older_than_only_pops_stale_head() -> None:
    clock = FakeClock()
    queue = CommandQueue(10, clock=clock)
    queue.enqueue(_command(0, clock))
    clock.advance(5)
    queue.enqueue(_command(1, clock))
    clock.advance(5)

    expired = queue.remove_older_than(7)

    assert [command.command_id for command in expired] == ["cmd_0"]
    assert queue.size == 1
    assert queue.peek().command_id == "cmd_1"


@pytest.mark.asyncio
async def test_clear_returns_commands_and_stats_report_waits() -> None:
    clock = FakeClock()
    queue = CommandQueue(4, clock=clock)
    queue.enqueue(_command(0, clock))
    clock.advance(2)
    queue.enqueue(_command(1, clock))
    clock.advance(1)

    stats = queue.stats()
    assert stats["size"] == 2
    assert stats["utilization"] == 50.0
    assert stats["maxWaitTime"] == pytest.approx(3.0)
    assert stats["minWaitTime"] == pytest.approx(1.0)
    assert stats["oldestCommand"] == "G0 X0"

    cleared = queue.clear()
    assert [command.command_id for command in cleared] == ["cmd_0", "cmd_1"]
    assert queue.stats()["isEmpty"] is True
