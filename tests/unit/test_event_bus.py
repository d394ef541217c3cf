from __future__ import annotations

import asyncio

import pytest  # type: ignore

from settlement.services.event_bus import EventBus, partition_for


def test_partition_is_stable() -> None:
    assert partition_for("evt-1", 8) == partition_for("evt-1", 8)
    assert 0 <= partition_for("evt-1", 8) < 8
    with pytest.raises(ValueError):
        EventBus(0)


@pytest.mark.asyncio  # type: ignore
async def test_fan_out_to_every_group_in_order() -> None:
    bus = EventBus(partitions=4)
    bus.declare("ledger", ["payment.confirmed"])
    bus.declare("transfer", ["payment.confirmed"])
    for n in range(3):
        await bus.publish("payment.confirmed", {"n": n}, key="evt-1")
    await bus.publish("nobody.listens", {"n": 99}, key="evt-1")
    assert bus.pending == 6

    partition = bus.partition_for("evt-1")
    seen = {"ledger": [], "transfer": []}

    async def consume(group: str) -> None:
        stream = bus.subscribe(group, partition)
        async for topic, data in stream:
            seen[group].append(data["n"])
            if len(seen[group]) == 3:
                break
        # Closing the stream acknowledges the last message
        await stream.aclose()

    await asyncio.wait_for(asyncio.gather(consume("ledger"), consume("transfer")), 1)
    assert seen == {"ledger": [0, 1, 2], "transfer": [0, 1, 2]}
    await asyncio.wait_for(bus.wait_idle(), 1)
    assert bus.pending == 0


@pytest.mark.asyncio  # type: ignore
async def test_wait_idle_blocks_until_handled() -> None:
    bus = EventBus(partitions=1)
    bus.declare("g", ["t"])
    await bus.publish("t", {}, key="k")
    waiter = asyncio.create_task(bus.wait_idle())
    await asyncio.sleep(0)
    assert not waiter.done()

    stream = bus.subscribe("g", 0)
    await stream.__anext__()
    assert not waiter.done()
    await stream.aclose()
    await asyncio.wait_for(waiter, 1)
