import asyncio
import json
import uuid
from types import SimpleNamespace

import pytest

from fleetcore.monitor import (
    IndexNotFoundError,
    PolicyMonitor,
    Subscription,
    group_by_latest,
)
from fleetcore.parsed_policy import Policy


class FakeIndexMonitor:
    def __init__(self):
        self.subscriptions = []
        self.unsubscribed = []

    def subscribe(self):
        sub = SimpleNamespace(output=asyncio.Queue())
        self.subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub):
        self.unsubscribed.append(sub)

    async def wait_subscribed(self):
        while not self.subscriptions:
            await asyncio.sleep(0)

    async def notify(self, hits):
        await self.wait_subscribed()
        for sub in self.subscriptions:
            await sub.output.put(hits)


def make_policy(policy_id, rev, coord, data=b"{}"):
    return Policy(
        id=uuid.uuid4().hex,
        version=1,
        seq_no=1,
        policy_id=policy_id,
        revision_idx=rev,
        coordinator_idx=coord,
        data=data,
    )


def hit_for(policy):
    return {
        "_id": policy.id,
        "_seq_no": policy.seq_no,
        "_version": policy.version,
        "_source": json.dumps(policy.to_dict()).encode(),
    }


async def no_policies():
    return []


async def stop(task):
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_new_policy():
    mm = FakeIndexMonitor()
    monitor = PolicyMonitor(mm, no_policies, 0)
    task = asyncio.create_task(monitor.run())

    policy_id = str(uuid.uuid4())
    sub = monitor.subscribe(str(uuid.uuid4()), policy_id, 0, 0)
    policy = make_policy(policy_id, 1, 1)
    await mm.notify([hit_for(policy)])

    parsed = await asyncio.wait_for(sub.output.get(), 2)
    assert parsed.policy == policy
    monitor.unsubscribe(sub)
    await stop(task)


@pytest.mark.asyncio
async def test_same_policy_not_delivered():
    mm = FakeIndexMonitor()
    monitor = PolicyMonitor(mm, no_policies, 0)
    task = asyncio.create_task(monitor.run())

    policy_id = str(uuid.uuid4())
    sub = monitor.subscribe(str(uuid.uuid4()), policy_id, 1, 1)
    await mm.notify([hit_for(make_policy(policy_id, 1, 1))])

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(sub.output.get(), 0.3)
    await stop(task)


@pytest.mark.asyncio
async def test_new_policy_uncoordinated_not_delivered():
    mm = FakeIndexMonitor()
    monitor = PolicyMonitor(mm, no_policies, 0)
    task = asyncio.create_task(monitor.run())

    policy_id = str(uuid.uuid4())
    sub = monitor.subscribe(str(uuid.uuid4()), policy_id, 1, 1)
    await mm.notify([hit_for(make_policy(policy_id, 2, 0))])

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(sub.output.get(), 0.3)
    await stop(task)


@pytest.mark.asyncio
@pytest.mark.parametrize("delay", [0, 0.1])
async def test_new_policy_exists(delay):
    mm = FakeIndexMonitor()
    policy_id = str(uuid.uuid4())
    policy = make_policy(policy_id, 2, 1)

    async def fetch():
        return [policy]

    monitor = PolicyMonitor(mm, fetch, 0)

    async def delayed_run():
        await asyncio.sleep(delay)
        await monitor.run()

    task = asyncio.create_task(delayed_run())
    sub = monitor.subscribe(str(uuid.uuid4()), policy_id, 1, 1)

    parsed = await asyncio.wait_for(sub.output.get(), 2)
    assert parsed.policy == policy
    monitor.unsubscribe(sub)
    await stop(task)


@pytest.mark.asyncio
async def test_known_policy_is_delivered_immediately():
    mm = FakeIndexMonitor()
    monitor = PolicyMonitor(mm, no_policies, 0)
    task = asyncio.create_task(monitor.run())

    policy_id = str(uuid.uuid4())
    first = monitor.subscribe("agent-1", policy_id, 0, 0)
    policy = make_policy(policy_id, 3, 2)
    await mm.notify([hit_for(policy)])
    await asyncio.wait_for(first.output.get(), 2)

    second = monitor.subscribe("agent-2", policy_id, 1, 0)
    assert second.idx == 0
    assert second.output.get_nowait().policy == policy
    await stop(task)


@pytest.mark.asyncio
async def test_unsubscribed_gets_nothing():
    mm = FakeIndexMonitor()
    monitor = PolicyMonitor(mm, no_policies, 0)
    task = asyncio.create_task(monitor.run())

    policy_id = str(uuid.uuid4())
    sub = monitor.subscribe("agent", policy_id, 0, 0)
    monitor.unsubscribe(sub)
    await mm.notify([hit_for(make_policy(policy_id, 1, 1))])

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(sub.output.get(), 0.3)
    await stop(task)


@pytest.mark.asyncio
async def test_run_unsubscribes_from_index_monitor_on_cancel():
    mm = FakeIndexMonitor()
    monitor = PolicyMonitor(mm, no_policies, 0)
    task = asyncio.create_task(monitor.run())
    await mm.wait_subscribed()
    await stop(task)
    assert mm.unsubscribed == mm.subscriptions


@pytest.mark.asyncio
async def test_index_not_found_keeps_running():
    mm = FakeIndexMonitor()

    async def fetch():
        raise IndexNotFoundError("index not found")

    monitor = PolicyMonitor(mm, fetch, 0)
    task = asyncio.create_task(monitor.run())
    policy_id = str(uuid.uuid4())
    sub = monitor.subscribe("agent", policy_id, 0, 0)
    policy = make_policy(policy_id, 1, 1)
    await mm.notify([hit_for(policy)])

    parsed = await asyncio.wait_for(sub.output.get(), 2)
    assert parsed.policy == policy
    assert not task.done()
    await stop(task)


@pytest.mark.asyncio
async def test_fetch_error_stops_run():
    mm = FakeIndexMonitor()

    async def fetch():
        raise OSError("connection refused")

    monitor = PolicyMonitor(mm, fetch, 0)
    task = asyncio.create_task(monitor.run())
    monitor.subscribe("agent", "some-policy", 0, 0)
    with pytest.raises(OSError) as excinfo:
        await asyncio.wait_for(task, 2)
    assert str(excinfo.value) == "connection refused"
    assert task.done()


@pytest.mark.asyncio
async def test_malformed_policy_data_fails_rollout():
    mm = FakeIndexMonitor()
    monitor = PolicyMonitor(mm, no_policies, 0)
    task = asyncio.create_task(monitor.run())
    bad = {"_id": "x", "_source": {"policy_id": "p1", "revision_idx": 1,
                                   "coordinator_idx": 1, "data": "{not json"}}
    await mm.notify([bad])
    with pytest.raises(RuntimeError) as excinfo:
        await asyncio.wait_for(task, 2)
    assert str(excinfo.value).startswith("failed rolling out policy p1")
    assert task.done()


@pytest.mark.asyncio
async def test_throttled_rollout_delivers_to_all():
    mm = FakeIndexMonitor()
    monitor = PolicyMonitor(mm, no_policies, 0.05)
    task = asyncio.create_task(monitor.run())

    policy_id = str(uuid.uuid4())
    subs = [monitor.subscribe(f"agent-{n}", policy_id, 0, 0) for n in range(2)]
    policy = make_policy(policy_id, 1, 1)
    loop = asyncio.get_running_loop()
    start = loop.time()
    await mm.notify([hit_for(policy)])

    for sub in subs:
        parsed = await asyncio.wait_for(sub.output.get(), 2)
        assert parsed.policy == policy
    assert loop.time() - start >= 0.09
    await stop(task)


@pytest.mark.asyncio
async def test_subscribe_rejects_negative_indexes():
    monitor = PolicyMonitor(FakeIndexMonitor(), no_policies, 0)
    with pytest.raises(ValueError, match="revisionIdx"):
        monitor.subscribe("agent", "p", -1, 0)
    with pytest.raises(ValueError, match="coordinatorIdx"):
        monitor.subscribe("agent", "p", 0, -1)


@pytest.mark.asyncio
async def test_unsubscribe_rejects_foreign_objects():
    monitor = PolicyMonitor(FakeIndexMonitor(), no_policies, 0)
    with pytest.raises(TypeError):
        monitor.unsubscribe(object())


@pytest.mark.asyncio
async def test_subscriptions_get_distinct_indexes():
    monitor = PolicyMonitor(FakeIndexMonitor(), no_policies, 0)
    first = monitor.subscribe("a", "p", 0, 0)
    second = monitor.subscribe("b", "p", 0, 0)
    assert isinstance(first, Subscription)
    assert first.idx > 0 and second.idx > 0
    assert first.idx != second.idx


def test_group_by_latest():
    policies = [
        make_policy("a", 1, 1),
        make_policy("a", 2, 1),
        make_policy("a", 2, 3),
        make_policy("a", 2, 2),
        make_policy("b", 5, 0),
        make_policy("b", 4, 9),
    ]
    latest = group_by_latest(policies)
    assert set(latest) == {"a", "b"}
    assert (latest["a"].revision_idx, latest["a"].coordinator_idx) == (2, 3)
    assert (latest["b"].revision_idx, latest["b"].coordinator_idx) == (5, 0)


def test_group_by_latest_empty():
    assert group_by_latest([]) == {}