import asyncio

import pytest

from change_feed import ChangeFeedCoordinator
from resource_client import ChangeEvent, InMemoryResourceClient


class Counter:
    def __init__(self):
        self.calls = 0

    async def __call__(self):
        self.calls += 1


@pytest.mark.asyncio
async def test_burst_of_changes_reloads_once():
    client = InMemoryResourceClient()
    reload = Counter()
    feed = ChangeFeedCoordinator(client, ["adoptions", "adopt_animals"], reload, coalesce_seconds=0.05)
    feed.start()

    await client.insert("adoptions", {"name": "A"})
    await client.insert("adoptions", {"name": "B"})
    await client.insert("adopt_animals", {"name": "Rex"})
    await asyncio.sleep(0.15)

    assert feed.events_seen == 3
    assert reload.calls == 1
    assert not feed.pending


@pytest.mark.asyncio
async def test_duplicate_collection_is_subscribed_once():
    client = InMemoryResourceClient()
    feed = ChangeFeedCoordinator(client, ["donations", "donations"], Counter())
    feed.start()
    feed.start()
    assert client.subscriber_count("donations") == 1


@pytest.mark.asyncio
async def test_stop_releases_subscriptions_and_drops_pending_reload():
    client = InMemoryResourceClient()
    reload = Counter()
    feed = ChangeFeedCoordinator(client, ["contacts"], reload, coalesce_seconds=0.05)
    feed.start()

    await client.insert("contacts", {"name": "A"})
    feed.stop()
    await asyncio.sleep(0.1)

    assert client.subscriber_count() == 0
    assert reload.calls == 0
    assert not feed.pending

    # events after stop are ignored
    await client.insert("contacts", {"name": "B"})
    assert feed.events_seen == 1


@pytest.mark.asyncio
async def test_flush_runs_pending_reload_immediately():
    client = InMemoryResourceClient()
    reload = Counter()
    feed = ChangeFeedCoordinator(client, ["volunteers"], reload, coalesce_seconds=10)
    feed.start()

    assert await feed.flush() is False
    await client.insert("volunteers", {"name": "A"})
    assert await feed.flush() is True
    assert reload.calls == 1
    assert await feed.flush() is False


@pytest.mark.asyncio
async def test_failing_reload_is_logged_not_raised(caplog):
    client = InMemoryResourceClient()

    async def broken():
        raise RuntimeError("boom")

    feed = ChangeFeedCoordinator(client, ["gov_rules"], broken)
    feed.start()
    await client.insert("gov_rules", {"title": "x"})
    await feed.flush()
    assert "Feed-triggered reload of gov_rules failed" in caplog.text


def test_notify_without_running_loop_leaves_reload_pending():
    client = InMemoryResourceClient()
    reload = Counter()
    feed = ChangeFeedCoordinator(client, ["donations"], reload)
    feed.start()

    feed.notify(ChangeEvent(collection="donations", operation="insert", record_id="d1"))
    assert feed.pending

    asyncio.run(feed.flush())
    assert reload.calls == 1
