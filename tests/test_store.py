import asyncio

import pytest

from store import INF


@pytest.fixture(params=["memory", "redis"])
def store(request, memory_store, redis_store):
    return memory_store if request.param == "memory" else redis_store


@pytest.mark.asyncio
async def test_set_if_absent_and_compare_and_delete(store):
    assert await store.set_if_absent("lock:a", "h1", 5000) is True
    assert await store.set_if_absent("lock:a", "h2", 5000) is False
    assert await store.get("lock:a") == "h1"

    assert await store.delete_if_equals("lock:a", "h2") is False
    assert await store.get("lock:a") == "h1"
    assert await store.delete_if_equals("lock:a", "h1") is True
    assert await store.get("lock:a") is None
    assert await store.delete_if_equals("lock:a", "h1") is False


@pytest.mark.asyncio
async def test_extend_if_equals_adds_to_remaining_ttl(store):
    await store.set_if_absent("lock:b", "h1", 5000)

    assert await store.extend_if_equals("lock:b", "other", 3000) is None
    new_ttl = await store.extend_if_equals("lock:b", "h1", 3000)
    assert 7000 < new_ttl <= 8000
    assert 7000 < await store.ttl_ms("lock:b") <= 8000


@pytest.mark.asyncio
async def test_set_only_if_exists_never_creates(store):
    assert await store.set("entry", "v1", ttl_ms=1000, only_if_exists=True) is False
    assert await store.get("entry") is None

    await store.set("entry", "v1", ttl_ms=1000)
    assert await store.set("entry", "v2", ttl_ms=1000, only_if_exists=True) is True
    assert await store.get("entry") == "v2"


@pytest.mark.asyncio
async def test_ttl_and_increment(store):
    assert await store.ttl_ms("missing") is None
    await store.set("plain", "x")
    assert await store.ttl_ms("plain") is None

    assert await store.increment("counter") == 1
    assert await store.increment("counter", 5) == 6
    assert await store.expire("counter", 2000) is True
    assert 0 < await store.ttl_ms("counter") <= 2000
    assert await store.expire("missing", 2000) is False


@pytest.mark.asyncio
async def test_sorted_set_operations(store):
    for member, score in [("c", 3), ("a", 1), ("b", 2), ("d", 4)]:
        await store.zadd("z", member, score)

    assert await store.zcard("z") == 4
    assert await store.zrange("z", 0, -1) == ["a", "b", "c", "d"]
    assert await store.zrange("z", -2, -1) == ["c", "d"]
    assert await store.zrange("z", 0, 1, desc=True) == ["d", "c"]
    assert await store.zrange_with_scores("z", 0, 0) == [("a", 1.0)]
    assert await store.zrangebyscore("z", -INF, 2) == ["a", "b"]

    assert await store.zpopmin("z") == ("a", 1.0)
    assert await store.zrem("z", "b") is True
    assert await store.zrem("z", "b") is False

    assert await store.zremrangebyrank("z", 0, -2) == 1
    assert await store.zrange("z", 0, -1) == ["d"]
    assert await store.zremrangebyscore("z", -INF, 10) == 1
    assert await store.zcard("z") == 0
    assert await store.zpopmin("z") is None


@pytest.mark.asyncio
async def test_concurrent_zpopmin_hands_out_each_member_once(store):
    for i in range(20):
        await store.zadd("jobs", f"job-{i}", i)

    popped = await asyncio.gather(*[store.zpopmin("jobs") for _ in range(30)])
    members = [p[0] for p in popped if p is not None]
    assert sorted(members) == sorted(f"job-{i}" for i in range(20))


@pytest.mark.asyncio
async def test_publish_reaches_subscriber(store):
    messages = store.subscribe("channel:test")
    receiver = asyncio.create_task(messages.__anext__())
    # let the subscription register before publishing
    for _ in range(5):
        await asyncio.sleep(0.01)

    assert await store.publish("channel:test", "hello") >= 1
    assert await asyncio.wait_for(receiver, timeout=2) == "hello"
    await messages.aclose()


@pytest.mark.asyncio
async def test_memory_store_expires_on_clock(memory_store, clock):
    await memory_store.set_if_absent("lease", "h1", 1000)
    await memory_store.zadd("roster", "p1", 1)
    await memory_store.expire("roster", 500)

    clock.advance(600)
    assert await memory_store.zcard("roster") == 0
    assert await memory_store.get("lease") == "h1"

    clock.advance(500)
    assert await memory_store.get("lease") is None
    assert await memory_store.set_if_absent("lease", "h2", 1000) is True


@pytest.mark.asyncio
async def test_memory_store_sweep(memory_store, clock):
    await memory_store.set("a", "1", ttl_ms=100)
    await memory_store.set("b", "1", ttl_ms=1000)
    clock.advance(200)
    assert memory_store.sweep() == 1
    assert await memory_store.get("b") == "1"


@pytest.mark.asyncio
async def test_redis_store_time_is_milliseconds(redis_store):
    now = await redis_store.time_ms()
    assert now > 1_600_000_000_000
