import json

import pytest
from redis.exceptions import RedisError

from relaylb.models.schemas import BackendStatus


@pytest.mark.anyio
async def test_load_healthy_backends_filters_and_keeps_registry_order(fake_redis, store):
    fake_redis.add_backend("b2", "http://w2", "healthy")
    fake_redis.add_backend("b1", "http://w1", "unhealthy")
    fake_redis.add_backend("b3", "http://w3", "healthy")
    fake_redis.add_backend("b4", None, "healthy")  # no url
    fake_redis.add_backend("b5", "http://w5")  # never checked

    backends = await store.load_healthy_backends()

    assert [(b.id, b.url) for b in backends] == [("b2", "http://w2"), ("b3", "http://w3")]


@pytest.mark.anyio
async def test_load_skips_backend_whose_hash_cannot_be_read(fake_redis, store):
    fake_redis.add_backend("b1", "http://w1", "healthy")
    fake_redis.add_backend("b2", "http://w2", "healthy")
    fake_redis.fail_keys.add("backend:b1")

    backends = await store.load_healthy_backends()

    assert [b.id for b in backends] == ["b2"]


@pytest.mark.anyio
async def test_load_propagates_failure_to_read_backend_set(fake_redis, store):
    fake_redis.fail.add("smembers")
    with pytest.raises(RedisError):
        await store.load_healthy_backends()


@pytest.mark.anyio
async def test_get_backend_parses_fields(fake_redis, store):
    fake_redis.add_backend("b1", "http://w1", "healthy")
    fake_redis.hashes["backend:b1"]["last_checked"] = "1700000000"

    backend = await store.get_backend("b1")

    assert backend.status is BackendStatus.HEALTHY
    assert backend.last_checked == 1700000000
    assert await store.get_backend("missing") is None


@pytest.mark.anyio
async def test_get_backend_ignores_non_decimal_timestamp(fake_redis, store):
    fake_redis.add_backend("b1", "http://w1", "healthy")
    # "²" is a digit to str.isdigit but not something int() accepts
    fake_redis.hashes["backend:b1"]["last_checked"] = "\u00b2"

    backend = await store.get_backend("b1")

    assert backend.url == "http://w1"
    assert backend.last_checked is None


@pytest.mark.anyio
async def test_update_status_writes_status_and_timestamp(fake_redis, store):
    fake_redis.add_backend("b1", "http://w1")

    await store.update_status("b1", BackendStatus.UNHEALTHY, 1700000042)

    assert fake_redis.hashes["backend:b1"] == {
        "url": "http://w1",
        "status": "unhealthy",
        "last_checked": "1700000042",
    }


@pytest.mark.anyio
async def test_publish_change_sends_json_event(fake_redis, store):
    await store.publish_change("b1", BackendStatus.HEALTHY)

    channel, message = fake_redis.published[-1]
    assert channel == "backend_changes"
    assert json.loads(message) == {"backend_id": "b1", "status": "healthy"}


@pytest.mark.anyio
async def test_register_backend_leaves_status_unset(fake_redis, store):
    await store.register_backend("b7", "http://w7")

    assert await store.backend_ids() == ["b7"]
    assert fake_redis.hashes["backend:b7"] == {"url": "http://w7"}


@pytest.mark.anyio
async def test_subscription_yields_only_message_payloads(fake_redis, store):
    sub = await store.subscribe_changes()
    await store.publish_change("b1", "healthy")
    await store.publish_change("b2", "unhealthy")

    received = []
    async for payload in sub.payloads():
        received.append(json.loads(payload)["backend_id"])
        if len(received) == 2:
            break
    await sub.close()

    assert received == ["b1", "b2"]
    assert fake_redis.published and not fake_redis._subscribers
