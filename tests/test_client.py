import pytest

import subagain
from subagain import client, error
from tests.fakes import FakeConnection


def test_from_url():
    redis = client.Redis.from_url("redis://127.0.0.1:6379")

    assert (redis.host, redis.port) == ("127.0.0.1", 6379)


def test_from_url_rejects_other_schemes():
    with pytest.raises(ValueError, match="redis://host:port"):
        client.Redis.from_url("rediss://127.0.0.1:6379")


@pytest.mark.asyncio
async def test_clients_are_independent():
    first, second = client.Redis("127.0.0.1", 6379), client.Redis("127.0.0.1", 6379)

    await first.get_connection(FakeConnection)

    assert len(first._connections) == 1
    assert second._connections == []


@pytest.mark.asyncio
async def test_pubsub_sessions_are_started_and_closed_with_the_client():
    async with subagain.Redis("127.0.0.1", 6379) as redis:
        session = await redis.pubsub(FakeConnection)
        plain = await redis.get_connection(FakeConnection)

        assert session.is_running()

    assert not session.is_running()
    assert not session.connection.is_alive()
    assert not plain.is_alive()

    with pytest.raises(error.NotConnectedError):
        await session.publish("channel1", "A")
