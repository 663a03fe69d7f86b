"""Shared fixtures for subagain tests."""

import pytest_asyncio

from subagain import connection, pubsub
from tests.fakes import FakeConnection, FakeServer


@pytest_asyncio.fixture()
async def server():
    return FakeServer()


@pytest_asyncio.fixture()
async def open_session(server):
    """Factory for started pub/sub sessions on fresh fake connections."""
    sessions: list[pubsub.PubSub] = []

    def _open() -> pubsub.PubSub:
        session = pubsub.PubSub(FakeConnection(server))
        session.start()
        sessions.append(session)
        return session

    yield _open

    for session in sessions:
        await session.close()


@pytest_asyncio.fixture()
async def publisher(server):
    return connection.ActionableConnection(FakeConnection(server))
