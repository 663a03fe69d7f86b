"""Module containing Redis client implementation."""

import asyncio
import collections.abc
import dataclasses
import types
import typing

from subagain import connection, protocol, pubsub

if typing.TYPE_CHECKING:
    import typing_extensions

__all__: collections.abc.Sequence[str] = ("Redis",)


ConnectionT = typing.TypeVar("ConnectionT", bound=protocol.ConnectionProto)


@dataclasses.dataclass(slots=True)
class Redis:
    """Redis client implementation.

    A client is explicitly created and owned by whatever needs it; it keeps
    track of the connections it made so they can be closed together.
    """

    host: str
    port: int

    _connections: list[protocol.ConnectionProto] = dataclasses.field(
        default_factory=list,
        init=False,
    )
    _sessions: list[pubsub.PubSub] = dataclasses.field(
        default_factory=list,
        init=False,
    )

    @classmethod
    def from_url(cls, url: str) -> "Redis":
        """Create a Redis client from a Redis url.

        This performs URL validation, but does *not* make any connections.

        Connections should be created by the user with ``get_connection``.
        """
        return cls(*connection.parse_url(url))

    async def get_connection(
        self,
        connection_class: type[ConnectionT] = connection.ActionableConnection,
    ) -> ConnectionT:
        """Make a new connection to this client's Redis instance.

        By default, this make a new ActionableConnection. You can provide a
        different (custom) connection class through the ``connection_class``
        argument.
        """
        new_connection = await connection_class.from_host_port(self.host, self.port)
        self._connections.append(new_connection)
        return new_connection

    async def pubsub(
        self,
        connection_class: type[protocol.ConnectionProto] = connection.Connection,
    ) -> pubsub.PubSub:
        """Open a pub/sub session on a new, dedicated connection.

        The session is already started; close it with ``PubSub.close`` or by
        disconnecting this client.
        """
        new_connection = await connection_class.from_host_port(self.host, self.port)
        session = pubsub.PubSub(new_connection)
        session.start()
        self._sessions.append(session)
        return session

    async def disconnect(self) -> None:
        """Disconnect all connections and pub/sub sessions registered to this Redis client."""
        await asyncio.gather(
            *[con.disconnect() for con in self._connections if con.is_alive()],
            *[session.close() for session in self._sessions],
        )
        self._connections.clear()
        self._sessions.clear()

    async def __aenter__(self) -> "typing_extensions.Self":
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_value: BaseException | None,
        _exc_tb: types.TracebackType | None,
    ) -> None:
        await self.disconnect()
