"""Module containing connection implementations."""

import asyncio
import collections.abc
import dataclasses
import enum
import socket
import typing
import urllib.parse
import weakref

from subagain import command, error, protocol, transform

if typing.TYPE_CHECKING:
    import typing_extensions

__all__: collections.abc.Sequence[str] = ("Connection", "ActionableConnection", "parse_url")


_RESP2: typing.Final = 2
_RESP3: typing.Final = 3

ConnectHook: typing.TypeAlias = typing.Callable[
    ["Connection"],
    typing.Coroutine[typing.Any, typing.Any, None],
]


class ByteResponse(bytes, enum.Enum):
    # Ordered by documentation:
    # https://github.com/redis/redis-specifications/blob/master/protocol/RESP3.md

    # Simple types
    BLOB_STRING = b"$"
    SIMPLE_STRING = b"+"
    SIMPLE_ERROR = b"-"
    NUMBER = b":"
    NULL = b"_"
    DOUBLE = b","
    BOOLEAN = b"#"
    BLOB_ERROR = b"!"
    VERBATIM_STRING = b"="
    BIG_NUMBER = b"("

    # Aggregate types
    ARRAY = b"*"
    MAP = b"%"
    SET = b"~"
    ATTRIBUTE = b"|"
    PUSH = b">"


def parse_url(url: str) -> tuple[str, int]:
    """Validate a ``redis://host:port`` url and return its host and port."""
    parsed = urllib.parse.urlparse(url)
    if not parsed.hostname or not parsed.port or parsed.scheme != "redis":
        msg = "Only urls of scheme 'redis://host:port' are supported"
        raise ValueError(msg)

    return parsed.hostname, parsed.port


def _parse_int(data: bytes) -> int:
    try:
        return int(data)
    except ValueError as exc:
        msg = f"Expected an integer in the response header, got {data!r}"
        raise error.ProtocolError(msg) from exc


async def _set_resp3(con: protocol.ConnectionProto) -> None:
    await con.write_command(command.Command(b"HELLO", _RESP3))
    hello = await con.read_response(disconnect_on_error=True)

    if hello[b"proto"] != _RESP3:
        msg = "Failed to set redis protocol version to 3"
        raise error.RedisError(msg)


@dataclasses.dataclass(slots=True)
class Connection:
    """Low-level connection implementation.

    This connection can make connections to Redis, and both send and receive
    commands. It does not implement any higher-level commands.

    RESP2 is spoken by default. With ``protocol_version=3`` the connection switches to
    RESP3 right after connecting; push frames are then decoded exactly like
    arrays.
    """

    host: str
    port: int
    buffer_limit: int = 6000
    protocol_version: int = _RESP2
    _post_connect_hooks: collections.abc.MutableMapping[str, ConnectHook] = dataclasses.field(
        default_factory=weakref.WeakValueDictionary,
        repr=False,
    )
    _reader: asyncio.StreamReader | None = dataclasses.field(default=None, repr=False)
    _writer: asyncio.StreamWriter | None = dataclasses.field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.protocol_version not in (_RESP2, _RESP3):
            msg = f"Unsupported protocol version {self.protocol_version}; expected 2 or 3"
            raise ValueError(msg)

        if self.protocol_version == _RESP3:
            self._post_connect_hooks["HELLO"] = _set_resp3

    @classmethod
    async def from_url(cls, url: str, /) -> "typing_extensions.Self":
        """Connect to the provided Redis url."""
        return await cls.from_host_port(*parse_url(url))

    @classmethod
    async def from_host_port(cls, host: str, port: int, /) -> "typing_extensions.Self":
        """Connect to Redis at the provided host and port."""
        self = cls(host=host, port=port)
        await self.connect()
        return self

    def __del__(self) -> None:
        if getattr(self, "_writer", None):
            self._close()

    def _close(self) -> asyncio.StreamWriter:
        assert self._writer

        writer = self._writer
        writer.close()
        self._writer = self._reader = None

        return writer

    def is_alive(self) -> bool:
        """Check whether this connection has an active redis connection."""
        return self._reader is not None and self._writer is not None

    async def connect(self) -> None:
        """Connect to Redis with the connection parameters provided at instantiation."""
        try:
            reader, writer = await asyncio.open_connection(
                self.host,
                self.port,
                limit=self.buffer_limit,
            )
            sock: socket.socket = writer.transport.get_extra_info("socket")
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

        except OSError as exc:
            msg = f"Failed to connect to '{self.host}:{self.port}'."
            raise error.ConnectionError(msg) from exc

        self._reader = reader
        self._writer = writer

        for hook in self._post_connect_hooks.values():
            await hook(self)

    async def disconnect(self) -> None:
        """Close the connection with Redis."""
        if not self.is_alive():
            msg = "The connection is already closed."
            raise error.StateError(msg)

        closing_writer = self._close()
        await closing_writer.wait_closed()

    async def write_command(self, command: protocol.CommandProto, /) -> None:
        """Write a command to the connected Redis instance.

        This requires this connection to be alive.
        """
        if not self.is_alive():
            msg = "Cannot send commands to a closed connection."
            raise error.NotConnectedError(msg)

        assert self._writer is not None

        try:
            self._writer.write(b"*%i\r\n" % len(command))
            for arg in command:
                self._writer.write(b"$%i\r\n" % len(arg))
                self._writer.write(arg)
                self._writer.write(b"\r\n")

            await self._writer.drain()

        except OSError as exc:
            self._close()

            if len(exc.args) == 1:
                error_code = "UNKNOWN"
                error_msg = exc.args[0]

            else:
                error_code, error_msg, *_ = exc.args

            msg = f"Writing to '{self.host}:{self.port}' raised {error_code}: {error_msg}"
            raise error.ConnectionError(msg) from exc

        except BaseException:
            self._close()
            raise

    async def _read_bytes(self, n: int) -> bytes:
        assert self._reader is not None

        try:
            response = await self._reader.readexactly(n + 2)
        except asyncio.IncompleteReadError as exc:
            msg = "reading data from stream returned incomplete response."
            raise error.ConnectionError(msg) from exc

        if response[-2:] == b"\r\n":
            return response[:-2]

        msg = "bulk data was not terminated by CRLF."
        raise error.ProtocolError(msg)

    async def _read_response(self) -> object:  # noqa: C901, PLR0911, PLR0912
        assert self._reader is not None

        try:
            data = await self._reader.readuntil(b"\r\n")
        except asyncio.IncompleteReadError as exc:
            msg = "reading data from stream returned incomplete response."
            raise error.ConnectionError(msg) from exc

        # First character is a symbol that determines the data type,
        # the rest is the actual data.
        byte, response = data[:1], data[1:-2]

        if byte == ByteResponse.SIMPLE_ERROR:
            raise error.ResponseError.from_response(response)

        if byte == ByteResponse.BLOB_ERROR:
            response = await self._read_bytes(_parse_int(response))
            raise error.ResponseError.from_response(response)

        if byte == ByteResponse.SIMPLE_STRING:
            return response

        if byte == ByteResponse.BLOB_STRING:
            length = _parse_int(response)
            # RESP2 nil bulk string.
            if length < 0:
                return None

            return await self._read_bytes(length)

        if byte == ByteResponse.VERBATIM_STRING:
            return (await self._read_bytes(_parse_int(response)))[4:]

        if byte in (ByteResponse.NUMBER, ByteResponse.BIG_NUMBER):
            return _parse_int(response)

        if byte == ByteResponse.DOUBLE:
            return float(response)

        if byte == ByteResponse.BOOLEAN:
            return response == b"t"

        if byte == ByteResponse.NULL:
            return None

        if byte in (ByteResponse.ARRAY, ByteResponse.PUSH):
            length = _parse_int(response)
            # RESP2 nil array.
            if length < 0:
                return None

            return [await self._read_response() for _ in range(length)]

        if byte == ByteResponse.SET:
            return {await self._read_response() for _ in range(_parse_int(response))}

        if byte == ByteResponse.MAP:
            return {
                await self._read_response(): await self._read_response()
                for _ in range(_parse_int(response))
            }

        if byte == ByteResponse.ATTRIBUTE:
            # Attributes describe the reply that follows; they carry nothing
            # pub/sub needs.
            for _ in range(_parse_int(response) * 2):
                await self._read_response()

            return await self._read_response()

        msg = f"{byte!r} is not a valid response type"
        raise error.ProtocolError(msg)

    async def read_response(self, *, disconnect_on_error: bool = True) -> typing.Any:  # noqa: ANN401
        """Read one frame from the connected Redis instance.

        This requires this connection to be alive. Error replies are raised as
        ``ResponseError`` and never disconnect, since the stream stays usable.
        """
        if not self.is_alive():
            msg = "Cannot read from a closed connection."
            raise error.NotConnectedError(msg)

        try:
            return await self._read_response()

        except error.ResponseError:
            raise

        except OSError as exc:
            if disconnect_on_error and self.is_alive():
                await self.disconnect()

            msg = f"Failed to read from '{self.host}:{self.port}': {exc}"
            raise error.ConnectionError(msg) from exc

        except BaseException:
            if disconnect_on_error and self.is_alive():
                await self.disconnect()

            raise


@dataclasses.dataclass(slots=True)
class ActionableConnection:
    """High-level connection implementation.

    This connection can make connections to Redis, and both send and receive
    commands. It implements the request/response side of pub/sub: publishing
    and the PUBSUB introspection commands. Subscribing needs a connection of
    its own, see ``subagain.pubsub.PubSub``.
    """

    connection: protocol.ConnectionProto

    @classmethod
    async def from_url(
        cls,
        url: str,
        /,
        *,
        connection_class: type[protocol.ConnectionProto] = Connection,
    ) -> "typing_extensions.Self":
        """Connect to the provided Redis url."""
        host, port = parse_url(url)
        return await cls.from_host_port(host, port, connection_class=connection_class)

    @classmethod
    async def from_host_port(
        cls,
        host: str,
        port: int,
        /,
        *,
        connection_class: type[protocol.ConnectionProto] = Connection,
    ) -> "typing_extensions.Self":
        """Connect to Redis at the provided host and port."""
        connection = await connection_class.from_host_port(host, port)
        return cls(connection)

    def is_alive(self) -> bool:
        return self.connection.is_alive()

    async def connect(self) -> None:
        """Connect to Redis with the connection parameters provided at instantiation."""
        await self.connection.connect()

    async def disconnect(self) -> None:
        """Close the connection with Redis."""
        await self.connection.disconnect()

    async def write_command(self, command: protocol.CommandProto, /) -> None:
        await self.connection.write_command(command)

    async def read_response(self, *, disconnect_on_error: bool = True) -> typing.Any:  # noqa: ANN401
        return await self.connection.read_response(disconnect_on_error=disconnect_on_error)

    async def publish(self, channel: str | bytes, message: str | bytes | int | float) -> int:
        """Post a message to a channel.

        Returns the number of subscriptions that received the message, as
        counted by the server.

        See also: https://redis.io/docs/latest/commands/publish/
        """
        reply = await command.publish(channel, message).execute(self.connection)
        return transform.transform_integer(reply, "PUBLISH")

    async def pubsub_channels(self, pattern: str | bytes | None = None) -> list[bytes]:
        """List the channels with at least one subscriber, optionally filtered by a glob pattern."""
        reply = await command.pubsub_channels(pattern).execute(self.connection)
        return transform.transform_channels(reply)

    async def pubsub_numsub(self, *channels: str | bytes) -> transform.NUMSUBResponse:
        """Return ``(channel, subscriber count)`` pairs in the order requested."""
        reply = await command.pubsub_numsub(*channels).execute(self.connection)
        return transform.transform_numsub(reply)

    async def pubsub_numpat(self) -> int:
        """Return the number of pattern subscriptions across all clients."""
        reply = await command.pubsub_numpat().execute(self.connection)
        return transform.transform_integer(reply, "PUBSUB NUMPAT")
