"""Module containing protocols that prescribe subagain implementations."""

import collections.abc
import typing

if typing.TYPE_CHECKING:
    import typing_extensions

__all__: collections.abc.Sequence[str] = ("CommandProto", "ConnectionProto", "MessageHandler")


MessageHandler: typing.TypeAlias = typing.Callable[
    [bytes, bytes | None, bytes],
    typing.Any,
]
"""Called as ``handler(channel, pattern, payload)`` for every delivered message.

``pattern`` is ``None`` for deliveries on a literal channel subscription. The
handler may return an awaitable, which is awaited before the next frame is
processed.
"""


class CommandProto(typing.Protocol):
    """Redis command protocol."""

    def arg(self, value: str | bytes | int | float) -> "CommandProto":
        """Add an argument to this command."""
        ...

    def __iter__(self) -> typing.Iterator[bytes]: ...

    def __len__(self) -> int: ...


class ConnectionProto(typing.Protocol):
    """Redis connection protocol."""

    @classmethod
    async def from_host_port(cls, host: str, port: int, /) -> "typing_extensions.Self":
        """Connect to Redis at the provided host and port."""
        ...

    def is_alive(self) -> bool:
        """Check whether this connection has an active redis connection."""
        ...

    async def connect(self) -> None:
        """Connect to Redis with the connection parameters provided at instantiation."""
        ...

    async def disconnect(self) -> None:
        """Close the connection with Redis."""
        ...

    async def write_command(self, command: "CommandProto", /) -> None:
        """Write a command to the connected Redis instance.

        This requires this connection to be alive.
        """
        ...

    async def read_response(self, *, disconnect_on_error: bool) -> typing.Any:  # noqa: ANN401
        """Read one frame from the connected Redis instance.

        This requires this connection to be alive.
        """
        ...
