"""Module containing command implementation and pub/sub command builders."""

import collections.abc
import dataclasses
import typing

from subagain import protocol

if typing.TYPE_CHECKING:
    import typing_extensions

__all__: collections.abc.Sequence[str] = (
    "Command",
    "encode",
    "subscribe",
    "psubscribe",
    "unsubscribe",
    "punsubscribe",
    "publish",
    "pubsub_channels",
    "pubsub_numsub",
    "pubsub_numpat",
)


Argument: typing.TypeAlias = str | bytes | int | float


def encode(value: Argument) -> bytes:
    """Encode a single command argument the way Redis expects it on the wire."""
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode()
    if isinstance(value, int | float):
        return str(value).encode()

    msg = f"Cannot encode argument of type {type(value).__name__!r}"
    raise TypeError(msg)


@dataclasses.dataclass(slots=True)
class Command:
    """A Redis command.

    This class handles encoding of arguments before they're accepted by a
    ``Connection``.
    """

    arguments: list[bytes]

    def __init__(self, name: str | bytes, *args: Argument) -> None:
        self.arguments = []
        self.arg(name)
        for arg in args:
            self.arg(arg)

    @property
    def name(self) -> bytes:
        return self.arguments[0].upper()

    def arg(self, value: Argument) -> "typing_extensions.Self":
        """Add an argument to this command."""
        self.arguments.append(encode(value))
        return self

    async def execute(self, con: protocol.ConnectionProto) -> typing.Any:  # noqa: ANN401
        """Execute this command on a given connection and return its reply."""
        await con.write_command(self)
        return await con.read_response(disconnect_on_error=True)

    def __str__(self) -> str:
        return " ".join(arg.decode("utf-8", errors="replace") for arg in self.arguments)

    def __len__(self) -> int:
        return len(self.arguments)

    def __iter__(self) -> collections.abc.Iterator[bytes]:
        return iter(self.arguments)


def subscribe(*channels: Argument) -> Command:
    """Build ``SUBSCRIBE channel [channel ...]``.

    See also: https://redis.io/docs/latest/commands/subscribe/
    """
    if not channels:
        msg = "SUBSCRIBE requires at least one channel"
        raise ValueError(msg)

    return Command(b"SUBSCRIBE", *channels)


def psubscribe(*patterns: Argument) -> Command:
    """Build ``PSUBSCRIBE pattern [pattern ...]``.

    See also: https://redis.io/docs/latest/commands/psubscribe/
    """
    if not patterns:
        msg = "PSUBSCRIBE requires at least one pattern"
        raise ValueError(msg)

    return Command(b"PSUBSCRIBE", *patterns)


def unsubscribe(*channels: Argument) -> Command:
    """Build ``UNSUBSCRIBE [channel ...]``; no channels means all of them."""
    return Command(b"UNSUBSCRIBE", *channels)


def punsubscribe(*patterns: Argument) -> Command:
    """Build ``PUNSUBSCRIBE [pattern ...]``; no patterns means all of them."""
    return Command(b"PUNSUBSCRIBE", *patterns)


def publish(channel: Argument, message: Argument) -> Command:
    """Build ``PUBLISH channel message``.

    See also: https://redis.io/docs/latest/commands/publish/
    """
    return Command(b"PUBLISH", channel, message)


def pubsub_channels(pattern: Argument | None = None) -> Command:
    cmd = Command(b"PUBSUB", b"CHANNELS")
    if pattern is not None:
        cmd.arg(pattern)

    return cmd


def pubsub_numsub(*channels: Argument) -> Command:
    return Command(b"PUBSUB", b"NUMSUB", *channels)


def pubsub_numpat() -> Command:
    return Command(b"PUBSUB", b"NUMPAT")
