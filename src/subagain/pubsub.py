"""Module containing the pub/sub session implementation."""

import asyncio
import collections.abc
import contextlib
import dataclasses
import types
import typing

import structlog

from subagain import command, error, protocol, registry, router, transform

if typing.TYPE_CHECKING:
    import typing_extensions

__all__: collections.abc.Sequence[str] = ("PubSub",)

logger = structlog.get_logger()


@dataclasses.dataclass(slots=True)
class PubSub:
    """A pub/sub session on a single, dedicated connection.

    The session owns the connection's read side: once started, a background
    task reads every frame and hands it to a ``PushRouter``. Commands are
    written by the coroutines below, each of which registers a pending
    operation before writing and then waits for the router to resolve it.

    Every coroutine completes exactly once, with either a value or an
    exception. Cancelling the awaiting task does not cancel the command;
    its confirmations are still consumed when they arrive.

    Example::

        async with subagain.PubSub(connection) as pubsub:
            await pubsub.subscribe("news", handler=on_news)
            ...
    """

    connection: protocol.ConnectionProto
    _router: router.PushRouter = dataclasses.field(init=False, repr=False)
    _write_lock: asyncio.Lock = dataclasses.field(default_factory=asyncio.Lock, init=False, repr=False)
    _task: asyncio.Task[None] | None = dataclasses.field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self._router = router.PushRouter(self.connection)

    @property
    def channels(self) -> frozenset[bytes]:
        """Channels the server confirmed this session is subscribed to."""
        return frozenset(self._router.subscriptions.channels)

    @property
    def patterns(self) -> frozenset[bytes]:
        """Patterns the server confirmed this session is subscribed to."""
        return frozenset(self._router.subscriptions.patterns)

    @property
    def subscriptions(self) -> registry.SubscriptionRegistry:
        return self._router.subscriptions

    def handlers_for(self, channel: str | bytes) -> list[protocol.MessageHandler]:
        """Return the handlers a message published to ``channel`` would reach, as tracked locally."""
        return self._router.subscriptions.match_channel(channel)

    def is_subscribed(self) -> bool:
        return bool(len(self._router.subscriptions))

    def is_running(self) -> bool:
        """Check whether the session can currently accept commands."""
        return (
            self._task is not None
            and not self._task.done()
            and not self._router.closed
            and self.connection.is_alive()
        )

    def start(self) -> None:
        """Start reading frames in the background.

        This requires the connection to be alive, and must be called from
        within a running event loop.
        """
        if self._task is not None:
            msg = "This pub/sub session has already been started."
            raise error.StateError(msg)

        if not self.connection.is_alive():
            msg = "Cannot start a pub/sub session on a closed connection."
            raise error.NotConnectedError(msg)

        self._task = asyncio.get_running_loop().create_task(self._router.run())

    async def close(self) -> None:
        """Stop the session and close its connection.

        Pending operations fail with ``ConnectionClosedError`` and all
        subscriptions are forgotten without waiting for the server.
        """
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

        self._router.teardown(error.ConnectionClosedError("The pub/sub session was closed."))

        if self.connection.is_alive():
            await self.connection.disconnect()

    async def __aenter__(self) -> "typing_extensions.Self":
        if self._task is None:
            self.start()

        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_value: BaseException | None,
        _exc_tb: types.TracebackType | None,
    ) -> None:
        await self.close()

    async def _send(
        self,
        cmd: command.Command,
        kind: router.OperationKind,
        *,
        identifiers: list[bytes] | None = None,
        handler: protocol.MessageHandler | None = None,
        transform: typing.Callable[[typing.Any], typing.Any] | None = None,
    ) -> typing.Any:  # noqa: ANN401
        if not self.is_running():
            msg = f"Cannot send {cmd.name.decode()}: the pub/sub session is not connected."
            raise error.NotConnectedError(msg)

        future: asyncio.Future[typing.Any] = asyncio.get_running_loop().create_future()
        operation = router.PendingOperation(
            kind,
            future,
            identifiers=identifiers,
            handler=handler,
            transform=transform,
        )

        # Enqueue and write under one lock so the pending FIFO matches the
        # order commands hit the wire.
        async with self._write_lock:
            self._router.enqueue(operation)
            try:
                await self.connection.write_command(cmd)
            except BaseException:
                self._router.discard(operation)
                raise

        logger.debug("pubsub.command_sent", command=cmd.name, arguments=len(cmd) - 1)
        return await asyncio.shield(future)

    async def subscribe(self, *channels: str | bytes, handler: protocol.MessageHandler) -> int:
        """Subscribe to one or more channels.

        ``handler`` is called as ``handler(channel, None, payload)`` for every
        message published to any of the channels; subscribing to a channel
        again replaces its handler. Returns once the server confirmed every
        channel, with the connection's total subscription count.
        """
        cmd = command.subscribe(*channels)
        return await self._send(
            cmd,
            router.OperationKind.SUBSCRIBE,
            identifiers=cmd.arguments[1:],
            handler=handler,
        )

    async def psubscribe(self, *patterns: str | bytes, handler: protocol.MessageHandler) -> int:
        """Subscribe to one or more glob-style patterns.

        ``handler`` is called as ``handler(channel, pattern, payload)`` for
        every message published to a channel matching one of the patterns.
        """
        cmd = command.psubscribe(*patterns)
        return await self._send(
            cmd,
            router.OperationKind.PSUBSCRIBE,
            identifiers=cmd.arguments[1:],
            handler=handler,
        )

    async def unsubscribe(self, *channels: str | bytes) -> int:
        """Unsubscribe from the given channels, or from every channel if none are given.

        Returns the number of subscriptions the connection has left.
        """
        cmd = command.unsubscribe(*channels)
        return await self._send(
            cmd,
            router.OperationKind.UNSUBSCRIBE,
            identifiers=cmd.arguments[1:] or None,
        )

    async def punsubscribe(self, *patterns: str | bytes) -> int:
        """Unsubscribe from the given patterns, or from every pattern if none are given."""
        cmd = command.punsubscribe(*patterns)
        return await self._send(
            cmd,
            router.OperationKind.PUNSUBSCRIBE,
            identifiers=cmd.arguments[1:] or None,
        )

    async def publish(self, channel: str | bytes, message: str | bytes | int | float) -> int:
        """Post a message to a channel and return how many subscriptions received it.

        A RESP2 server refuses this while the session has subscriptions; the
        refusal is raised as ``ResponseError``.
        """
        return await self._send(
            command.publish(channel, message),
            router.OperationKind.REPLY,
            transform=lambda reply: transform.transform_integer(reply, "PUBLISH"),
        )

    async def pubsub_channels(self, pattern: str | bytes | None = None) -> list[bytes]:
        return await self._send(
            command.pubsub_channels(pattern),
            router.OperationKind.REPLY,
            transform=transform.transform_channels,
        )

    async def pubsub_numsub(self, *channels: str | bytes) -> transform.NUMSUBResponse:
        return await self._send(
            command.pubsub_numsub(*channels),
            router.OperationKind.REPLY,
            transform=transform.transform_numsub,
        )

    async def pubsub_numpat(self) -> int:
        return await self._send(
            command.pubsub_numpat(),
            router.OperationKind.REPLY,
            transform=lambda reply: transform.transform_integer(reply, "PUBSUB NUMPAT"),
        )
