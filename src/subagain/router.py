"""Module containing the push message router.

The router is the single reader of a subscribed connection. Every frame the
server sends is either a confirmation of a subscribe or unsubscribe command,
a message delivery, or the reply to a plain request/response command. The
first and last kind are matched against a FIFO of pending operations, which
works because the server answers commands in the order they were written.
Deliveries never consume a pending operation.
"""

import asyncio
import collections
import collections.abc
import contextlib
import dataclasses
import enum
import functools
import inspect
import typing

import structlog

from subagain import error, protocol, registry

__all__: collections.abc.Sequence[str] = ("OperationKind", "PendingOperation", "PushRouter")

logger = structlog.get_logger()


_MESSAGE: typing.Final = b"message"
_PMESSAGE: typing.Final = b"pmessage"


class OperationKind(bytes, enum.Enum):
    """Kinds of pending operation, valued by the tag of their confirmation frames."""

    SUBSCRIBE = b"subscribe"
    PSUBSCRIBE = b"psubscribe"
    UNSUBSCRIBE = b"unsubscribe"
    PUNSUBSCRIBE = b"punsubscribe"
    # Plain request/response; resolved by the next non-delivery frame.
    REPLY = b"reply"

    @property
    def subscription_kind(self) -> registry.SubscriptionKind:
        if self in (OperationKind.PSUBSCRIBE, OperationKind.PUNSUBSCRIBE):
            return registry.SubscriptionKind.PATTERN

        return registry.SubscriptionKind.CHANNEL

    @property
    def subscribes(self) -> bool:
        return self in (OperationKind.SUBSCRIBE, OperationKind.PSUBSCRIBE)


_CONFIRMATION_TAGS: typing.Final = frozenset(
    kind.value for kind in OperationKind if kind is not OperationKind.REPLY
)


@dataclasses.dataclass(slots=True)
class PendingOperation:
    """A command that was written and is still waiting on the server.

    Subscribe and unsubscribe commands wait for one confirmation frame per
    identifier. ``identifiers`` is ``None`` for an unsubscribe from everything,
    where the server decides how many confirmations follow.
    """

    kind: OperationKind
    future: asyncio.Future[typing.Any]
    identifiers: list[bytes] | None = None
    handler: protocol.MessageHandler | None = None
    transform: typing.Callable[[typing.Any], typing.Any] | None = None

    confirmed: int = dataclasses.field(default=0, init=False)
    last_count: int | None = dataclasses.field(default=None, init=False)
    failure: error.RedisError | None = dataclasses.field(default=None, init=False)
    exhausted: bool = dataclasses.field(default=False, init=False)

    @property
    def done(self) -> bool:
        if self.exhausted:
            return True

        if self.identifiers is None:
            return False

        return self.confirmed >= len(self.identifiers)

    @property
    def expected_identifier(self) -> bytes | None:
        if self.identifiers is None or self.confirmed >= len(self.identifiers):
            return None

        return self.identifiers[self.confirmed]

    def consume(self, count: int | None, exc: error.RedisError | None = None) -> None:
        """Mark one confirmation slot as consumed, optionally with an error."""
        self.confirmed += 1
        if count is not None:
            self.last_count = count

        if exc is not None and self.failure is None:
            self.failure = exc

    def settle(self) -> None:
        if self.future.done():
            return

        if self.failure is not None:
            self.future.set_exception(self.failure)
        else:
            self.future.set_result(self.last_count)

    def resolve(self, reply: typing.Any) -> None:  # noqa: ANN401
        if self.future.done():
            return

        try:
            value = self.transform(reply) if self.transform is not None else reply
        except error.RedisError as exc:
            self.future.set_exception(exc)
        else:
            self.future.set_result(value)

    def abort(self, exc: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(exc)


def _tag_of(frame: typing.Any) -> bytes | None:  # noqa: ANN401
    if isinstance(frame, list) and frame and isinstance(frame[0], bytes):
        return frame[0].lower()

    return None


@dataclasses.dataclass(slots=True)
class PushRouter:
    """Classify incoming frames and route them to pending operations or handlers."""

    connection: protocol.ConnectionProto
    subscriptions: registry.SubscriptionRegistry = dataclasses.field(
        default_factory=registry.SubscriptionRegistry,
    )
    _pending: collections.deque[PendingOperation] = dataclasses.field(
        default_factory=collections.deque,
        init=False,
        repr=False,
    )
    _closed: bool = dataclasses.field(default=False, init=False)
    _handler_tasks: set[asyncio.Future[typing.Any]] = dataclasses.field(
        default_factory=set,
        init=False,
        repr=False,
    )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._pending)

    def enqueue(self, operation: PendingOperation) -> None:
        """Append an operation; it must be enqueued before its command is written."""
        if self._closed:
            msg = "The pub/sub session has been torn down."
            raise error.NotConnectedError(msg)

        self._pending.append(operation)

    def discard(self, operation: PendingOperation) -> None:
        """Remove an operation whose command never made it onto the wire."""
        with contextlib.suppress(ValueError):
            self._pending.remove(operation)

    async def run(self) -> None:
        """Read and dispatch frames until the connection goes away."""
        try:
            while True:
                try:
                    frame = await self.connection.read_response(disconnect_on_error=False)
                except error.ResponseError as exc:
                    self.fail(exc)
                    continue

                await self.dispatch(frame)

        except asyncio.CancelledError:
            self.teardown(error.ConnectionClosedError("The pub/sub session was closed."))
            raise

        except (error.ConnectionError, error.StateError, error.ProtocolError, OSError, EOFError) as exc:
            logger.info("pubsub.router_stopped", reason=str(exc), pending=len(self._pending))

            closed = error.ConnectionClosedError(f"Lost the pub/sub connection: {exc}")
            closed.__cause__ = exc
            self.teardown(closed)

    def teardown(self, exc: BaseException) -> None:
        """Fail every pending operation with ``exc`` and forget all subscriptions."""
        self._closed = True

        while self._pending:
            self._pending.popleft().abort(exc)

        self.subscriptions.clear()

        current = asyncio.current_task()
        for task in self._handler_tasks:
            if task is not current:
                task.cancel()

        self._handler_tasks.clear()

    def fail(self, exc: error.ResponseError) -> None:
        """Route an error reply from the server to the oldest pending operation."""
        if not self._pending:
            logger.warning("pubsub.unexpected_error_reply", code=exc.code, message=exc.message)
            return

        # The server answers a rejected command with a single error, however
        # many identifiers it named.
        operation = self._pending.popleft()
        operation.abort(exc)

    async def dispatch(self, frame: typing.Any) -> None:  # noqa: ANN401
        """Handle a single decoded frame."""
        tag = _tag_of(frame)

        # With nothing subscribed the server cannot be delivering, so a reply
        # such as [b"message", 0] from PUBSUB NUMSUB belongs to the head.
        if self._pending and self._pending[0].kind is OperationKind.REPLY and not len(self.subscriptions):
            self._pending.popleft().resolve(frame)
            return

        if tag == _MESSAGE:
            await self._deliver_message(frame)
            return

        if tag == _PMESSAGE:
            await self._deliver_pmessage(frame)
            return

        if not self._pending:
            logger.warning("pubsub.unexpected_frame", tag=tag)
            return

        operation = self._pending[0]

        if operation.kind is OperationKind.REPLY:
            self._pending.popleft()
            operation.resolve(frame)
            return

        if tag not in _CONFIRMATION_TAGS:
            logger.warning("pubsub.unexpected_frame", tag=tag, waiting_for=operation.kind.value)
            return

        self._confirm(operation, tag, frame)

        if operation.done:
            self._pending.popleft()
            operation.settle()

    def _confirm(self, operation: PendingOperation, tag: bytes, frame: list[typing.Any]) -> None:
        if tag != operation.kind.value:
            msg = f"Expected a {operation.kind.value!r} confirmation, got {tag!r}"
            self._consume_malformed(operation, msg)
            return

        if len(frame) != 3:
            msg = f"{tag!r} confirmation has {len(frame)} elements, expected 3"
            self._consume_malformed(operation, msg)
            return

        _, identifier, count = frame
        if not isinstance(count, int) or not (identifier is None or isinstance(identifier, bytes)):
            msg = f"{tag!r} confirmation is malformed: {frame!r}"
            self._consume_malformed(operation, msg)
            return

        kind = operation.kind.subscription_kind

        if operation.kind.subscribes:
            expected = operation.expected_identifier
            if identifier is None:
                msg = f"{tag!r} confirmation without an identifier, expected {expected!r}"
                self._consume_malformed(operation, msg)
                return

            # The server is subscribed to whatever it echoed, so track that.
            assert operation.handler is not None
            self.subscriptions.add(identifier, kind, operation.handler)

            if expected is not None and identifier != expected:
                msg = f"{tag!r} confirmation for {identifier!r}, expected {expected!r}"
                self._consume_malformed(operation, msg, count)
                return

            operation.consume(count)
            return

        if identifier is None:
            self.subscriptions.remove_all(kind)
        else:
            self.subscriptions.remove(identifier, kind)

        operation.consume(count)

        # An unsubscribe from everything ends with the last subscription of
        # its kind, or with a single nil confirmation if there were none.
        if operation.identifiers is None and (identifier is None or not self.subscriptions.count(kind)):
            operation.exhausted = True

    def _consume_malformed(self, operation: PendingOperation, msg: str, count: int | None = None) -> None:
        logger.warning("pubsub.protocol_error", operation=operation.kind.value, detail=msg)
        operation.consume(count, error.ProtocolError(msg))

        # Without identifiers there is no telling how many frames remain.
        if operation.identifiers is None:
            operation.exhausted = True

    async def _deliver_message(self, frame: list[typing.Any]) -> None:
        if len(frame) != 3 or not isinstance(frame[1], bytes):
            logger.warning("pubsub.protocol_error", tag=_MESSAGE, detail=f"malformed frame of {len(frame)} elements")
            return

        _, channel, payload = frame
        entry = self.subscriptions.get(channel, registry.SubscriptionKind.CHANNEL)
        if entry is None:
            logger.debug("pubsub.unroutable_message", channel=channel)
            return

        await self._invoke(entry.handler, channel, None, payload)

    async def _deliver_pmessage(self, frame: list[typing.Any]) -> None:
        if len(frame) != 4 or not isinstance(frame[1], bytes) or not isinstance(frame[2], bytes):
            logger.warning("pubsub.protocol_error", tag=_PMESSAGE, detail=f"malformed frame of {len(frame)} elements")
            return

        _, pattern, channel, payload = frame
        # Keyed by the pattern the server says matched; never re-matched locally.
        entry = self.subscriptions.get(pattern, registry.SubscriptionKind.PATTERN)
        if entry is None:
            logger.debug("pubsub.unroutable_message", channel=channel, pattern=pattern)
            return

        await self._invoke(entry.handler, channel, pattern, payload)

    async def _invoke(
        self,
        handler: protocol.MessageHandler,
        channel: bytes,
        pattern: bytes | None,
        payload: typing.Any,  # noqa: ANN401
    ) -> None:
        try:
            result = handler(channel, pattern, payload)
        except Exception:
            logger.exception("pubsub.handler_error", channel=channel, pattern=pattern)
            return

        # Coroutine handlers run beside the read loop, so they may await
        # commands on this same session.
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._handler_tasks.add(task)
            task.add_done_callback(functools.partial(self._handler_done, channel, pattern))

    def _handler_done(self, channel: bytes, pattern: bytes | None, task: asyncio.Future[typing.Any]) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return

        exc = task.exception()
        if exc is not None:
            logger.error("pubsub.handler_error", channel=channel, pattern=pattern, exc_info=exc)
