"""Module containing the per-connection subscription registry."""

import collections.abc
import dataclasses
import enum

from subagain import command, glob, protocol

__all__: collections.abc.Sequence[str] = ("Subscription", "SubscriptionKind", "SubscriptionRegistry")


class SubscriptionKind(enum.Enum):
    """The namespace a subscription lives in."""

    CHANNEL = "channel"
    PATTERN = "pattern"


@dataclasses.dataclass(frozen=True, slots=True)
class Subscription:
    """A single confirmed subscription and the handler it delivers to."""

    identifier: bytes
    kind: SubscriptionKind
    handler: protocol.MessageHandler


@dataclasses.dataclass(slots=True)
class SubscriptionRegistry:
    """Track the channels and patterns one connection is subscribed to.

    Entries are only added once the server confirmed the subscription and only
    removed once it confirmed the unsubscription, so the registry mirrors what
    the server believes this connection is subscribed to. There is exactly one
    handler per identifier; subscribing again replaces it.

    Channels and patterns are separate namespaces: a channel named ``news.*``
    and a pattern ``news.*`` are two independent entries.
    """

    _channels: dict[bytes, Subscription] = dataclasses.field(default_factory=dict, init=False)
    _patterns: dict[bytes, Subscription] = dataclasses.field(default_factory=dict, init=False)

    def _entries(self, kind: SubscriptionKind) -> dict[bytes, Subscription]:
        return self._channels if kind is SubscriptionKind.CHANNEL else self._patterns

    def add(
        self,
        identifier: str | bytes,
        kind: SubscriptionKind,
        handler: protocol.MessageHandler,
    ) -> Subscription:
        """Insert or replace the entry for ``identifier``."""
        key = command.encode(identifier)
        entry = Subscription(key, kind, handler)
        self._entries(kind)[key] = entry
        return entry

    def add_channel(self, name: str | bytes, handler: protocol.MessageHandler) -> Subscription:
        return self.add(name, SubscriptionKind.CHANNEL, handler)

    def add_pattern(self, pattern: str | bytes, handler: protocol.MessageHandler) -> Subscription:
        return self.add(pattern, SubscriptionKind.PATTERN, handler)

    def remove(self, identifier: str | bytes, kind: SubscriptionKind) -> Subscription | None:
        """Remove the entry for ``identifier``; absent entries are ignored."""
        return self._entries(kind).pop(command.encode(identifier), None)

    def remove_all(self, kind: SubscriptionKind) -> None:
        self._entries(kind).clear()

    def clear(self) -> None:
        self._channels.clear()
        self._patterns.clear()

    def get(self, identifier: str | bytes, kind: SubscriptionKind) -> Subscription | None:
        return self._entries(kind).get(command.encode(identifier))

    def match_channel(self, name: str | bytes) -> list[protocol.MessageHandler]:
        """Return every handler a message published to ``name`` would reach.

        That is the channel's own handler (if subscribed) followed by the
        handler of each pattern that matches ``name``. The server delivers one
        message per matching subscription, so the list may hold more than one
        handler.
        """
        key = command.encode(name)
        handlers = []

        if (entry := self._channels.get(key)) is not None:
            handlers.append(entry.handler)

        handlers.extend(
            entry.handler
            for pattern, entry in self._patterns.items()
            if glob.glob_match(pattern, key)
        )
        return handlers

    def count(self, kind: SubscriptionKind) -> int:
        return len(self._entries(kind))

    def channel_count(self) -> int:
        return len(self._channels)

    def pattern_count(self) -> int:
        return len(self._patterns)

    @property
    def channels(self) -> collections.abc.KeysView[bytes]:
        return self._channels.keys()

    @property
    def patterns(self) -> collections.abc.KeysView[bytes]:
        return self._patterns.keys()

    def __len__(self) -> int:
        return len(self._channels) + len(self._patterns)
