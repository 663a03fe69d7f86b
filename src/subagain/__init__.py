"""An asyncio Redis client focused on pub/sub."""

import collections.abc

from subagain.client import Redis
from subagain.command import Command
from subagain.connection import ActionableConnection, Connection
from subagain.error import (
    ConnectionClosedError,
    ConnectionError,
    NotConnectedError,
    ProtocolError,
    RedisError,
    ResponseError,
    StateError,
)
from subagain.glob import glob_match
from subagain.pubsub import PubSub
from subagain.registry import Subscription, SubscriptionKind, SubscriptionRegistry
from subagain.router import PushRouter

__all__: collections.abc.Sequence[str] = (
    "ActionableConnection",
    "Command",
    "Connection",
    "ConnectionClosedError",
    "ConnectionError",
    "NotConnectedError",
    "ProtocolError",
    "PubSub",
    "PushRouter",
    "Redis",
    "RedisError",
    "ResponseError",
    "StateError",
    "Subscription",
    "SubscriptionKind",
    "SubscriptionRegistry",
    "glob_match",
)
