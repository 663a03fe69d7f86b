import collections.abc
import dataclasses

__all__: collections.abc.Sequence[str] = (
    "RedisError",
    "ConnectionError",
    "ConnectionClosedError",
    "StateError",
    "NotConnectedError",
    "ProtocolError",
    "ResponseError",
)


class RedisError(Exception):
    ...


class ConnectionError(RedisError):
    ...


class ConnectionClosedError(ConnectionError):
    """The connection went away while operations were still outstanding."""


class StateError(RedisError):
    ...


class NotConnectedError(StateError):
    """An operation was attempted before the connection was ready."""


class ProtocolError(RedisError):
    """A frame did not have the shape its tag or command requires."""


@dataclasses.dataclass
class ResponseError(RedisError):
    code: str
    message: str

    def __str__(self) -> str:
        return self.message

    @classmethod
    def from_response(cls, response: bytes) -> "ResponseError":
        code, _, message = response.decode("utf-8", errors="replace").partition(" ")
        return cls(code, message or code)
