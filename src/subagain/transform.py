"""Module containing data transformers for pub/sub introspection replies."""

import collections.abc
import typing

from subagain import error

__all__: collections.abc.Sequence[str] = (
    "transform_channels",
    "transform_integer",
    "transform_numsub",
)


NUMSUBResponse: typing.TypeAlias = list[tuple[bytes, int]]


def _pairwise(arg: collections.abc.Iterable[typing.Any]) -> list[tuple[typing.Any, typing.Any]]:
    arg_iter = iter(arg)
    try:
        return list(zip(arg_iter, arg_iter, strict=True))
    except ValueError as exc:
        msg = "expected an even number of elements"
        raise error.ProtocolError(msg) from exc


def transform_numsub(data: typing.Any) -> NUMSUBResponse:  # noqa: ANN401
    """Transform PUBSUB NUMSUB output into ``(channel, count)`` pairs.

    The server replies with a flat array ``[channel 1, count 1, channel 2, ...]``
    in the order the channels were requested; that order is preserved.
    """
    if not isinstance(data, list):
        msg = f"PUBSUB NUMSUB returned {type(data).__name__}, expected an array"
        raise error.ProtocolError(msg)

    pairs = _pairwise(data)
    for channel, count in pairs:
        if not isinstance(channel, bytes) or not isinstance(count, int):
            msg = f"PUBSUB NUMSUB returned a malformed pair: {channel!r}, {count!r}"
            raise error.ProtocolError(msg)

    return pairs


def transform_channels(data: typing.Any) -> list[bytes]:  # noqa: ANN401
    """Validate PUBSUB CHANNELS output, a flat array of channel names."""
    # RESP3 servers may answer with a set instead of an array.
    if isinstance(data, set):
        data = sorted(data)

    if not isinstance(data, list) or not all(isinstance(name, bytes) for name in data):
        msg = f"PUBSUB CHANNELS returned a malformed reply: {data!r}"
        raise error.ProtocolError(msg)

    return data


def transform_integer(data: typing.Any, command: str) -> int:  # noqa: ANN401
    """Validate an integer reply, as returned by PUBLISH and PUBSUB NUMPAT."""
    if not isinstance(data, int) or isinstance(data, bool):
        msg = f"{command} returned {data!r}, expected an integer"
        raise error.ProtocolError(msg)

    return data
