"""Module containing a client-side implementation of Redis glob-style matching.

This mirrors the wildcard rules the server applies to PSUBSCRIBE patterns and
to PUBSUB CHANNELS. It is only used for local bookkeeping; which pattern a
message was delivered through is always taken from the server's frame.
"""

import collections.abc
import dataclasses
import functools
import typing

__all__: collections.abc.Sequence[str] = ("glob_match",)


_STAR: typing.Final = ord("*")
_QUESTION: typing.Final = ord("?")
_LBRACKET: typing.Final = ord("[")
_RBRACKET: typing.Final = ord("]")
_CARET: typing.Final = ord("^")
_DASH: typing.Final = ord("-")
_BACKSLASH: typing.Final = ord("\\")


@dataclasses.dataclass(frozen=True, slots=True)
class _CharSet:
    ranges: tuple[tuple[int, int], ...]
    negate: bool

    def __contains__(self, byte: int) -> bool:
        found = any(low <= byte <= high for low, high in self.ranges)
        return found != self.negate


class _Wildcard:
    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return self.name


_ANY_RUN: typing.Final = _Wildcard("*")
_ANY_ONE: typing.Final = _Wildcard("?")

_Token: typing.TypeAlias = int | _CharSet | _Wildcard


def _parse_set(pattern: bytes, i: int) -> tuple[_CharSet, int]:
    # ``i`` points just past the opening bracket.
    n = len(pattern)
    negate = False
    if i < n and pattern[i] == _CARET:
        negate = True
        i += 1

    ranges: list[tuple[int, int]] = []
    first = True
    while i < n:
        char = pattern[i]

        if char == _RBRACKET and not first:
            return _CharSet(tuple(ranges), negate), i + 1

        first = False

        if char == _BACKSLASH and i + 1 < n:
            ranges.append((pattern[i + 1], pattern[i + 1]))
            i += 2

        elif i + 2 < n and pattern[i + 1] == _DASH and pattern[i + 2] != _RBRACKET:
            low, high = char, pattern[i + 2]
            if low > high:
                low, high = high, low

            ranges.append((low, high))
            i += 3

        else:
            ranges.append((char, char))
            i += 1

    # Unterminated set: the remainder of the pattern is the set.
    return _CharSet(tuple(ranges), negate), n


@functools.lru_cache(maxsize=256)
def _tokenize(pattern: bytes) -> tuple[_Token, ...]:
    tokens: list[_Token] = []
    i, n = 0, len(pattern)
    while i < n:
        char = pattern[i]

        if char == _STAR:
            # Consecutive stars are equivalent to one.
            if not tokens or tokens[-1] is not _ANY_RUN:
                tokens.append(_ANY_RUN)
            i += 1

        elif char == _QUESTION:
            tokens.append(_ANY_ONE)
            i += 1

        elif char == _LBRACKET:
            charset, i = _parse_set(pattern, i + 1)
            tokens.append(charset)

        elif char == _BACKSLASH and i + 1 < n:
            tokens.append(pattern[i + 1])
            i += 2

        else:
            tokens.append(char)
            i += 1

    return tuple(tokens)


def _matches_one(token: _Token, byte: int) -> bool:
    if token is _ANY_ONE:
        return True

    if isinstance(token, _CharSet):
        return byte in token

    return token == byte


def _as_bytes(value: str | bytes) -> bytes:
    return value.encode() if isinstance(value, str) else value


def glob_match(pattern: str | bytes, string: str | bytes, *, nocase: bool = False) -> bool:
    """Check whether ``string`` matches the glob-style ``pattern``.

    Supported syntax:

    - ``*`` matches any run of characters, including an empty one.
    - ``?`` matches exactly one character.
    - ``[abc]`` matches one character from the set, ``[^abc]`` one character
      outside of it, and ``[a-z]`` one character in the range.
    - ``\\x`` matches ``x`` literally.

    Inside a set, ``]`` directly after ``[`` (or ``[^``) and ``-`` at either
    edge are literal members.
    """
    pattern_bytes, string_bytes = _as_bytes(pattern), _as_bytes(string)
    if nocase:
        pattern_bytes, string_bytes = pattern_bytes.lower(), string_bytes.lower()

    tokens = _tokenize(pattern_bytes)

    p = s = 0
    star = -1
    mark = 0
    while s < len(string_bytes):
        if p < len(tokens) and tokens[p] is _ANY_RUN:
            star, mark = p, s
            p += 1

        elif p < len(tokens) and _matches_one(tokens[p], string_bytes[s]):
            p += 1
            s += 1

        elif star != -1:
            # Let the last star swallow one more character and retry.
            p = star + 1
            mark += 1
            s = mark

        else:
            return False

    while p < len(tokens) and tokens[p] is _ANY_RUN:
        p += 1

    return p == len(tokens)
