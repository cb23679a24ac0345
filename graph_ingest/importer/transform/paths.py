"""
Tagged-value view of payloads and a small path-expression evaluator.

Paths are dot separated. A segment may carry bracket suffixes: ``[]`` is a
wildcard bound to the current root-array element index, ``[n]`` selects an
explicit index. ``items[].name``, ``items.[].name`` and ``items[0].name`` are
all valid.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Iterator, Mapping, Sequence

_TOKEN_RE = re.compile(r"\[(\d*)\]|([^.\[\]]+)")


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


class ValueKind(str, enum.Enum):
    OBJECT = "object"
    ARRAY = "array"
    SCALAR = "scalar"


def kind_of(value: Any) -> ValueKind:
    if isinstance(value, Mapping):
        return ValueKind.OBJECT
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    return ValueKind.SCALAR


@dataclass(frozen=True)
class PathSegment:
    key: str | None = None
    index: int | None = None

    @property
    def wildcard(self) -> bool:
        return self.key is None and self.index is None


WILDCARD = PathSegment()


class PathSyntaxError(ValueError):
    pass


@lru_cache(maxsize=1024)
def parse_path(path: str) -> tuple[PathSegment, ...]:
    """Split ``path`` into segments, rejecting stray characters."""
    if path is None or not str(path).strip():
        raise PathSyntaxError("path cannot be empty")
    text = str(path).strip()
    segments: list[PathSegment] = []
    position = 0
    for match in _TOKEN_RE.finditer(text):
        gap = text[position : match.start()]
        if gap.strip("."):
            raise PathSyntaxError(f"invalid path '{text}'")
        position = match.end()
        index, key = match.groups()
        if key is not None:
            segments.append(PathSegment(key=key))
        elif index:
            segments.append(PathSegment(index=int(index)))
        else:
            segments.append(WILDCARD)
    if text[position:].strip(".") or not segments:
        raise PathSyntaxError(f"invalid path '{text}'")
    return tuple(segments)


def wildcard_count(path: str) -> int:
    return sum(1 for segment in parse_path(path) if segment.wildcard)


def _step(value: Any, segment: PathSegment) -> Any:
    if segment.key is not None:
        if kind_of(value) is not ValueKind.OBJECT:
            return MISSING
        return value.get(segment.key, MISSING)
    if kind_of(value) is not ValueKind.ARRAY:
        return MISSING
    if segment.index is None or segment.index >= len(value):
        return MISSING
    return value[segment.index]


def resolve(payload: Any, path: str, indices: Sequence[int] = ()) -> Any:
    """
    Return the value at ``path`` or ``MISSING``.

    Wildcards consume ``indices`` left to right; a wildcard with no index
    left to bind resolves to ``MISSING``.
    """
    current = payload
    remaining = list(indices)
    for segment in parse_path(path):
        if segment.wildcard:
            if not remaining:
                return MISSING
            segment = PathSegment(index=remaining.pop(0))
        current = _step(current, segment)
        if current is MISSING:
            return MISSING
    return current


def iter_root_array(payload: Any, root_array: str) -> Iterator[tuple[tuple[int, ...], Any]]:
    """
    Yield ``(indices, element)`` for every element addressed by ``root_array``.

    The path names an array; nested wildcards fan out over every combination.
    A non-array target yields nothing.
    """
    segments = parse_path(root_array)
    if not segments[-1].wildcard:
        segments = segments + (WILDCARD,)
    yield from _expand(payload, segments, ())


def _expand(value: Any, segments: tuple[PathSegment, ...], indices: tuple[int, ...]):
    if not segments:
        yield indices, value
        return
    head, rest = segments[0], segments[1:]
    if head.wildcard:
        if kind_of(value) is ValueKind.ARRAY:
            for position, item in enumerate(value):
                yield from _expand(item, rest, indices + (position,))
        return
    child = _step(value, head)
    if child is MISSING:
        return
    yield from _expand(child, rest, indices)


def element_key(indices: Sequence[int]) -> str:
    return ",".join(str(index) for index in indices)
