# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Type hints and common type aliases used internally by this package.

Modules in this package do "from .internal_types import *" to pick these up.
"""

from __future__ import annotations

from typing import (
    TYPE_CHECKING,
    Any,
    AsyncContextManager,
    AsyncIterator,
    Awaitable,
    Callable,
    ClassVar,
    Dict,
    Generic,
    Iterable,
    Iterator,
    List,
    Mapping,
    MutableMapping,
    NamedTuple,
    Protocol,
    Optional,
    Sequence,
    Set,
    Tuple,
    TypeVar,
    Union,
    cast,
)

from types import TracebackType

from typing_extensions import Self

Jsonable = Union[None, bool, int, float, str, List['Jsonable'], Dict[str, 'Jsonable']]
"""A type hint for a value that can be serialized to JSON."""

JsonableDict = Dict[str, Jsonable]
"""A type hint for a JSON object (a dict with string keys)."""

HostAndPort = Tuple[str, int]
"""A (host, port) tuple as used by the socket module for IPv4 addresses."""
