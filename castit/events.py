#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Event handler registries through which drivers publish discovery updates and
status/error notifications to the rest of the application.

Drivers never raise to their callers across these channels: a handler that raises is
logged and the remaining handlers still run.
"""

from __future__ import annotations

import copy

from .internal_types import *
from .pkg_logging import logger

_T = TypeVar('_T')

EventHandler = Callable[[_T], None]
"""A callback for an event carrying a single value."""

Dispatcher = Callable[..., Any]
"""Schedules fn(value) for delivery, as dispatcher(fn, value); e.g. loop.call_soon_threadsafe."""

class HandlerRegistry(Generic[_T]):
    """A named set of event handlers, indexed by ID number."""

    name: str

    handlers: Dict[int, EventHandler[_T]]

    i_next_handler: int = 0
    """The next handler ID to assign."""

    dispatcher: Optional[Dispatcher] = None
    """If set, events are handed to the dispatcher instead of being delivered on the emitting
       thread. Used to move events off a driver's private thread onto the consumer's loop."""

    def __init__(self, name: str):
        self.name = name
        self.handlers = {}

    def add(self, handler: EventHandler[_T]) -> int:
        """Adds a handler. Returns an ID that can be passed to remove()."""
        i = self.i_next_handler
        self.i_next_handler += 1
        self.handlers[i] = handler
        return i

    def remove(self, i: int) -> None:
        """Removes a previously added handler."""
        del self.handlers[i]

    def emit(self, value: _T) -> None:
        if len(self.handlers) == 0:
            return
        if self.dispatcher is None:
            self._deliver(value)
        else:
            self.dispatcher(self._deliver, value)

    def _deliver(self, value: _T) -> None:
        # shallow copy per handler; published values are flat lists and dicts of strings
        for handler in list(self.handlers.values()):
            try:
                handler(copy.copy(value))
            except Exception as e:
                logger.warning(f"Handler for {self.name} raised exception: {e}")

    def __len__(self) -> int:
        return len(self.handlers)

    def __str__(self) -> str:
        return f"HandlerRegistry({self.name!r}, n={len(self.handlers)})"

class StatusReporter:
    """Mixin providing the status and error notification channels of a control driver."""

    status: HandlerRegistry[str]
    """Progress and lifecycle messages (e.g., "Connected to cast device")."""

    errors: HandlerRegistry[str]
    """Failure messages. Failures are reported here instead of being raised to the caller."""

    def __init__(self) -> None:
        self.status = HandlerRegistry('status')
        self.errors = HandlerRegistry('errors')

    def report_status(self, message: str) -> None:
        logger.info(message)
        self.status.emit(message)

    def report_error(self, message: str) -> None:
        logger.warning(message)
        self.errors.emit(message)
