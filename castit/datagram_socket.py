#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
DatagramSocket -- An abstract base class for the UDP side of a discovery driver.

A DatagramSocket owns one or more bound UDP sockets (a multicast listener for mDNS, an
ephemeral unicast socket for SSDP), attaches them to the running event loop, and hands every
datagram to its datagram_received() hook. Its lifetime is tracked in a single future: when
the future completes, normally or with an exception, every socket is closed.

Subclasses implement open_sockets() to create and bind their sockets.
"""

from __future__ import annotations

import asyncio
import socket
from abc import ABC, abstractmethod

from .internal_types import *
from .pkg_logging import logger
from .exceptions import BindFailure, CastItError

class BoundSocket:
    """A low-level bound UDP socket, and once started, the asyncio transport that drives it."""

    owner: Optional[DatagramSocket] = None

    index: int = -1
    """Position within the owner's bound_sockets. -1 until attached."""

    sock: Optional[socket.socket] = None

    transport: Optional[asyncio.DatagramTransport] = None

    local_addr: HostAndPort
    """The local (ip, port) that remote hosts see as the source of our datagrams."""

    label: str
    """How the socket is named in log messages."""

    def __init__(self, sock: socket.socket, local_addr: Optional[HostAndPort]=None, label: Optional[str]=None):
        self.sock = sock
        if local_addr is None:
            sockname = sock.getsockname()
            local_addr = (sockname[0], sockname[1])
        self.local_addr = local_addr
        self.label = f"{local_addr[0]}:{local_addr[1]}" if label is None else label

    def attach(self, owner: DatagramSocket, index: int) -> None:
        if self.owner is not None:
            raise CastItError(f"{self} already belongs to {self.owner}")
        self.owner = owner
        self.index = index

    def sendto(self, data: bytes, addr: HostAndPort) -> None:
        transport = self.transport
        if transport is None:
            raise CastItError(f"Cannot send on closed {self}")
        logger.debug(f"{self}: sending {len(data)} bytes to {addr[0]}:{addr[1]}")
        transport.sendto(data, addr)

    def close(self) -> None:
        """Closes the transport and the socket. Idempotent."""
        transport, sock = self.transport, self.sock
        self.transport = None
        self.sock = None
        if transport is not None:
            transport.close()
        if sock is not None:
            try:
                sock.close()
            except OSError as e:
                logger.warning(f"Error closing {self}: {e}")

    def __str__(self) -> str:
        return f"BoundSocket({self.index}: {self.label})"

    def __repr__(self) -> str:
        return str(self)

class _DatagramRelay(asyncio.DatagramProtocol):
    """Relays transport callbacks for one BoundSocket to its owning DatagramSocket."""

    bound: BoundSocket

    def __init__(self, bound: BoundSocket):
        self.bound = bound

    @property
    def owner(self) -> DatagramSocket:
        assert self.bound.owner is not None
        return self.bound.owner

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        # the selector transport is not a subclass of asyncio.DatagramTransport
        self.bound.transport = transport # type: ignore[assignment]
        logger.debug(f"{self.bound}: transport ready")

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        try:
            self.owner.datagram_received(self.bound, (addr[0], addr[1]), data)
        except Exception as e:
            logger.warning(f"{self.bound}: failed handling datagram from {addr[0]}:{addr[1]}: {e}")

    def error_received(self, exc: Exception) -> None:
        self.owner.error_received(self.bound, exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.bound.transport = None
        self.owner.connection_lost(self.bound, exc)

class DatagramSocket(AsyncContextManager['DatagramSocket'], ABC):
    """
    The asyncio owner of a set of bound UDP sockets.

    Usage:
        async with MyDatagramSocket() as s:
            s.send_all(data, (group, port))
            ...
    """

    bound_sockets: List[BoundSocket]

    lifetime: Optional[asyncio.Future[None]] = None
    """Completes when the socket stops; holds the exception if it failed. Created by start()."""

    def __init__(self) -> None:
        self.bound_sockets = []

    def add_bound_socket(self, bound: BoundSocket) -> None:
        bound.attach(self, len(self.bound_sockets))
        self.bound_sockets.append(bound)
        logger.debug(f"{type(self).__name__}: added {bound}")

    @abstractmethod
    async def open_sockets(self) -> None:
        """Creates and binds this object's sockets and adds each with add_bound_socket().
           Raises BindFailure if a socket cannot be bound."""
        raise NotImplementedError()

    async def on_started(self) -> None:
        """Called once every socket is attached to the loop."""

    async def cleanup(self) -> None:
        """Called after the lifetime future completes, to cancel subclass tasks."""

    @property
    def is_running(self) -> bool:
        return self.lifetime is not None and not self.lifetime.done()

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self.lifetime = loop.create_future()
        try:
            await self.open_sockets()
            if len(self.bound_sockets) == 0:
                raise BindFailure(f"{type(self).__name__} bound no sockets")
            for bound in self.bound_sockets:
                await loop.create_datagram_endpoint(
                    lambda bound=bound: _DatagramRelay(bound), # type: ignore[misc]
                    sock=bound.sock,
                  )
            await self.on_started()
        except BaseException as e:
            self.finish(e)
            try:
                await self.wait_closed()
            except BaseException:
                pass
            raise

    async def stop(self) -> None:
        """Stops the socket. Idempotent."""
        self.finish()

    async def wait_closed(self) -> None:
        """Waits for the lifetime future, then runs cleanup(). Raises the failure, if any."""
        try:
            if self.lifetime is not None:
                await self.lifetime
        finally:
            await self.cleanup()

    async def close(self) -> None:
        await self.stop()
        await self.wait_closed()

    def send_all(self, data: bytes, addr: HostAndPort) -> None:
        """Sends data to addr from every bound socket."""
        for bound in self.bound_sockets:
            bound.sendto(data, addr)

    def datagram_received(self, bound: BoundSocket, addr: HostAndPort, data: bytes) -> None:
        logger.debug(f"{bound}: ignoring {len(data)} bytes from {addr[0]}:{addr[1]}")

    def error_received(self, bound: BoundSocket, exc: Exception) -> None:
        # ICMP errors for individual sends land here; they do not end the socket
        logger.info(f"{bound}: transport error: {exc}")

    def connection_lost(self, bound: BoundSocket, exc: Optional[Exception]) -> None:
        logger.debug(f"{bound}: transport closed, exc={exc}")
        self.finish(exc)

    def finish(self, exc: Optional[BaseException]=None) -> None:
        """Completes the lifetime future, with exc if given, and closes every socket. Idempotent."""
        lifetime = self.lifetime
        if lifetime is not None and not lifetime.done():
            if exc is None:
                lifetime.set_result(None)
            else:
                logger.debug(f"{type(self).__name__}: stopping on error: {exc}")
                lifetime.set_exception(exc)
        for bound in self.bound_sockets:
            bound.close()

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        self.finish(exc)
        try:
            await self.wait_closed()
        except Exception as e:
            logger.debug(f"{type(self).__name__}: closed with error: {e}")
        return False
