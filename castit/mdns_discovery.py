#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
MdnsDiscovery -- Discovery of Cast (and AirPlay) receivers with multicast DNS. It can:

  1. Listen on the mDNS multicast group (224.0.0.251:5353) on every usable local interface
  2. Send staged PTR, SRV, TXT and A queries, one query per tick, for a bounded number of rounds
  3. Decode responses from other hosts and collect the casting devices they describe
  4. Publish the device list and device addresses to any number of handlers

The protocol state lives in MdnsDiscoveryEngine, which performs no I/O and can be driven
directly. MdnsDiscovery runs an engine on a dedicated thread with its own asyncio event loop,
so discovery is never delayed by work on the application's loop.
"""

from __future__ import annotations

import asyncio
import socket
import struct
import sys
import threading
from collections import deque
from enum import Enum

from .internal_types import *
from .pkg_logging import logger
from .constants import (
    MDNS_MULTICAST_ADDRESS,
    MDNS_PORT,
    DEFAULT_MDNS_SERVICE_TYPES,
    DEFAULT_QUERY_SPACING,
    DEFAULT_QUERY_INTERVAL,
    DEFAULT_MAX_QUERY_ROUNDS,
    MIN_MDNS_DATAGRAM_SIZE,
  )
from .exceptions import BindFailure, CastItError, DnsDecodeError, MulticastJoinFailure
from .dns_message import (
    DnsMessage, DnsRecordType, DnsResourceRecord, SrvData, decode_message, encode_query, parse_txt_properties, split_name
  )
from .device import DiscoveredDevice
from .classifier import DeviceClassifier, KeywordClassifier
from .datagram_socket import BoundSocket, DatagramSocket
from .events import HandlerRegistry
from .util import get_local_ipv4_addresses, get_usable_ipv4_interfaces

MDNS_MULTICAST_TTL = 255
"""The IP TTL for outgoing mDNS queries."""

class MdnsStage(Enum):
    """The periodic query stage of an MdnsDiscoveryEngine."""
    SERVICES = "services"
    """Sending a PTR query for each configured service type."""
    INSTANCES = "instances"
    """Sending an SRV and a TXT query for each instance collected so far."""
    WAITING = "waiting"
    """Waiting for the next round to begin."""
    DONE = "done"
    """All rounds have been sent. Only follow-up queries are sent from here on."""

class MdnsState(Enum):
    """The lifecycle state of an MdnsDiscovery driver."""
    IDLE = "idle"
    BINDING = "binding"
    LISTENING = "listening"
    STOPPED = "stopped"

class MdnsQuery(NamedTuple):
    name: str
    qtype: DnsRecordType

    def __str__(self) -> str:
        return f"{self.qtype.name} {self.name}"

class MdnsUpdate(NamedTuple):
    """What changed as a result of processing one response."""
    devices_changed: bool = False
    addresses_changed: bool = False
    followups_queued: int = 0

_RECORD_ORDER: Dict[int, int] = {
    DnsRecordType.PTR: 0,
    DnsRecordType.SRV: 1,
    DnsRecordType.TXT: 1,
    DnsRecordType.A: 2,
  }
"""Records are applied in this order within a response, so that the instance named by a PTR
   is known before its SRV/TXT arrive and host names are known before their A records."""

class MdnsDiscoveryEngine:
    """
    The mDNS query/response state machine.

    The engine hands out queries one at a time from next_query(). Follow-up queries triggered by
    responses are always served first; then the queries of the current periodic stage. Each round
    sends PTR queries for the service types (SERVICES), then SRV and TXT queries for each
    instance found so far (INSTANCES), and then waits (WAITING) until start_round() is called
    again. After max_query_rounds rounds the stage becomes DONE.
    """

    service_types: List[str]
    classifier: DeviceClassifier
    max_query_rounds: int

    local_addresses: Set[str]
    """Datagrams from these sender addresses are ignored (our own queries looped back)."""

    stage: MdnsStage = MdnsStage.WAITING
    rounds_started: int = 0

    devices: Dict[str, DiscoveredDevice]
    """Discovered devices, by display name. Devices are never removed."""

    instances: Dict[str, str]
    """Map of lower-cased service instance name to device name."""

    host_devices: Dict[str, Set[str]]
    """Map of lower-cased SRV target host to the names of the devices on that host."""

    host_addresses: Dict[str, str]
    """Map of lower-cased host name to the most recently seen IPv4 address."""

    _pending: Deque[MdnsQuery]
    _followups: Deque[MdnsQuery]
    _followup_keys: Set[Tuple[str, int]]

    def __init__(
            self,
            service_types: Iterable[str]=DEFAULT_MDNS_SERVICE_TYPES,
            classifier: Optional[DeviceClassifier]=None,
            max_query_rounds: int=DEFAULT_MAX_QUERY_ROUNDS,
            local_addresses: Optional[Iterable[str]]=None,
          ):
        self.service_types = list(service_types)
        self.classifier = KeywordClassifier() if classifier is None else classifier
        self.max_query_rounds = max_query_rounds
        self.local_addresses = set() if local_addresses is None else set(local_addresses)
        self.devices = {}
        self.instances = {}
        self.host_devices = {}
        self.host_addresses = {}
        self._pending = deque()
        self._followups = deque()
        self._followup_keys = set()

    @property
    def rounds_exhausted(self) -> bool:
        return self.rounds_started >= self.max_query_rounds

    @property
    def followup_count(self) -> int:
        return len(self._followups)

    def start_round(self) -> bool:
        """Begins the next periodic round. Returns False (and moves to DONE) if all rounds have been sent."""
        if self.rounds_exhausted:
            self.stage = MdnsStage.DONE
            self._pending.clear()
            return False
        self.rounds_started += 1
        self.stage = MdnsStage.SERVICES
        self._pending.clear()
        for service_type in self.service_types:
            self._pending.append(MdnsQuery(service_type, DnsRecordType.PTR))
        logger.debug(f"mDNS query round {self.rounds_started}/{self.max_query_rounds} started")
        return True

    def next_query(self) -> Optional[MdnsQuery]:
        """Returns the next query to send, or None if there is nothing to send until the next round
           (or the next follow-up)."""
        if len(self._followups) > 0:
            query = self._followups.popleft()
            if query.qtype == DnsRecordType.A:
                # an unanswered address query may be asked again on a later SRV sighting
                self._followup_keys.discard((query.name.lower(), query.qtype))
            return query
        while True:
            if len(self._pending) > 0:
                return self._pending.popleft()
            if self.stage == MdnsStage.SERVICES:
                self.stage = MdnsStage.INSTANCES
                for device in self.devices.values():
                    if device.instance_name is not None:
                        self._pending.append(MdnsQuery(device.instance_name, DnsRecordType.SRV))
                        self._pending.append(MdnsQuery(device.instance_name, DnsRecordType.TXT))
                continue
            if self.stage == MdnsStage.INSTANCES:
                self.stage = MdnsStage.DONE if self.rounds_exhausted else MdnsStage.WAITING
                logger.debug(f"mDNS query round {self.rounds_started} complete; stage={self.stage.name}")
            return None

    def _queue_followup(self, name: str, qtype: DnsRecordType) -> bool:
        key = (name.lower(), int(qtype))
        if key in self._followup_keys:
            return False
        self._followup_keys.add(key)
        self._followups.append(MdnsQuery(name, qtype))
        return True

    def device_names(self) -> List[str]:
        return list(self.devices.keys())

    def device_addresses(self) -> Dict[str, str]:
        return { name: device.address for name, device in self.devices.items() if device.address is not None }

    def process_datagram(self, data: bytes, sender_ip: str) -> Optional[MdnsUpdate]:
        """Decodes and applies a received datagram. Returns None if the datagram was ignored."""
        if len(data) < MIN_MDNS_DATAGRAM_SIZE:
            logger.debug(f"Ignoring {len(data)}-byte mDNS datagram from {sender_ip}")
            return None
        if sender_ip in self.local_addresses:
            return None
        try:
            message = decode_message(data)
        except DnsDecodeError as e:
            logger.debug(f"Ignoring undecodable mDNS datagram from {sender_ip}: {e}")
            return None
        if not message.is_response:
            return None
        return self.process_message(message)

    def process_message(self, message: DnsMessage) -> MdnsUpdate:
        records = [ r for r in message.answers + message.additionals if r.rtype in _RECORD_ORDER ]
        records.sort(key=lambda r: _RECORD_ORDER[r.rtype])
        devices_changed = False
        addresses_changed = False
        followups_before = len(self._followups)
        for record in records:
            if record.rtype == DnsRecordType.PTR:
                devices_changed = self._apply_ptr(record) or devices_changed
            elif record.rtype == DnsRecordType.SRV:
                addresses_changed = self._apply_srv(record) or addresses_changed
            elif record.rtype == DnsRecordType.TXT:
                self._apply_txt(record)
            else:
                addresses_changed = self._apply_a(record) or addresses_changed
        return MdnsUpdate(devices_changed, addresses_changed, len(self._followups) - followups_before)

    def _apply_ptr(self, record: DnsResourceRecord) -> bool:
        target = record.value
        assert isinstance(target, str)
        kind = self.classifier.classify(record.name, target)
        if kind is None:
            return False
        labels = split_name(target)
        device_name = labels[0] if len(labels) > 0 else ''
        if device_name == '' or device_name.startswith('_'):
            # a service type enumeration answer, not an instance
            return False
        added = False
        device = self.devices.get(device_name)
        if device is None:
            device = DiscoveredDevice(device_name, kind, instance_name=target)
            self.devices[device_name] = device
            logger.info(f"Discovered cast device {device_name!r} ({target})")
            added = True
        else:
            device.touch()
            if device.instance_name is None:
                device.instance_name = target
            elif device.instance_name.lower() != target.lower():
                # another service type under the same display name; the first instance owns the endpoint
                logger.debug(f"Ignoring {target!r}; {device_name!r} is {device.instance_name!r}")
                return False
        self.instances[target.lower()] = device_name
        self._queue_followup(target, DnsRecordType.SRV)
        self._queue_followup(target, DnsRecordType.TXT)
        return added

    def _device_for_instance(self, instance_name: str) -> Optional[DiscoveredDevice]:
        device_name = self.instances.get(instance_name.lower())
        if device_name is None:
            return None
        return self.devices.get(device_name)

    def _set_address(self, device: DiscoveredDevice, address: str) -> bool:
        device.touch()
        if device.address == address:
            return False
        logger.debug(f"Address of {device.name!r} is now {address}")
        device.address = address
        return True

    def _apply_srv(self, record: DnsResourceRecord) -> bool:
        device = self._device_for_instance(record.name)
        if device is None:
            return False
        srv = record.value
        assert isinstance(srv, SrvData)
        device.port = srv.port
        host = srv.target.lower()
        for other_host, names in self.host_devices.items():
            if other_host != host:
                names.discard(device.name)
        self.host_devices.setdefault(host, set()).add(device.name)
        address = self.host_addresses.get(host)
        if address is None:
            self._queue_followup(srv.target, DnsRecordType.A)
            return False
        return self._set_address(device, address)

    def _apply_txt(self, record: DnsResourceRecord) -> None:
        device = self._device_for_instance(record.name)
        if device is None:
            return
        strings = record.value
        assert isinstance(strings, list)
        device.properties.update(parse_txt_properties(strings))
        device.touch()

    def _apply_a(self, record: DnsResourceRecord) -> bool:
        address = record.value
        assert isinstance(address, str)
        host = record.name.lower()
        self.host_addresses[host] = address
        changed = False
        for device_name in self.host_devices.get(host, ()):
            device = self.devices.get(device_name)
            if device is not None:
                changed = self._set_address(device, address) or changed
        return changed

class _MdnsSocket(DatagramSocket):
    """The multicast socket of an MdnsDiscovery driver. Lives on the driver's thread."""

    owner: MdnsDiscovery

    def __init__(self, owner: MdnsDiscovery):
        super().__init__()
        self.owner = owner

    #@override
    async def open_sockets(self) -> None:
        owner = self.owner
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if sys.platform not in ( 'win32', 'cygwin' ):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            # Multicast listeners MUST bind to 0.0.0.0:<port> to receive multicast packets
            sock.bind(('', owner.multicast_port))
        except OSError as e:
            sock.close()
            raise BindFailure(f"Unable to bind mDNS socket to port {owner.multicast_port}: {e}") from e

        group_bin = socket.inet_aton(owner.multicast_address)
        joined: List[str] = []
        for bind_address in owner.get_interface_addresses():
            mreq = group_bin + socket.inet_aton(bind_address)
            try:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
            except OSError as e:
                logger.warning(f"Failed joining multicast group {owner.multicast_address} on {bind_address}: {e}")
                continue
            logger.debug(f"Joined multicast group {owner.multicast_address} on {bind_address}")
            joined.append(bind_address)
        if len(joined) == 0:
            mreq = group_bin + struct.pack('=I', socket.INADDR_ANY)
            try:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
            except OSError as e:
                sock.close()
                raise MulticastJoinFailure(
                    f"Unable to join multicast group {owner.multicast_address} on any interface: {e}") from e
            logger.debug(f"Joined multicast group {owner.multicast_address} on INADDR_ANY")
        else:
            try:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_IF, socket.inet_aton(joined[0]))
            except OSError as e:
                logger.warning(f"Unable to select multicast interface {joined[0]}: {e}")
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, MDNS_MULTICAST_TTL)
        unicast_ip = joined[0] if len(joined) > 0 else '0.0.0.0'
        self.add_bound_socket(BoundSocket(sock, local_addr=(unicast_ip, owner.multicast_port)))

    def send_query(self, query: MdnsQuery) -> None:
        data = encode_query(query.name, query.qtype)
        self.send_all(data, (self.owner.multicast_address, self.owner.multicast_port))

    #@override
    def datagram_received(self, bound: BoundSocket, addr: HostAndPort, data: bytes) -> None:
        self.owner.handle_datagram(addr, data)

class MdnsDiscovery:
    """
    A multicast DNS discovery driver for casting receivers.

    Usage:
        discovery = MdnsDiscovery(callback_loop=asyncio.get_running_loop())
        discovery.devices_updated.add(lambda names: print(names))
        discovery.start()
        ...
        discovery.stop()

    start() returns immediately; binding and querying happen on the driver's own thread.
    If callback_loop is provided, handlers are called on that loop; otherwise they are called
    on the discovery thread. Every handler receives its own copy of the published data.
    """

    engine: MdnsDiscoveryEngine
    query_spacing: float
    query_interval: float
    multicast_address: str
    multicast_port: int

    interfaces: Optional[List[str]]
    """The local IPv4 addresses on which to join the multicast group. If None, every usable
       non-loopback interface address is used."""

    devices_updated: HandlerRegistry[List[str]]
    device_addresses_updated: HandlerRegistry[Dict[str, str]]
    errors: HandlerRegistry[str]

    state: MdnsState = MdnsState.IDLE

    _lock: threading.Lock
    _thread: Optional[threading.Thread] = None
    _loop: Optional[asyncio.AbstractEventLoop] = None
    _stop_event: Optional[asyncio.Event] = None
    _wakeup: Optional[asyncio.Event] = None
    _stop_requested: bool = False
    _socket: Optional[_MdnsSocket] = None

    def __init__(
            self,
            service_types: Iterable[str]=DEFAULT_MDNS_SERVICE_TYPES,
            classifier: Optional[DeviceClassifier]=None,
            query_spacing: float=DEFAULT_QUERY_SPACING,
            query_interval: float=DEFAULT_QUERY_INTERVAL,
            max_query_rounds: int=DEFAULT_MAX_QUERY_ROUNDS,
            callback_loop: Optional[asyncio.AbstractEventLoop]=None,
            interfaces: Optional[Iterable[str]]=None,
            multicast_address: str=MDNS_MULTICAST_ADDRESS,
            multicast_port: int=MDNS_PORT,
          ):
        self.engine = MdnsDiscoveryEngine(service_types, classifier, max_query_rounds)
        self.query_spacing = query_spacing
        self.query_interval = query_interval
        self.multicast_address = multicast_address
        self.multicast_port = multicast_port
        self.interfaces = None if interfaces is None else list(interfaces)
        self.devices_updated = HandlerRegistry('devices_updated')
        self.device_addresses_updated = HandlerRegistry('device_addresses_updated')
        self.errors = HandlerRegistry('errors')
        if callback_loop is not None:
            for registry in (self.devices_updated, self.device_addresses_updated, self.errors):
                registry.dispatcher = callback_loop.call_soon_threadsafe
        self._lock = threading.Lock()

    def get_interface_addresses(self) -> List[str]:
        if self.interfaces is not None:
            return list(self.interfaces)
        return [ entry.address for entry in get_usable_ipv4_interfaces(include_loopback=False) ]

    def get_devices(self) -> List[DiscoveredDevice]:
        """Returns the devices discovered so far. Consistent only while the driver is stopped or
           when called from the discovery thread; use the update events otherwise."""
        return list(self.engine.devices.values())

    def start(self) -> None:
        """Starts discovery on a new thread. Does nothing if already started."""
        with self._lock:
            if self.state != MdnsState.IDLE:
                return
            self.state = MdnsState.BINDING
            self._thread = threading.Thread(target=self._thread_main, name="castit-mdns", daemon=True)
            # must be running before the lock is released; stop() joins it
            self._thread.start()

    def stop(self) -> None:
        """Stops discovery and waits for the discovery thread to exit. May be called from any thread.
           Idempotent."""
        with self._lock:
            self._stop_requested = True
            if self.state == MdnsState.IDLE:
                self.state = MdnsState.STOPPED
                return
            loop = self._loop
            stop_event = self._stop_event
            thread = self._thread
        if loop is not None and stop_event is not None:
            try:
                loop.call_soon_threadsafe(stop_event.set)
            except RuntimeError:
                logger.debug("mDNS discovery loop already closed")
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def report_error(self, message: str) -> None:
        logger.warning(message)
        self.errors.emit(message)

    def _thread_main(self) -> None:
        try:
            asyncio.run(self._run())
        except Exception as e:
            logger.exception(f"mDNS discovery thread exited with exception: {e}")
            self.report_error(f"mDNS discovery failed: {e}")
        finally:
            with self._lock:
                self.state = MdnsState.STOPPED
                self._loop = None
                self._stop_event = None
            logger.debug("mDNS discovery thread exiting")

    async def _run(self) -> None:
        stop_event = asyncio.Event()
        self._wakeup = asyncio.Event()
        with self._lock:
            self._loop = asyncio.get_running_loop()
            self._stop_event = stop_event
            if self._stop_requested:
                return

        self.engine.local_addresses = get_local_ipv4_addresses(include_loopback=True)
        mdns_socket = _MdnsSocket(self)
        try:
            await mdns_socket.start()
        except CastItError as e:
            self.report_error(f"mDNS discovery could not start: {e}")
            return
        except OSError as e:
            self.report_error(f"mDNS discovery could not start: {e}")
            return
        assert mdns_socket.lifetime is not None
        self._socket = mdns_socket
        with self._lock:
            self.state = MdnsState.LISTENING
        logger.info(f"mDNS discovery listening on {self.multicast_address}:{self.multicast_port}")

        self.engine.start_round()
        ticker_task = asyncio.create_task(self._run_ticker(mdns_socket))
        stop_task = asyncio.create_task(stop_event.wait())
        try:
            await asyncio.wait([stop_task, mdns_socket.lifetime], return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (ticker_task, stop_task):
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            socket_exc: Optional[BaseException] = None
            if mdns_socket.lifetime.done() and not mdns_socket.lifetime.cancelled():
                socket_exc = mdns_socket.lifetime.exception()
            await mdns_socket.stop()
            if socket_exc is not None:
                self.report_error(f"mDNS socket failed: {socket_exc}")
            self._socket = None

    async def _run_ticker(self, mdns_socket: _MdnsSocket) -> None:
        """Sends one query per tick. Between rounds, and after the last round, sleeps until the
           next round is due or a response queues a follow-up."""
        assert self._wakeup is not None
        loop = asyncio.get_running_loop()
        next_round_at: Optional[float] = None
        while True:
            query = self.engine.next_query()
            if query is not None:
                try:
                    logger.debug(f"Sending mDNS query {query}")
                    mdns_socket.send_query(query)
                except (OSError, CastItError) as e:
                    logger.warning(f"Failed to send mDNS query {query}: {e}")
                await asyncio.sleep(self.query_spacing)
                continue
            self._wakeup.clear()
            if self.engine.stage == MdnsStage.WAITING:
                if next_round_at is None:
                    next_round_at = loop.time() + self.query_interval
                remaining = next_round_at - loop.time()
                if remaining <= 0.0:
                    next_round_at = None
                    self.engine.start_round()
                    continue
                try:
                    await asyncio.wait_for(self._wakeup.wait(), remaining)
                except asyncio.TimeoutError:
                    pass
            else:
                await self._wakeup.wait()

    def handle_datagram(self, addr: HostAndPort, data: bytes) -> None:
        """Called on the discovery thread for each received datagram."""
        update = self.engine.process_datagram(data, addr[0])
        if update is None:
            return
        if update.devices_changed:
            self.devices_updated.emit(self.engine.device_names())
        if update.addresses_changed:
            self.device_addresses_updated.emit(self.engine.device_addresses())
        if update.followups_queued > 0 and self._wakeup is not None:
            self._wakeup.set()

    def __str__(self) -> str:
        return f"MdnsDiscovery(state={self.state.name}, stage={self.engine.stage.name}, devices={len(self.engine.devices)})"
