#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
SsdpDiscovery -- Discovery of DLNA/UPnP media renderers with SSDP. It can:

  1. Send a bounded number of M-SEARCH requests for MediaRenderer devices
  2. Receive the unicast responses and fetch each device description document once
  3. Extract each renderer's friendly name and AVTransport control URL
  4. Publish the renderer list and control URLs to any number of handlers

Description documents are fetched with requests, in the event loop's default executor.
"""

from __future__ import annotations

import asyncio
import socket
from urllib.parse import urljoin, urlparse
import xml.etree.ElementTree as ET

import requests

from .internal_types import *
from .pkg_logging import logger
from .constants import (
    SSDP_MULTICAST_ADDRESS,
    SSDP_PORT,
    SSDP_MX,
    MEDIA_RENDERER_TYPE,
    DEFAULT_SEARCH_INTERVAL,
    DEFAULT_MAX_SEARCH_ATTEMPTS,
    DEFAULT_HTTP_TIMEOUT,
    USER_AGENT,
  )
from .exceptions import BindFailure, CastItError, NetworkFailure
from .device import DiscoveredDevice, DeviceDescription, ServiceEntry, TransportKind
from .datagram_socket import BoundSocket, DatagramSocket
from .events import HandlerRegistry
from .ssdp_message import SsdpMessage, build_msearch

SSDP_MULTICAST_TTL = 2
"""The IP TTL for outgoing M-SEARCH requests."""

AVTRANSPORT_TYPE_FRAGMENT = "AVTransport"
"""A <service> whose serviceType contains this string is used to control the renderer."""

def _find_text(element: ET.Element, path: str) -> Optional[str]:
    child = element.find(path)
    if child is None or child.text is None:
        return None
    text = child.text.strip()
    return None if text == '' else text

def parse_device_description(xml_data: Union[str, bytes], base_url: str) -> DeviceDescription:
    """Parses a UPnP device description document.

    Element names are matched in any namespace. Relative control URLs are resolved against
    base_url, which should be the URL the document was actually fetched from. A service whose
    control URL cannot be resolved is logged and left out.
    Raises xml.etree.ElementTree.ParseError if the document is not well-formed.
    """
    root = ET.fromstring(xml_data)
    services: List[ServiceEntry] = []
    for service in root.iterfind('.//{*}service'):
        service_type = _find_text(service, '{*}serviceType') or ''
        control_url = _find_text(service, '{*}controlURL')
        if control_url is None:
            control_url = ''
        else:
            try:
                control_url = urljoin(base_url, control_url)
            except ValueError as e:
                logger.warning(f"Skipping service {service_type!r} at {base_url}: bad control URL {control_url!r}: {e}")
                continue
        services.append(ServiceEntry(service_type, control_url))
    return DeviceDescription(
        location=base_url,
        friendly_name=_find_text(root, './/{*}friendlyName'),
        model_name=_find_text(root, './/{*}modelName'),
        services=services,
      )

class SsdpDiscovery(DatagramSocket):
    """
    An SSDP discovery driver for DLNA media renderers. Runs on the caller's event loop.

    Usage:
        async with SsdpDiscovery() as discovery:
            discovery.renderer_urls_updated.add(lambda urls: print(urls))
            await asyncio.sleep(10.0)
    """

    search_target: str
    search_interval: float
    max_search_attempts: int
    http_timeout: float
    bind_address: str
    multicast_address: str
    multicast_port: int
    mx: int

    search_attempts: int = 0
    """The number of M-SEARCH requests sent so far."""

    renderers: Dict[str, DiscoveredDevice]
    """Discovered renderers, by display name."""

    described_locations: Set[str]
    """Description URLs that have been fetched and parsed successfully."""

    in_flight_locations: Set[str]
    """Description URLs currently being fetched."""

    renderers_updated: HandlerRegistry[List[str]]
    renderer_urls_updated: HandlerRegistry[Dict[str, str]]
    errors: HandlerRegistry[str]

    _search_task: Optional[asyncio.Task[None]] = None
    _response_tasks: Set[asyncio.Task[Optional[DiscoveredDevice]]]
    _stopped: bool = False

    def __init__(
            self,
            search_target: str=MEDIA_RENDERER_TYPE,
            search_interval: float=DEFAULT_SEARCH_INTERVAL,
            max_search_attempts: int=DEFAULT_MAX_SEARCH_ATTEMPTS,
            http_timeout: float=DEFAULT_HTTP_TIMEOUT,
            bind_address: str='0.0.0.0',
            multicast_address: str=SSDP_MULTICAST_ADDRESS,
            multicast_port: int=SSDP_PORT,
            mx: int=SSDP_MX,
          ) -> None:
        super().__init__()
        self.search_target = search_target
        self.search_interval = search_interval
        self.max_search_attempts = max_search_attempts
        self.http_timeout = http_timeout
        self.bind_address = bind_address
        self.multicast_address = multicast_address
        self.multicast_port = multicast_port
        self.mx = mx
        self.renderers = {}
        self.described_locations = set()
        self.in_flight_locations = set()
        self.renderers_updated = HandlerRegistry('renderers_updated')
        self.renderer_urls_updated = HandlerRegistry('renderer_urls_updated')
        self.errors = HandlerRegistry('errors')
        self._response_tasks = set()

    def report_error(self, message: str) -> None:
        logger.warning(message)
        self.errors.emit(message)

    #@override
    async def open_sockets(self) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((self.bind_address, 0))
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, SSDP_MULTICAST_TTL)
        except OSError as e:
            sock.close()
            raise BindFailure(f"Unable to bind SSDP socket to {self.bind_address}: {e}") from e
        self.add_bound_socket(BoundSocket(sock))

    async def start(self) -> None:
        """Binds the socket and begins searching. A failure to start is reported on the
           errors channel rather than raised."""
        self._stopped = False
        try:
            await super().start()
        except CastItError as e:
            self._stopped = True
            self.report_error(f"SSDP discovery could not start: {e}")
        except OSError as e:
            self._stopped = True
            self.report_error(f"SSDP discovery could not start: {e}")

    #@override
    async def on_started(self) -> None:
        logger.info(f"SSDP discovery searching for {self.search_target}")
        self._search_task = asyncio.create_task(self._run_search_task())

    async def stop(self) -> None:
        """Cancels the search and closes the socket. Idempotent. Description fetches already in
           progress complete without effect."""
        self._stopped = True
        if self._search_task is not None:
            self._search_task.cancel()
        await super().stop()

    #@override
    async def cleanup(self) -> None:
        self._stopped = True
        if self._search_task is not None:
            self._search_task.cancel()
            try:
                await self._search_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Exception in SSDP search task: {e}")
            self._search_task = None

    def send_search(self) -> None:
        data = build_msearch(self.search_target, self.mx, self.multicast_address, self.multicast_port).raw_data
        self.send_all(data, (self.multicast_address, self.multicast_port))

    async def _run_search_task(self) -> None:
        logger.debug("SSDP search task starting")
        while self.search_attempts < self.max_search_attempts:
            self.search_attempts += 1
            try:
                self.send_search()
            except (OSError, CastItError) as e:
                logger.warning(f"Failed to send M-SEARCH: {e}")
            logger.debug(f"Sent M-SEARCH {self.search_attempts}/{self.max_search_attempts}")
            if self.search_attempts >= self.max_search_attempts:
                break
            await asyncio.sleep(self.search_interval)
        logger.debug("SSDP search task finished; still listening for late responses")

    #@override
    def datagram_received(self, bound: BoundSocket, addr: HostAndPort, data: bytes) -> None:
        if self._stopped:
            return
        task = asyncio.create_task(self.process_response(data, addr))
        self._response_tasks.add(task)
        task.add_done_callback(self._on_response_done)

    def _on_response_done(self, task: asyncio.Task[Optional[DiscoveredDevice]]) -> None:
        self._response_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.report_error(f"Failed handling SSDP response: {exc}")

    async def process_response(self, data: bytes, addr: HostAndPort) -> Optional[DiscoveredDevice]:
        """Handles one search response. Returns the renderer if this response added one."""
        message = SsdpMessage.parse(data)
        if not message.is_ok:
            logger.debug(f"Ignoring SSDP message from {addr}: {message.statement_line!r}")
            return None
        search_target = message.search_target
        if search_target is None or self.search_target not in search_target:
            logger.debug(f"Ignoring SSDP response from {addr} for {search_target!r}")
            return None
        location = message.location
        if location is None:
            logger.debug(f"Ignoring SSDP response from {addr} with no LOCATION")
            return None
        if location in self.in_flight_locations or location in self.described_locations:
            return None
        self.in_flight_locations.add(location)
        try:
            return await self.fetch_description(location)
        finally:
            self.in_flight_locations.discard(location)

    def _http_get(self, url: str) -> requests.Response:
        """GETs url. Raises NetworkFailure on a transport error or a non-2xx status."""
        try:
            response = requests.get(url, headers={'User-Agent': USER_AGENT}, timeout=self.http_timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise NetworkFailure(str(e)) from e
        return response

    async def fetch_description(self, location_url: str) -> Optional[DiscoveredDevice]:
        """Fetches and parses the device description at location_url, and adds the renderer it
           describes. Failures are logged and None is returned."""
        loop = asyncio.get_running_loop()
        logger.debug(f"Fetching device description {location_url}")
        try:
            response = await loop.run_in_executor(None, self._http_get, location_url)
        except NetworkFailure as e:
            logger.warning(f"Failed to fetch device description {location_url}: {e}")
            return None
        if self._stopped:
            logger.debug(f"Discarding device description {location_url} received after stop")
            return None
        base_url = response.url or location_url
        try:
            description = parse_device_description(response.content, base_url)
        except ET.ParseError as e:
            logger.warning(f"Invalid device description at {location_url}: {e}")
            return None
        self.described_locations.add(location_url)
        return self.add_renderer(description)

    def add_renderer(self, description: DeviceDescription) -> Optional[DiscoveredDevice]:
        """Adds the renderer described by description, if it has a name and an AVTransport
           control URL and is not already known."""
        name = description.display_name
        service = description.find_service(AVTRANSPORT_TYPE_FRAGMENT)
        if name is None or service is None:
            logger.debug(f"Device at {description.location} is not a controllable renderer")
            return None
        existing = self.renderers.get(name)
        if existing is not None:
            existing.touch()
            return None
        try:
            address = urlparse(description.location).hostname
        except ValueError:
            address = None
        device = DiscoveredDevice(
            name,
            TransportKind.DLNA,
            address=address,
            control_url=service.control_url,
          )
        self.renderers[name] = device
        logger.info(f"Discovered DLNA renderer {name!r} at {service.control_url}")
        self.renderers_updated.emit(list(self.renderers.keys()))
        self.renderer_urls_updated.emit(self.renderer_urls())
        return device

    def renderer_urls(self) -> Dict[str, str]:
        return { name: device.control_url for name, device in self.renderers.items() if device.control_url is not None }

    def get_renderers(self) -> List[DiscoveredDevice]:
        return list(self.renderers.values())
