#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Devices found by discovery, and the UPnP device description documents fetched for DLNA renderers.
"""

from __future__ import annotations

import time
from enum import Enum

from .internal_types import *
from .constants import CAST_HTTP_PORT

class TransportKind(Enum):
    """The control protocol spoken by a discovered device."""
    CAST = "cast"
    DLNA = "dlna"
    AIRPLAY = "airplay"
    """Found by mDNS but not controllable; castit has no AirPlay controller."""

class DiscoveredDevice:
    """A casting receiver found on the local network. Identity is the name; everything else
       is refreshed on later sightings."""

    name: str
    """The display name of the device. Unique within the discovering driver's device set."""

    kind: TransportKind

    address: Optional[str] = None
    """The IPv4 address of the device, once known."""

    port: Optional[int] = None
    """The service port advertised for the device, once known."""

    instance_name: Optional[str] = None
    """The full mDNS service instance name (e.g., "MyCast._googlecast._tcp.local"), if any."""

    control_url: Optional[str] = None
    """For DLNA renderers, the resolved AVTransport control URL."""

    properties: Dict[str, str]
    """Key/value attributes from mDNS TXT records (e.g., "fn" for the friendly name)."""

    last_seen: float
    """time.monotonic() at the most recent sighting."""

    def __init__(
            self,
            name: str,
            kind: TransportKind,
            address: Optional[str]=None,
            instance_name: Optional[str]=None,
            control_url: Optional[str]=None,
          ):
        self.name = name
        self.kind = kind
        self.address = address
        self.instance_name = instance_name
        self.control_url = control_url
        self.properties = {}
        self.touch()

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    @property
    def control_endpoint(self) -> Optional[str]:
        """Where control requests for this device are sent: the receiver's HTTP endpoint on port
           8008 for Cast devices, or the AVTransport control URL for DLNA renderers. None for AirPlay
           receivers."""
        if self.kind == TransportKind.DLNA:
            return self.control_url
        if self.kind == TransportKind.AIRPLAY:
            return None
        if self.address is None:
            return None
        return f"http://{self.address}:{CAST_HTTP_PORT}"

    @property
    def friendly_name(self) -> str:
        return self.properties.get('fn') or self.name

    def to_jsonable(self) -> JsonableDict:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "address": self.address,
            "port": self.port,
            "instance_name": self.instance_name,
            "control_endpoint": self.control_endpoint,
            "properties": dict(self.properties),
        }

    def __str__(self) -> str:
        return f"DiscoveredDevice({self.name!r}, {self.kind.value}, address={self.address}, control={self.control_endpoint})"

    def __repr__(self) -> str:
        return str(self)

class ServiceEntry(NamedTuple):
    """A <service> entry in a UPnP device description."""
    service_type: str
    control_url: str

class DeviceDescription(NamedTuple):
    """The parts of a UPnP device description document used to control a renderer."""

    location: str
    """The URL the document was fetched from (after redirects); relative URLs resolve against it."""

    friendly_name: Optional[str]
    model_name: Optional[str]
    services: List[ServiceEntry]

    @property
    def display_name(self) -> Optional[str]:
        """friendlyName if present, else modelName."""
        return self.friendly_name or self.model_name or None

    def find_service(self, type_fragment: str) -> Optional[ServiceEntry]:
        """Returns the first service whose serviceType contains type_fragment and that has a control URL."""
        for service in self.services:
            if type_fragment in service.service_type and service.control_url != '':
                return service
        return None
