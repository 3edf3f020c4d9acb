# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Package castit discovers media-casting receivers on a local network and plays local media files on them.

Two kinds of receiver are supported:

  - Cast (Chromecast-like) devices, discovered with multicast DNS and controlled with JSON messages
    over a WebSocket session
  - DLNA/UPnP media renderers, discovered with SSDP and controlled with AVTransport SOAP actions

In both cases the media file is served to the receiver by a small HTTP responder on the local host.
"""

from .version import __version__

from .internal_types import Jsonable, JsonableDict

from .exceptions import (
    CastItError,
    BindFailure,
    MulticastJoinFailure,
    DnsDecodeError,
    DnsTruncatedError,
    DnsMalformedError,
    NetworkFailure,
    MediaNotFound,
  )

from .dns_message import DnsMessage, DnsRecordType, encode_query, encode_name, decode_message, split_name, escape_label
from .device import DiscoveredDevice, TransportKind, DeviceDescription, ServiceEntry
from .classifier import DeviceClassifier, KeywordClassifier, ServiceTypeClassifier
from .events import HandlerRegistry, StatusReporter
from .datagram_socket import BoundSocket, DatagramSocket
from .mdns_discovery import MdnsDiscovery, MdnsDiscoveryEngine, MdnsStage, MdnsState
from .ssdp_message import SsdpMessage
from .ssdp_discovery import SsdpDiscovery, parse_device_description
from .media_responder import LocalMediaResponder
from .cast_controller import CastController
from .dlna_controller import DlnaController
from .util import CaseInsensitiveDict, get_usable_ipv4_interfaces, get_preferred_local_ip

__all__ = [
    '__version__',
    'Jsonable', 'JsonableDict',
    'CastItError', 'BindFailure', 'MulticastJoinFailure',
    'DnsDecodeError', 'DnsTruncatedError', 'DnsMalformedError',
    'NetworkFailure', 'MediaNotFound',
    'DnsMessage', 'DnsRecordType', 'encode_query', 'encode_name', 'decode_message', 'split_name', 'escape_label',
    'DiscoveredDevice', 'TransportKind', 'DeviceDescription', 'ServiceEntry',
    'DeviceClassifier', 'KeywordClassifier', 'ServiceTypeClassifier',
    'HandlerRegistry', 'StatusReporter',
    'BoundSocket', 'DatagramSocket',
    'MdnsDiscovery', 'MdnsDiscoveryEngine', 'MdnsStage', 'MdnsState',
    'SsdpMessage',
    'SsdpDiscovery', 'parse_device_description',
    'LocalMediaResponder',
    'CastController',
    'DlnaController',
    'CaseInsensitiveDict', 'get_usable_ipv4_interfaces', 'get_preferred_local_ip',
]
