#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Simple utility functions used by this package:

  - Relaxed parsing of HTTP-style header blocks (as carried in SSDP datagrams)
  - The shared, read-only local network topology query used by every driver to
    select multicast interfaces and to build URLs announced to devices
  - Media type lookup by file extension
"""

from __future__ import annotations

import os
from ipaddress import IPv4Address

import netifaces
from email.parser import BytesHeaderParser
from email.message import Message as EmailParserMessage
from requests.structures import CaseInsensitiveDict

from .internal_types import *
from .constants import MEDIA_TYPES_BY_EXTENSION, DEFAULT_MEDIA_TYPE

def split_bytes_at_lf_or_crlf(data: bytes, maxsplit: int = -1) -> List[bytes]:
    """Split a byte string at LF or CRLF, removing the delimiters.

    If maxsplit is given, at most maxsplit splits are done.
    """
    parts = data.split(b'\n', maxsplit)
    return [ part[:-1] if i < len(parts) - 1 and part.endswith(b'\r') else part for i, part in enumerate(parts) ]

def split_headers_and_body(data: bytes) -> Tuple[bytes, bytes]:
    """Splits a byte string with HTTP headers and an optional body into the headers and the body.

    The blank line separating them may be '\r\n\r\n', '\n\n' or '\n\r\n'; whichever comes first wins.
    Returns (headers, body). If there is no body, b'' is returned for the body.
    """
    best: Optional[Tuple[int, int]] = None
    for delim in (b'\n\r\n', b'\n\n'):
        i = data.find(delim)
        if i != -1 and (best is None or i < best[0]):
            best = (i, len(delim))
    if best is None:
        return (data, b'')
    i, n = best
    headers = data[:i]
    if headers.endswith(b'\r'):
        headers = headers[:-1]
    return (headers, data[i + n:])

def parse_http_headers(data: bytes) -> Tuple[CaseInsensitiveDict[str], bytes]:
    """Parse HTTP-style headers out of a byte string. Also returns the body of the message, if any.

    The statement line (e.g., "HTTP/1.1 200 OK") must already have been removed. Bare '\n' line
    endings are accepted, since many device firmwares send them. Header values are not decoded.

    Returns a tuple of (headers: CaseInsensitiveDict[str], body: bytes).
    """
    headers_data, body = split_headers_and_body(data)
    lines = split_bytes_at_lf_or_crlf(headers_data)
    msg: EmailParserMessage = BytesHeaderParser().parsebytes(b'\r\n'.join(lines) + b'\r\n\r\n')
    headers: CaseInsensitiveDict[str] = CaseInsensitiveDict()
    for name, value in msg.items():
        headers[name] = str(value).strip()
    return (headers, body)

class NetworkInterfaceAddress(NamedTuple):
    """A usable local IPv4 address and the name of the interface that carries it."""
    ifname: str
    address: str

def get_default_ip_gateway() -> Tuple[Optional[str], Optional[str]]:
    """Returns the (gateway_ip_address, gateway_interface_name) for the default IPv4 gateway, if any.
       Returns (None, None) if there is no default IPv4 gateway."""
    gws = netifaces.gateways()
    default_gateway_infos = gws.get("default", {})
    if netifaces.AF_INET in default_gateway_infos:
        gw_ip, gw_interface_name = default_gateway_infos[netifaces.AF_INET][:2]
        return (gw_ip, gw_interface_name)
    return (None, None)

def get_usable_ipv4_interfaces(include_loopback: bool=False) -> List[NetworkInterfaceAddress]:
    """Returns the IPv4 addresses of the local host with their interface names, ranked so that the
       "preferred" address comes first:

           1. Addresses on the default gateway interface precede all other addresses.
           2. Other private/global addresses follow.
           3. IPV4 addresses that begin with 172. follow those. This is a hack to
              deprioritize local docker network addresses.
           4. Link-local (169.254.x.x) addresses follow everything but loopback.
           5. Loopback addresses come last, and only if include_loopback is True.

       An interface that has an IPv4 address assigned is taken to be up and able to carry multicast.
    """
    ranked: List[Tuple[int, int, str, str]] = []
    _, default_gateway_ifname = get_default_ip_gateway()
    for if_index, ifname in enumerate(netifaces.interfaces()):
        for addrinfo in netifaces.ifaddresses(ifname).get(netifaces.AF_INET, []):
            ip_str = addrinfo.get('addr')
            if not isinstance(ip_str, str):
                continue
            ip = IPv4Address(ip_str)
            if ip.is_loopback:
                if not include_loopback:
                    continue
                priority = 4
            elif ip.is_link_local:
                priority = 3
            elif ifname == default_gateway_ifname:
                priority = 0
            elif ip_str.startswith('172.'):
                priority = 2
            else:
                priority = 1
            ranked.append((priority, if_index, ip_str, ifname))
    return [ NetworkInterfaceAddress(ifname, ip) for _, _, ip, ifname in sorted(ranked) ]

def get_local_ipv4_addresses(include_loopback: bool=True) -> Set[str]:
    """Returns the set of all IPv4 addresses assigned to the local host."""
    return set(entry.address for entry in get_usable_ipv4_interfaces(include_loopback=include_loopback))

def get_preferred_local_ip(default: str="127.0.0.1") -> str:
    """Returns the preferred non-loopback IPv4 address of the local host, suitable for building
       URLs that devices on the local network can reach. Returns default if there is none."""
    entries = get_usable_ipv4_interfaces(include_loopback=False)
    if len(entries) == 0:
        return default
    return entries[0].address

def media_type_for_path(file_path: str) -> str:
    """Returns the MIME type announced for a media file, derived from its extension."""
    ext = os.path.splitext(file_path)[1].lower()
    return MEDIA_TYPES_BY_EXTENSION.get(ext, DEFAULT_MEDIA_TYPE)
