# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Constants used by this package"""

# ======================= mDNS

MDNS_MULTICAST_ADDRESS = "224.0.0.251"
"""The multicast address used by mDNS for UDP multicast."""

MDNS_PORT = 5353
"""The port number used by mDNS for UDP multicast."""

CAST_SERVICE_TYPE = "_googlecast._tcp.local"
"""The DNS-SD service type advertised by Cast receivers."""

AIRPLAY_SERVICE_TYPE = "_airplay._tcp.local"
"""The DNS-SD service type advertised by AirPlay receivers."""

DEFAULT_MDNS_SERVICE_TYPES = (CAST_SERVICE_TYPE, AIRPLAY_SERVICE_TYPE)
"""The service types queried by default at the start of each query round."""

DEFAULT_CASTING_KEYWORDS = ("googlecast", "chromecast", "casting", "airplay")
"""Case-insensitive substrings that mark an mDNS name as belonging to a casting device."""

DEFAULT_QUERY_SPACING = 0.25
"""Delay (in seconds) between two consecutive mDNS queries."""

DEFAULT_QUERY_INTERVAL = 10.0
"""Delay (in seconds) between the end of one mDNS query round and the start of the next."""

DEFAULT_MAX_QUERY_ROUNDS = 6
"""The number of periodic mDNS query rounds before periodic querying stops."""

MIN_MDNS_DATAGRAM_SIZE = 12
"""Datagrams shorter than this (a bare DNS header) are ignored."""

# ======================= SSDP

SSDP_MULTICAST_ADDRESS = "239.255.255.250"
"""The multicast address used by SSDP for UDP multicast."""

SSDP_PORT = 1900
"""The port number used by SSDP for UDP multicast."""

MEDIA_RENDERER_TYPE = "urn:schemas-upnp-org:device:MediaRenderer:1"
"""The UPnP device type searched for by SSDP discovery."""

SSDP_MX = 3
"""The MX (maximum response delay, in seconds) header sent with M-SEARCH."""

DEFAULT_SEARCH_INTERVAL = 5.0
"""Delay (in seconds) between two M-SEARCH requests."""

DEFAULT_MAX_SEARCH_ATTEMPTS = 8
"""The number of M-SEARCH requests sent before searching stops."""

DEFAULT_HTTP_TIMEOUT = 5.0
"""Timeout (in seconds) for HTTP requests to devices."""

USER_AGENT = "CastIt/1.0"
"""The User-Agent header sent with HTTP requests to devices."""

# ======================= Cast

CAST_HTTP_PORT = 8008
"""The port on which Cast receivers accept app launch requests and WebSocket sessions."""

CAST_WEBSOCKET_PATH = "/v2/ipc"
"""The WebSocket path used for the Cast session."""

DEFAULT_RECEIVER_APP = "YouTube"
"""The receiver application launched on Cast devices."""

CAST_MEDIA_NAMESPACE = "urn:x-cast:com.google.cast.media"
"""The namespace for Cast media messages."""

DEFAULT_CAST_CONTENT_TYPE = "video/mp4"
"""The content type announced in a Cast LOAD message when none is given."""

# ======================= DLNA

AVTRANSPORT_SERVICE_TYPE = "urn:schemas-upnp-org:service:AVTransport:1"
"""The UPnP service type (and SOAP namespace) of AVTransport actions."""

# ======================= Media responder

DEFAULT_MEDIA_TYPE = "video/mp4"
"""The MIME type used for media files with an unrecognized extension."""

MEDIA_TYPES_BY_EXTENSION = {
    ".mp4": "video/mp4",
    ".mp3": "audio/mpeg",
    ".mkv": "video/x-matroska",
    ".avi": "video/x-msvideo",
}
"""MIME types for media file extensions."""

MEDIA_CHUNK_SIZE = 64 * 1024
"""The size of each chunk written when streaming a media file."""
