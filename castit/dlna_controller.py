#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
DlnaController -- Plays a local media file on a DLNA/UPnP renderer with AVTransport SOAP actions.
"""

from __future__ import annotations

import asyncio
from xml.sax.saxutils import escape

import requests

from .internal_types import *
from .pkg_logging import logger
from .constants import AVTRANSPORT_SERVICE_TYPE, DEFAULT_HTTP_TIMEOUT, USER_AGENT
from .exceptions import BindFailure, MediaNotFound
from .events import StatusReporter
from .media_responder import LocalMediaResponder

SOAP_ENVELOPE_NAMESPACE = "http://schemas.xmlsoap.org/soap/envelope/"
SOAP_ENCODING_STYLE = "http://schemas.xmlsoap.org/soap/encoding/"

def build_soap_envelope(body: str) -> str:
    """Wraps an action element in a SOAP 1.1 envelope."""
    return ('<?xml version="1.0" encoding="utf-8"?>'
            f'<s:Envelope xmlns:s="{SOAP_ENVELOPE_NAMESPACE}" s:encodingStyle="{SOAP_ENCODING_STYLE}">'
            f'<s:Body>{body}</s:Body></s:Envelope>')

def build_action_body(action: str, arguments: Sequence[Tuple[str, str]], service_type: str=AVTRANSPORT_SERVICE_TYPE) -> str:
    """Builds the action element, e.g. <u:Play xmlns:u="..."><InstanceID>0</InstanceID>...</u:Play>.
       Argument values are XML-escaped."""
    args = ''.join(f"<{name}>{escape(value)}</{name}>" for name, value in arguments)
    return f'<u:{action} xmlns:u="{service_type}">{args}</u:{action}>'

class DlnaController(StatusReporter):
    """Casts local media files to DLNA renderers.

    Results are reported on the `status` and `errors` channels; no operation raises.
    """

    service_type: str
    http_timeout: float
    bind_address: str
    advertise_host: Optional[str]

    responder: Optional[LocalMediaResponder] = None

    def __init__(
            self,
            http_timeout: float=DEFAULT_HTTP_TIMEOUT,
            bind_address: str='',
            advertise_host: Optional[str]=None,
            service_type: str=AVTRANSPORT_SERVICE_TYPE,
          ):
        super().__init__()
        self.http_timeout = http_timeout
        self.bind_address = bind_address
        self.advertise_host = advertise_host
        self.service_type = service_type

    async def cast_media(self, control_url: str, media_path: str) -> bool:
        """Serves media_path locally, points the renderer at it and starts playback.

        Play is not sent if SetAVTransportURI fails.
        """
        self.stop_responder()
        responder = LocalMediaResponder(media_path, bind_address=self.bind_address, advertise_host=self.advertise_host)
        try:
            media_url = responder.start()
        except MediaNotFound as e:
            self.report_error(str(e))
            return False
        except BindFailure as e:
            self.report_error(f"Failed to start local server: {e}")
            return False
        self.responder = responder
        if not await self.set_av_transport_uri(control_url, media_url):
            return False
        return await self.play(control_url)

    async def set_av_transport_uri(self, control_url: str, uri: str, metadata: str='') -> bool:
        return await self.send_soap_action(
            control_url,
            "SetAVTransportURI",
            [ ("InstanceID", "0"), ("CurrentURI", uri), ("CurrentURIMetaData", metadata) ],
          )

    async def play(self, control_url: str, speed: str="1") -> bool:
        return await self.send_soap_action(control_url, "Play", [ ("InstanceID", "0"), ("Speed", speed) ])

    def _post(self, url: str, data: bytes, headers: Dict[str, str]) -> requests.Response:
        return requests.post(url, data=data, headers=headers, timeout=self.http_timeout)

    async def send_soap_action(self, control_url: str, action: str, arguments: Sequence[Tuple[str, str]]) -> bool:
        """Posts one AVTransport action to the renderer's control URL. Returns True on a 2xx response."""
        envelope = build_soap_envelope(build_action_body(action, arguments, self.service_type))
        headers = {
            'Content-Type': 'text/xml; charset="utf-8"',
            'SOAPAction': f'"{self.service_type}#{action}"',
            'User-Agent': USER_AGENT,
        }
        logger.debug(f"Sending SOAP action {action} to {control_url}: {envelope}")
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(None, self._post, control_url, envelope.encode('utf-8'), headers)
        except requests.RequestException as e:
            self.report_error(f"SOAP action {action} failed: {e}")
            return False
        if not response.ok:
            self.report_error(f"SOAP action {action} failed: HTTP {response.status_code} {response.reason}: {response.text}")
            return False
        self.report_status(f"SOAP action {action} successful")
        return True

    def stop_responder(self) -> None:
        if self.responder is not None:
            self.responder.stop()
            self.responder = None

    async def close(self) -> None:
        """Stops the media responder."""
        self.stop_responder()
