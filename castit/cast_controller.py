#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
CastController -- Plays media on a Cast receiver.

The controller asks the receiver to launch a receiver application over the device's HTTP
endpoint (port 8008), opens a WebSocket session to the device, and sends a media LOAD
message naming a URL the device can fetch. A local file is made fetchable with a
LocalMediaResponder owned by the controller.

Transport control (play/pause/stop) after the LOAD is not implemented; those operations
report that they are unsupported.
"""

from __future__ import annotations

import asyncio
import json

import requests
import websockets
from websockets.exceptions import WebSocketException

from .internal_types import *
from .pkg_logging import logger
from .constants import (
    CAST_HTTP_PORT,
    CAST_WEBSOCKET_PATH,
    CAST_MEDIA_NAMESPACE,
    DEFAULT_RECEIVER_APP,
    DEFAULT_CAST_CONTENT_TYPE,
    DEFAULT_HTTP_TIMEOUT,
    USER_AGENT,
  )
from .exceptions import BindFailure, MediaNotFound
from .events import StatusReporter
from .media_responder import LocalMediaResponder

def build_load_message(media_url: str, content_type: str, request_id: int) -> JsonableDict:
    """Builds the media LOAD message for a buffered (non-live) stream."""
    return {
        "namespace": CAST_MEDIA_NAMESPACE,
        "payload": {
            "type": "LOAD",
            "media": {
                "contentId": media_url,
                "streamType": "BUFFERED",
                "contentType": content_type,
            },
            "requestId": request_id,
        },
    }

class CastController(StatusReporter):
    """Drives media playback on one Cast receiver at a time.

    Failures are never raised to the caller; they are reported on the `errors` channel and
    the operation returns False.
    """

    receiver_app: str
    websocket_port: int
    open_timeout: float
    http_timeout: float
    bind_address: str
    advertise_host: Optional[str]

    device_address: Optional[str] = None
    """The address of the device with an open session, if any."""

    websocket: Optional[Any] = None
    """The open WebSocket session, if any."""

    next_request_id: int = 1

    responder: Optional[LocalMediaResponder] = None

    launch_request: Optional[asyncio.Future[None]] = None
    """The most recent receiver launch request."""

    _reader_task: Optional[asyncio.Task[None]] = None

    def __init__(
            self,
            receiver_app: str=DEFAULT_RECEIVER_APP,
            websocket_port: int=CAST_HTTP_PORT,
            open_timeout: float=DEFAULT_HTTP_TIMEOUT,
            http_timeout: float=DEFAULT_HTTP_TIMEOUT,
            bind_address: str='',
            advertise_host: Optional[str]=None,
          ):
        super().__init__()
        self.receiver_app = receiver_app
        self.websocket_port = websocket_port
        self.open_timeout = open_timeout
        self.http_timeout = http_timeout
        self.bind_address = bind_address
        self.advertise_host = advertise_host

    @property
    def is_connected(self) -> bool:
        return self.websocket is not None

    async def cast_file(self, device_address: str, file_path: str) -> bool:
        """Serves file_path from a local media responder and casts its URL to the device."""
        self.stop_responder()
        responder = LocalMediaResponder(file_path, bind_address=self.bind_address, advertise_host=self.advertise_host)
        try:
            media_url = responder.start()
        except MediaNotFound as e:
            self.report_error(str(e))
            return False
        except BindFailure as e:
            self.report_error(f"Failed to start media server: {e}")
            return False
        self.responder = responder
        return await self.cast_media(device_address, media_url, content_type=responder.mime_type)

    async def cast_media(self, device_address: str, media_url: str, content_type: str=DEFAULT_CAST_CONTENT_TYPE) -> bool:
        """Launches the receiver app and loads media_url on the device."""
        self.launch_receiver(device_address)
        if not await self.connect(device_address):
            return False
        return await self.load_media(media_url, content_type)

    def _post_launch(self, url: str) -> None:
        response = requests.post(url, data=b'', headers={'User-Agent': USER_AGENT}, timeout=self.http_timeout)
        response.raise_for_status()

    def launch_receiver(self, device_address: str) -> asyncio.Future[None]:
        """Asks the device to launch the receiver app. Does not wait for the request to complete;
           a failure is only logged. Returns the future of the request."""
        url = f"http://{device_address}:{self.websocket_port}/apps/{self.receiver_app}"
        logger.debug(f"Launching receiver app: POST {url}")
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, self._post_launch, url)

        def on_done(f: asyncio.Future[None]) -> None:
            if f.cancelled():
                return
            exc = f.exception()
            if exc is not None:
                logger.warning(f"Receiver launch request to {url} failed: {exc}")
            else:
                logger.debug(f"Receiver launch request to {url} succeeded")

        future.add_done_callback(on_done)
        self.launch_request = future
        return future

    async def connect(self, device_address: str) -> bool:
        """Opens the WebSocket session to the device, unless one is already open to it."""
        if self.websocket is not None and self.device_address == device_address:
            return True
        await self.disconnect()
        uri = f"ws://{device_address}:{self.websocket_port}{CAST_WEBSOCKET_PATH}"
        logger.debug(f"Connecting to {uri}")
        try:
            websocket = await websockets.connect(uri, open_timeout=self.open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self.report_error(f"Failed to connect to cast device {device_address}: {e}")
            return False
        self.websocket = websocket
        self.device_address = device_address
        self.next_request_id = 1
        self.report_status("Connected to cast device")
        self._reader_task = asyncio.create_task(self._run_reader(websocket))
        return True

    async def _run_reader(self, websocket: Any) -> None:
        try:
            async for message in websocket:
                try:
                    decoded = json.loads(message)
                except ValueError:
                    logger.debug(f"Received non-JSON message from cast device: {message!r}")
                    continue
                logger.debug(f"Received from cast device: {decoded}")
        except WebSocketException as e:
            self.report_error(f"Cast session error: {e}")
        except OSError as e:
            self.report_error(f"Cast session error: {e}")
        finally:
            if self.websocket is websocket:
                self.websocket = None
                self.device_address = None
            self.report_status("Disconnected from cast device")

    async def load_media(self, media_url: str, content_type: str=DEFAULT_CAST_CONTENT_TYPE) -> bool:
        """Sends a LOAD message for media_url over the open session."""
        websocket = self.websocket
        if websocket is None:
            self.report_error("Not connected to a cast device")
            return False
        message = build_load_message(media_url, content_type, self.next_request_id)
        self.next_request_id += 1
        try:
            await websocket.send(json.dumps(message, separators=(",", ":")))
        except (OSError, WebSocketException) as e:
            self.report_error(f"Failed to send LOAD to cast device: {e}")
            return False
        self.report_status(f"Loading {media_url}")
        return True

    def _unsupported(self, operation: str) -> bool:
        self.report_error(f"Cast {operation} is not supported")
        return False

    def play(self) -> bool:
        return self._unsupported("play")

    def pause(self) -> bool:
        return self._unsupported("pause")

    def stop(self) -> bool:
        return self._unsupported("stop")

    async def disconnect(self) -> None:
        """Closes the WebSocket session, if any."""
        websocket = self.websocket
        reader_task = self._reader_task
        self._reader_task = None
        if websocket is not None:
            try:
                await websocket.close()
            except (OSError, WebSocketException) as e:
                logger.debug(f"Error closing cast session: {e}")
        if reader_task is not None:
            try:
                await reader_task
            except asyncio.CancelledError:
                pass
        self.websocket = None
        self.device_address = None

    def stop_responder(self) -> None:
        if self.responder is not None:
            self.responder.stop()
            self.responder = None

    async def close(self) -> None:
        """Closes the session and stops the media responder."""
        await self.disconnect()
        self.stop_responder()
