#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
LocalMediaResponder -- A minimal HTTP server that serves a single local media file to a
casting receiver.

Every GET (whatever the path) returns the whole file; range requests are not supported.
The server runs in a daemon thread, so it can be used from synchronous or asynchronous code.
"""

from __future__ import annotations

import os
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import quote

from .internal_types import *
from .pkg_logging import logger
from .constants import MEDIA_CHUNK_SIZE
from .exceptions import BindFailure, MediaNotFound
from .util import get_preferred_local_ip, media_type_for_path

class _MediaRequestHandler(BaseHTTPRequestHandler):
    """Serves the responder's file for any path."""

    responder: LocalMediaResponder
    """Set on the per-responder subclass created by LocalMediaResponder."""

    def _send_media(self, include_body: bool) -> None:
        responder = self.responder
        try:
            f = open(responder.file_path, 'rb')
        except OSError as e:
            logger.info(f"Media file {responder.file_path} unavailable for {self.client_address[0]}: {e}")
            self.send_error(404, "Not Found")
            return
        with f:
            size = os.fstat(f.fileno()).st_size
            self.send_response(200)
            self.send_header('Content-Type', responder.mime_type)
            self.send_header('Content-Length', str(size))
            self.send_header('Accept-Ranges', 'none')
            self.send_header('Connection', 'close')
            self.end_headers()
            if not include_body:
                return
            try:
                while True:
                    chunk = f.read(MEDIA_CHUNK_SIZE)
                    if not chunk:
                        break
                    self.wfile.write(chunk)
            except (ConnectionResetError, BrokenPipeError) as e:
                # Receivers routinely drop the connection mid-stream
                logger.debug(f"Client {self.client_address[0]} disconnected during transfer: {e}")

    def do_GET(self) -> None:
        self._send_media(include_body=True)

    def do_HEAD(self) -> None:
        self._send_media(include_body=False)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug(f"Media responder: {self.address_string()} - {format % args}")

class LocalMediaResponder:
    """
    Serves one local file over HTTP at a URL reachable from the local network.

    Usage:
        with LocalMediaResponder('/path/to/movie.mp4') as responder:
            cast_to_device(responder.url)
            ...
    """

    file_path: str
    """Absolute path of the served file."""

    mime_type: str
    bind_address: str
    requested_port: int

    advertise_host: str
    """The host name or IP address announced to devices in the media URL."""

    _server: Optional[ThreadingHTTPServer] = None
    _thread: Optional[threading.Thread] = None

    def __init__(
            self,
            file_path: str,
            bind_address: str='',
            port: int=0,
            advertise_host: Optional[str]=None,
          ):
        self.file_path = os.path.abspath(file_path)
        self.mime_type = media_type_for_path(self.file_path)
        self.bind_address = bind_address
        self.requested_port = port
        if advertise_host is None:
            advertise_host = get_preferred_local_ip()
        self.advertise_host = advertise_host

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> Optional[int]:
        """The bound port, or None if the responder is not running."""
        if self._server is None:
            return None
        return self._server.server_address[1]

    @property
    def url(self) -> Optional[str]:
        """The URL announced to devices, or None if the responder is not running."""
        port = self.port
        if port is None:
            return None
        return f"http://{self.advertise_host}:{port}/{quote(os.path.basename(self.file_path))}"

    def start(self) -> str:
        """Binds the server and starts serving. Returns the media URL. Raises MediaNotFound if the
           file does not exist, or BindFailure if the address cannot be bound."""
        if self._server is not None:
            url = self.url
            assert url is not None
            return url
        if not os.path.isfile(self.file_path):
            raise MediaNotFound(f"Media file not found: {self.file_path}")
        handler_class = type('MediaRequestHandler', (_MediaRequestHandler,), { 'responder': self })
        try:
            server = ThreadingHTTPServer((self.bind_address, self.requested_port), handler_class)
        except OSError as e:
            raise BindFailure(f"Unable to bind media responder to {self.bind_address}:{self.requested_port}: {e}") from e
        self._server = server
        self._thread = threading.Thread(target=server.serve_forever, name="castit-media", daemon=True)
        self._thread.start()
        url = self.url
        assert url is not None
        logger.info(f"Serving {self.file_path} ({self.mime_type}) at {url}")
        return url

    def stop(self) -> None:
        """Shuts down the server and waits for its thread to exit. Idempotent."""
        server = self._server
        thread = self._thread
        self._server = None
        self._thread = None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join()
        logger.debug(f"Media responder for {self.file_path} stopped")

    def __enter__(self) -> Self:
        self.start()
        return self

    def __exit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> None:
        self.stop()

    def __str__(self) -> str:
        return f"LocalMediaResponder({self.file_path!r}, url={self.url})"
