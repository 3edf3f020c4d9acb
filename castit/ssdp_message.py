#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Abstraction of the HTTP-over-UDP messages used in SSDP (M-SEARCH requests and their responses).
"""

from __future__ import annotations

import re

from .internal_types import *
from .constants import SSDP_MULTICAST_ADDRESS, SSDP_PORT, SSDP_MX, MEDIA_RENDERER_TYPE
from .util import CaseInsensitiveDict, split_bytes_at_lf_or_crlf, parse_http_headers

def encode_http_header(name: str, value: str) -> bytes:
    return f"{name}: {value}\r\n".encode('utf-8')

class SsdpMessage(Mapping[str, str]):
    """Wrapper for a raw SSDP datagram.

    Provides parsing and formatting of the HTTP-like packets and a read-only, case-insensitive
    dict-like interface to the headers. Header values are kept as sent; SSDP does not quote them.
    """

    _raw_data: bytes
    """The raw UDP datagram contents"""

    statement_line: str
    """The first line of the datagram; e.g., "HTTP/1.1 200 OK" or "M-SEARCH * HTTP/1.1"."""

    headers: CaseInsensitiveDict[str]

    body: bytes
    """The body of the datagram, if any. If there is no body, b'' is used."""

    _status_re = re.compile(r'^HTTP/(?P<version_major>[0-9]+)\.(?P<version_minor>[0-9]+) +(?P<status>[0-9]{3})( +(?P<reason>.*))?$')

    def __init__(
            self,
            statement: Optional[str]=None,
            headers: Optional[Mapping[str, str]]=None,
            body: Optional[bytes]=None,
            raw_data: Optional[bytes]=None,
          ):
        self.headers = CaseInsensitiveDict()
        if raw_data is None:
            if statement is None:
                raise ValueError("Either statement or raw_data must be provided")
            self.statement_line = statement
            self.body = b'' if body is None else body
            if headers is not None:
                self.headers.update(headers)
            self._raw_data = self._build_raw_data()
        else:
            if not (statement is None and headers is None and body is None):
                raise ValueError("If raw_data is provided, statement, headers, and body must be None")
            self._raw_data = raw_data
            statement_and_remainder = split_bytes_at_lf_or_crlf(raw_data, 1)
            self.statement_line = statement_and_remainder[0].decode('utf-8', errors='replace').strip()
            headers_and_body = b'' if len(statement_and_remainder) < 2 else statement_and_remainder[1]
            self.headers, self.body = parse_http_headers(headers_and_body)

    @classmethod
    def parse(cls, raw_data: bytes) -> SsdpMessage:
        return cls(raw_data=raw_data)

    @property
    def raw_data(self) -> bytes:
        return self._raw_data

    def _build_raw_data(self) -> bytes:
        raw_data = self.statement_line.encode('utf-8') + b'\r\n'
        for k, v in self.headers.items():
            raw_data += encode_http_header(k, v)
        raw_data += b'\r\n'
        raw_data += self.body
        return raw_data

    @property
    def status_code(self) -> Optional[int]:
        """The status code if this is a response (e.g., 200), else None."""
        m = self._status_re.match(self.statement_line)
        if m is None:
            return None
        return int(m.group('status'))

    @property
    def is_ok(self) -> bool:
        return self.status_code == 200

    @property
    def search_target(self) -> Optional[str]:
        """The ST header (search responses) or, failing that, the NT header (NOTIFY announcements)."""
        result = self.headers.get('ST')
        if result is None:
            result = self.headers.get('NT')
        return result

    @property
    def location(self) -> Optional[str]:
        """The URL of the device description document."""
        result = self.headers.get('Location')
        if result is None or result == '':
            return None
        return result

    def __getitem__(self, key: str) -> str:
        return self.headers[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.headers)

    def __len__(self) -> int:
        return len(self.headers)

    def __str__(self) -> str:
        return f"SsdpMessage('{self.statement_line}', headers={dict(self.headers)}, body={self.body!r})"

    def __repr__(self) -> str:
        return str(self)

def build_msearch(
        search_target: str=MEDIA_RENDERER_TYPE,
        mx: int=SSDP_MX,
        multicast_address: str=SSDP_MULTICAST_ADDRESS,
        multicast_port: int=SSDP_PORT,
      ) -> SsdpMessage:
    """Builds an M-SEARCH request for the given search target."""
    return SsdpMessage(
        statement='M-SEARCH * HTTP/1.1',
        headers={
            'HOST': f"{multicast_address}:{multicast_port}",
            'MAN': '"ssdp:discover"',
            'MX': str(mx),
            'ST': search_target,
          },
      )
