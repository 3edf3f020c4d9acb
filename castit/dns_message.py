#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Encoding of mDNS query packets and decoding of mDNS response packets.

Decoding is defensive: a packet comes from an arbitrary host on the local network,
so every read is bounds-checked and compression pointers are followed with a
per-name record of visited offsets, so a pointer cycle terminates.

A name or typed rdata that cannot be decoded makes only the record that contains it
unusable; decoding continues with the next record. Decoding stops (and the message is
marked truncated) only when the packet ends before a record's fixed-size fields, so the
position of the next record cannot be known.

No I/O is performed by this module.
"""

from __future__ import annotations

import socket
import struct
from enum import IntEnum

from .internal_types import *
from .pkg_logging import logger
from .exceptions import DnsDecodeError, DnsTruncatedError, DnsMalformedError

DNS_HEADER_LENGTH = 12
"""The length of the fixed DNS message header."""

MAX_LABEL_LENGTH = 63
"""The maximum length of a single label in a DNS name."""

DNS_CLASS_IN = 0x0001
"""The Internet class."""

CLASS_MASK = 0x7FFF
"""The bits of the class field that hold the class. The top bit is the mDNS
   unicast-response bit (questions) or cache-flush bit (records)."""

FLAG_QR = 0x8000
"""Header flag bit set in responses."""

POINTER_MASK = 0xC0
"""A label length byte with these bits set is a compression pointer."""

class DnsRecordType(IntEnum):
    """Resource record types of interest to casting discovery."""
    A = 1
    PTR = 12
    TXT = 16
    AAAA = 28
    SRV = 33
    ANY = 255

class DnsHeader(NamedTuple):
    transaction_id: int
    flags: int
    qdcount: int
    ancount: int
    nscount: int
    arcount: int

    @property
    def is_response(self) -> bool:
        return (self.flags & FLAG_QR) != 0

class DnsQuestion(NamedTuple):
    name: str
    qtype: int
    qclass: int
    unicast_response: bool = False

class SrvData(NamedTuple):
    """The decoded rdata of an SRV record."""
    priority: int
    weight: int
    port: int
    target: str

RecordValue = Union[None, str, SrvData, List[str]]
"""Decoded rdata: the target name (PTR), an SrvData (SRV), a list of strings (TXT),
   a dotted-quad address (A), or None for other record types."""

class DnsResourceRecord(NamedTuple):
    name: str
    rtype: int
    rclass: int
    ttl: int
    rdata: bytes
    value: RecordValue = None
    cache_flush: bool = False

    def __str__(self) -> str:
        try:
            type_name = DnsRecordType(self.rtype).name
        except ValueError:
            type_name = str(self.rtype)
        return f"DnsResourceRecord({self.name} {type_name} ttl={self.ttl} value={self.value!r})"

class DnsMessage:
    """A decoded DNS message.

    The counts in `header` are kept as declared by the sender. Records that could
    not be decoded are counted in `discarded_count` rather than appearing in a
    section, and `truncated` is set if decoding stopped before all declared
    entries were read.
    """

    header: DnsHeader
    questions: List[DnsQuestion]
    answers: List[DnsResourceRecord]
    authorities: List[DnsResourceRecord]
    additionals: List[DnsResourceRecord]

    discarded_count: int = 0
    """The number of questions and records that were skipped because they were malformed."""

    truncated: bool = False
    """True if the packet ended before all of the entries declared in the header could be read."""

    def __init__(self, header: DnsHeader):
        self.header = header
        self.questions = []
        self.answers = []
        self.authorities = []
        self.additionals = []

    @property
    def is_response(self) -> bool:
        return self.header.is_response

    @property
    def records(self) -> List[DnsResourceRecord]:
        """All resource records, in packet order."""
        return self.answers + self.authorities + self.additionals

    def __str__(self) -> str:
        return (f"DnsMessage(id={self.header.transaction_id}, flags=0x{self.header.flags:04x}, "
                f"questions={self.questions}, records={[str(r) for r in self.records]}, "
                f"discarded={self.discarded_count}, truncated={self.truncated})")

    def __repr__(self) -> str:
        return str(self)

# ======================= Encoding

def escape_label(label: str) -> str:
    """Escapes backslashes and dots inside a single label, as in "Mr\\. Smith TV"."""
    return label.replace('\\', '\\\\').replace('.', '\\.')

def split_name(name: str) -> List[str]:
    """Splits a dotted name into its unescaped labels. A backslash makes the next character
       literal, so "Mr\\. Smith TV._googlecast._tcp.local" has four labels. A single trailing
       unescaped dot is ignored; the empty name has no labels."""
    labels: List[str] = []
    current: List[str] = []
    escaped = False
    for c in name:
        if escaped:
            current.append(c)
            escaped = False
        elif c == '\\':
            escaped = True
        elif c == '.':
            labels.append(''.join(current))
            current = []
        else:
            current.append(c)
    if escaped:
        current.append('\\')
    if len(current) > 0 or len(labels) == 0:
        labels.append(''.join(current))
    if labels == ['']:
        return []
    return labels

def encode_name(name: str) -> bytes:
    """Encodes a dotted name as a sequence of length-prefixed labels ending in a zero-length label.

    Dots and backslashes inside a label are escaped with a backslash. A single trailing dot is
    ignored. Raises ValueError if any label is empty or longer than 63 bytes.
    """
    result = bytearray()
    for label in split_name(name):
        raw_label = label.encode('utf-8')
        if len(raw_label) == 0 or len(raw_label) > MAX_LABEL_LENGTH:
            raise ValueError(f"Invalid DNS label {label!r} in name {name!r}")
        result.append(len(raw_label))
        result += raw_label
    result.append(0)
    return bytes(result)

def encode_query(service_name: str, query_type: int=DnsRecordType.PTR, transaction_id: int=0) -> bytes:
    """Builds an mDNS query packet with a single question for service_name.

    The class is IN with the unicast-response bit clear, so that answers are multicast.
    """
    header = struct.pack('!6H', transaction_id, 0, 1, 0, 0, 0)
    return header + encode_name(service_name) + struct.pack('!HH', int(query_type), DNS_CLASS_IN)

# ======================= Decoding

def _skip_name(data: bytes, offset: int) -> int:
    """Returns the offset just past the in-place encoding of the name that starts at offset,
       without following compression pointers."""
    while True:
        if offset >= len(data):
            raise DnsTruncatedError(f"Name runs past end of packet at offset {offset}")
        length = data[offset]
        if (length & POINTER_MASK) == POINTER_MASK:
            if offset + 2 > len(data):
                raise DnsTruncatedError(f"Compression pointer cut short at offset {offset}")
            return offset + 2
        if (length & POINTER_MASK) != 0:
            raise DnsMalformedError(f"Reserved label type 0x{length:02x} at offset {offset}")
        if length == 0:
            return offset + 1
        offset += 1 + length

def _read_name(data: bytes, offset: int) -> str:
    """Reads the labels of the name at offset, following compression pointers.

    Each step follows at most one pointer, and an offset that has already been jumped to
    is never jumped to again, so decoding always terminates.
    """
    labels: List[str] = []
    visited: Set[int] = set()
    pos = offset
    while True:
        if pos >= len(data):
            raise DnsMalformedError(f"Name label at offset {pos} is past end of packet")
        length = data[pos]
        if (length & POINTER_MASK) == POINTER_MASK:
            if pos + 1 >= len(data):
                raise DnsMalformedError(f"Compression pointer cut short at offset {pos}")
            target = ((length & 0x3F) << 8) | data[pos + 1]
            if target >= len(data):
                raise DnsMalformedError(f"Compression pointer at offset {pos} points past end of packet ({target})")
            if target in visited:
                raise DnsMalformedError(f"Compression pointer loop at offset {pos} (revisits {target})")
            visited.add(target)
            pos = target
            continue
        if (length & POINTER_MASK) != 0:
            raise DnsMalformedError(f"Reserved label type 0x{length:02x} at offset {pos}")
        if length == 0:
            break
        if pos + 1 + length > len(data):
            raise DnsMalformedError(f"Label at offset {pos} claims {length} bytes past end of packet")
        labels.append(escape_label(data[pos + 1:pos + 1 + length].decode('utf-8', errors='replace')))
        pos += 1 + length
    return '.'.join(labels)

def decode_name(data: bytes, offset: int) -> Tuple[str, int]:
    """Decodes the (possibly compressed) name at offset in the packet data.

    Returns (name, next_offset), where next_offset is just past the name's in-place encoding.
    Raises DnsTruncatedError or DnsMalformedError.
    """
    next_offset = _skip_name(data, offset)
    return (_read_name(data, offset), next_offset)

def _decode_rdata(data: bytes, rtype: int, offset: int, length: int) -> RecordValue:
    end = offset + length
    if rtype == DnsRecordType.A:
        if length != 4:
            raise DnsMalformedError(f"A record with rdlength {length}")
        return socket.inet_ntoa(data[offset:end])
    if rtype == DnsRecordType.PTR:
        target, next_offset = decode_name(data, offset)
        if next_offset > end:
            raise DnsMalformedError("PTR target runs past rdata")
        return target
    if rtype == DnsRecordType.SRV:
        if length < 7:
            raise DnsMalformedError(f"SRV record with rdlength {length}")
        priority, weight, port = struct.unpack_from('!HHH', data, offset)
        target, next_offset = decode_name(data, offset + 6)
        if next_offset > end:
            raise DnsMalformedError("SRV target runs past rdata")
        return SrvData(priority, weight, port, target)
    if rtype == DnsRecordType.TXT:
        strings: List[str] = []
        pos = offset
        while pos < end:
            n = data[pos]
            if pos + 1 + n > end:
                raise DnsMalformedError("TXT string runs past rdata")
            if n > 0:
                strings.append(data[pos + 1:pos + 1 + n].decode('utf-8', errors='replace'))
            pos += 1 + n
        return strings
    return None

def _decode_question(data: bytes, offset: int, message: DnsMessage) -> int:
    name_end = _skip_name(data, offset)
    if name_end + 4 > len(data):
        raise DnsTruncatedError(f"Question at offset {offset} cut short")
    qtype, qclass = struct.unpack_from('!HH', data, name_end)
    try:
        name = _read_name(data, offset)
    except DnsMalformedError as e:
        logger.debug(f"Discarding question at offset {offset}: {e}")
        message.discarded_count += 1
    else:
        message.questions.append(DnsQuestion(name, qtype, qclass & CLASS_MASK, (qclass & ~CLASS_MASK) != 0))
    return name_end + 4

def _decode_record(data: bytes, offset: int, message: DnsMessage, section: List[DnsResourceRecord]) -> int:
    name_end = _skip_name(data, offset)
    if name_end + 10 > len(data):
        raise DnsTruncatedError(f"Resource record at offset {offset} cut short")
    rtype, rclass, ttl, rdlength = struct.unpack_from('!HHIH', data, name_end)
    rdata_offset = name_end + 10
    next_offset = rdata_offset + rdlength
    if next_offset > len(data):
        message.discarded_count += 1
        raise DnsTruncatedError(
            f"Resource record at offset {offset} declares rdlength {rdlength}, "
            f"only {len(data) - rdata_offset} bytes remain")
    try:
        name = _read_name(data, offset)
        value = _decode_rdata(data, rtype, rdata_offset, rdlength)
    except DnsDecodeError as e:
        logger.debug(f"Discarding resource record at offset {offset}: {e}")
        message.discarded_count += 1
    else:
        section.append(DnsResourceRecord(
            name,
            rtype,
            rclass & CLASS_MASK,
            ttl,
            data[rdata_offset:next_offset],
            value,
            (rclass & ~CLASS_MASK) != 0,
          ))
    return next_offset

def decode_message(data: bytes) -> DnsMessage:
    """Decodes a DNS message.

    Raises DnsTruncatedError if data is too short to hold a header. Otherwise always returns a
    DnsMessage holding every question and record that could be decoded.
    """
    if len(data) < DNS_HEADER_LENGTH:
        raise DnsTruncatedError(f"DNS message of {len(data)} bytes is shorter than the header")
    header = DnsHeader(*struct.unpack_from('!6H', data, 0))
    message = DnsMessage(header)
    offset = DNS_HEADER_LENGTH
    try:
        for _ in range(header.qdcount):
            offset = _decode_question(data, offset, message)
        for section, count in (
                (message.answers, header.ancount),
                (message.authorities, header.nscount),
                (message.additionals, header.arcount),
              ):
            for _ in range(count):
                offset = _decode_record(data, offset, message, section)
    except DnsDecodeError as e:
        logger.debug(f"Stopped decoding DNS message at offset {offset}: {e}")
        message.truncated = True
    return message

def parse_txt_properties(strings: Iterable[str]) -> Dict[str, str]:
    """Converts TXT record strings of the form "key=value" into a dict. A string without '='
       is a boolean attribute and maps to ''. Keys are case-insensitive and are lower-cased;
       the first occurrence of a key wins."""
    result: Dict[str, str] = {}
    for s in strings:
        key, _, value = s.partition('=')
        key = key.lower()
        if key != '' and key not in result:
            result[key] = value
    return result
