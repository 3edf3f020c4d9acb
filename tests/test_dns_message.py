#!/usr/bin/env python3
''' test dns message encoding and decoding '''

import struct

import pytest

from castit.dns_message import (
    DnsRecordType,
    SrvData,
    decode_message,
    decode_name,
    encode_name,
    encode_query,
    escape_label,
    parse_txt_properties,
    split_name,
)
from castit.exceptions import DnsMalformedError, DnsTruncatedError

import packet_builder


def test_encode_query_layout():
    ''' test the header and question layout of a query '''
    data = encode_query('_googlecast._tcp.local')
    assert data[:12] == struct.pack('!6H', 0, 0, 1, 0, 0, 0)
    assert data[12:] == b'\x0b_googlecast\x04_tcp\x05local\x00' + struct.pack('!HH', 12, 1)


def test_query_round_trip():
    ''' test that a query decodes back to its question '''
    message = decode_message(encode_query('_googlecast._tcp.local', DnsRecordType.SRV))
    assert not message.is_response
    assert len(message.questions) == 1
    question = message.questions[0]
    assert question.name == '_googlecast._tcp.local'
    assert question.qtype == DnsRecordType.SRV
    assert question.qclass == 1
    assert not question.unicast_response


def test_response_to_question_with_compression():
    ''' test decoding a response whose names point back into the question '''
    question = encode_name('_googlecast._tcp.local') + struct.pack('!HH', 12, 1)
    # the question name starts at offset 12
    answer = packet_builder.record(b'\xc0\x0c', DnsRecordType.PTR, b'\x06MyCast\xc0\x0c')
    data = packet_builder.header(qdcount=1, ancount=1) + question + answer
    message = decode_message(data)
    assert message.is_response
    assert message.questions[0].name == '_googlecast._tcp.local'
    assert len(message.answers) == 1
    assert message.answers[0].name == '_googlecast._tcp.local'
    assert message.answers[0].value == 'MyCast._googlecast._tcp.local'
    assert message.discarded_count == 0
    assert not message.truncated


def test_encode_name_trailing_dot():
    ''' test that a single trailing dot is ignored '''
    assert encode_name('local.') == encode_name('local') == b'\x05local\x00'


def test_dotted_label_round_trip():
    ''' test that a dot inside a label is escaped on decode and restored on encode '''
    wire_target = b'\x0cMr. Smith TV' + encode_name('_googlecast._tcp.local')
    data = packet_builder.response(
        [packet_builder.record('_googlecast._tcp.local', DnsRecordType.PTR, wire_target)])
    target = decode_message(data).answers[0].value
    assert target == 'Mr\\. Smith TV._googlecast._tcp.local'
    assert split_name(target) == ['Mr. Smith TV', '_googlecast', '_tcp', 'local']
    assert encode_name(target) == wire_target


def test_backslash_label_round_trip():
    ''' test that a backslash inside a label survives decode and encode '''
    label = 'back\\slash'
    assert escape_label(label) == 'back\\\\slash'
    wire = encode_name(escape_label(label) + '.local')
    assert wire == b'\x0aback\\slash\x05local\x00'
    assert decode_name(packet_builder.header() + wire, 12)[0] == escape_label(label) + '.local'


@pytest.mark.parametrize('name', ['a..b', '.local', 'x' * 64 + '.local'])
def test_encode_name_invalid(name):
    ''' test that empty and oversized labels are rejected '''
    with pytest.raises(ValueError):
        encode_name(name)


def test_short_header_raises():
    ''' test that a packet shorter than the header is rejected '''
    with pytest.raises(DnsTruncatedError):
        decode_message(b'\x00' * 11)


def test_pointer_loop_discards_only_that_record():
    ''' test that a self-referencing pointer fails the name without looping '''
    looping = packet_builder.record(b'\xc0\x0c', DnsRecordType.A, b'\x01\x02\x03\x04')
    good = packet_builder.a_record('host.local', '192.168.1.50')
    message = decode_message(packet_builder.header(ancount=2) + looping + good)
    assert message.discarded_count == 1
    assert not message.truncated
    assert len(message.answers) == 1
    assert message.answers[0].name == 'host.local'
    assert message.answers[0].value == '192.168.1.50'


def test_pointer_chain_cycle_fails_name():
    ''' test that a two-pointer cycle is detected '''
    data = packet_builder.header() + b'\xc0\x0e\xc0\x0c'
    with pytest.raises(DnsMalformedError):
        decode_name(data, 12)


def test_pointer_past_end_fails_name():
    ''' test that a pointer beyond the packet is malformed '''
    data = packet_builder.header() + b'\xc0\xff'
    with pytest.raises(DnsMalformedError):
        decode_name(data, 12)


def test_rdlength_past_end_is_discarded():
    ''' test that an rdlength past the end of the packet stops decoding without raising '''
    good = packet_builder.a_record('first.local', '10.0.0.1')
    bad = encode_name('second.local') + struct.pack('!HHIH', DnsRecordType.A, 1, 120, 4) + b'\x0a\x00'
    message = decode_message(packet_builder.header(ancount=2) + good + bad)
    assert len(message.answers) == 1
    assert message.answers[0].value == '10.0.0.1'
    assert message.discarded_count == 1
    assert message.truncated


def test_declared_counts_kept():
    ''' test that the header counts are kept as declared when records are missing '''
    data = packet_builder.header(ancount=3) + packet_builder.a_record('host.local', '10.0.0.2')
    message = decode_message(data)
    assert message.header.ancount == 3
    assert len(message.answers) == 1
    assert message.truncated


def test_typed_rdata():
    ''' test decoding of SRV, TXT and A records '''
    data = packet_builder.response(
        [packet_builder.srv_record('MyCast._googlecast._tcp.local', 'mycast.local', 8009)],
        [
            packet_builder.txt_record('MyCast._googlecast._tcp.local', ['fn=Living Room', 'md=Chromecast']),
            packet_builder.a_record('mycast.local', '192.168.1.60'),
        ],
    )
    message = decode_message(data)
    srv, txt, addr = message.records
    assert srv.value == SrvData(0, 0, 8009, 'mycast.local')
    assert txt.value == ['fn=Living Room', 'md=Chromecast']
    assert addr.value == '192.168.1.60'


def test_bad_a_rdata_discards_record():
    ''' test that an A record with the wrong rdata size is discarded '''
    bad = packet_builder.record('host.local', DnsRecordType.A, b'\x01\x02\x03')
    good = packet_builder.a_record('other.local', '10.1.1.1')
    message = decode_message(packet_builder.header(ancount=2) + bad + good)
    assert message.discarded_count == 1
    assert [r.name for r in message.answers] == ['other.local']


def test_cache_flush_bit():
    ''' test that the cache-flush bit is split from the class '''
    data = packet_builder.header(ancount=1) + packet_builder.record(
        'host.local', DnsRecordType.A, b'\x0a\x00\x00\x01', rclass=0x8001)
    answer = decode_message(data).answers[0]
    assert answer.rclass == 1
    assert answer.cache_flush


def test_parse_txt_properties():
    ''' test key=value parsing of TXT strings '''
    props = parse_txt_properties(['fn=Kitchen', 'MD=Nest Audio', 'flag', 'fn=Other', 've=05=x'])
    assert props == {'fn': 'Kitchen', 'md': 'Nest Audio', 'flag': '', 've': '05=x'}
