#!/usr/bin/env python3
''' test utility functions '''

import netifaces
import pytest

from castit import util


def test_split_at_lf_or_crlf():
    ''' test line splitting with mixed endings '''
    assert util.split_bytes_at_lf_or_crlf(b'a\r\nb\nc') == [b'a', b'b', b'c']
    assert util.split_bytes_at_lf_or_crlf(b'a\r\nb\r\nc', 1) == [b'a', b'b\r\nc']


@pytest.mark.parametrize('data', [
    b'A: 1\r\nB: 2\r\n\r\nbody',
    b'A: 1\nB: 2\n\nbody',
    b'A: 1\nB: 2\n\r\nbody',
])
def test_split_headers_and_body(data):
    ''' test each accepted blank-line form '''
    headers, body = util.split_headers_and_body(data)
    assert util.split_bytes_at_lf_or_crlf(headers) == [b'A: 1', b'B: 2']
    assert body == b'body'


def test_parse_http_headers():
    ''' test case-insensitive header lookup and value trimming '''
    headers, body = util.parse_http_headers(b'Location:  http://h/d.xml \nCache-Control: max-age=1800\n\n')
    assert headers['LOCATION'] == 'http://h/d.xml'
    assert headers['cache-control'] == 'max-age=1800'
    assert body == b''


def test_media_type_for_path():
    ''' test extension lookup with the default fallback '''
    assert util.media_type_for_path('/x/Movie.MP4') == 'video/mp4'
    assert util.media_type_for_path('song.mp3') == 'audio/mpeg'
    assert util.media_type_for_path('clip.avi') == 'video/x-msvideo'
    assert util.media_type_for_path('notes.txt') == 'video/mp4'


@pytest.fixture
def fake_network(monkeypatch):
    ''' a host with a gateway interface, a docker bridge, a link-local address and loopback '''
    addresses = {
        'lo': ['127.0.0.1'],
        'docker0': ['172.17.0.1'],
        'wlan0': ['10.1.2.3'],
        'eth0': ['192.168.1.20'],
        'eth1': ['169.254.7.7'],
    }
    monkeypatch.setattr(util.netifaces, 'interfaces', lambda: list(addresses))
    monkeypatch.setattr(util.netifaces, 'ifaddresses',
                        lambda ifname: {netifaces.AF_INET: [{'addr': a} for a in addresses[ifname]]})
    monkeypatch.setattr(util.netifaces, 'gateways',
                        lambda: {'default': {netifaces.AF_INET: ('192.168.1.1', 'eth0')}})


def test_interface_ranking(fake_network):
    ''' test that the gateway interface comes first and loopback is optional '''
    assert util.get_default_ip_gateway() == ('192.168.1.1', 'eth0')
    assert [entry.address for entry in util.get_usable_ipv4_interfaces()] == [
        '192.168.1.20', '10.1.2.3', '172.17.0.1', '169.254.7.7']
    ranked = util.get_usable_ipv4_interfaces(include_loopback=True)
    assert ranked[0] == util.NetworkInterfaceAddress('eth0', '192.168.1.20')
    assert ranked[-1] == util.NetworkInterfaceAddress('lo', '127.0.0.1')
    assert util.get_preferred_local_ip() == '192.168.1.20'
    assert '127.0.0.1' in util.get_local_ipv4_addresses()


def test_no_usable_interfaces(monkeypatch):
    ''' test the fallback when only loopback exists '''
    monkeypatch.setattr(util.netifaces, 'interfaces', lambda: ['lo'])
    monkeypatch.setattr(util.netifaces, 'ifaddresses', lambda ifname: {netifaces.AF_INET: [{'addr': '127.0.0.1'}]})
    monkeypatch.setattr(util.netifaces, 'gateways', lambda: {'default': {}})
    assert util.get_default_ip_gateway() == (None, None)
    assert util.get_preferred_local_ip() == '127.0.0.1'
    assert util.get_preferred_local_ip(default='0.0.0.0') == '0.0.0.0'
