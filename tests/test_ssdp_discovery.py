#!/usr/bin/env python3
''' test ssdp message handling and renderer discovery '''

import asyncio
from unittest.mock import MagicMock, patch

import pytest
import requests

from castit.device import TransportKind
from castit.ssdp_discovery import SsdpDiscovery, parse_device_description
from castit.ssdp_message import SsdpMessage, build_msearch

LOCATION = 'http://192.168.1.50:8080/desc.xml'

RESPONSE = (b'HTTP/1.1 200 OK\r\n'
            b'CACHE-CONTROL: max-age=1800\r\n'
            b'location: ' + LOCATION.encode() + b'\r\n'
            b'SERVER: Linux/3.10 UPnP/1.0 Renderer/1.0\r\n'
            b'ST: urn:schemas-upnp-org:device:MediaRenderer:1\r\n'
            b'USN: uuid:1234::urn:schemas-upnp-org:device:MediaRenderer:1\r\n'
            b'\r\n')

DESCRIPTION = '''<?xml version="1.0"?>
<root xmlns="urn:schemas-upnp-org:device-1-0">
  <specVersion><major>1</major><minor>0</minor></specVersion>
  <device>
    <deviceType>urn:schemas-upnp-org:device:MediaRenderer:1</deviceType>
    <friendlyName>LivingRoomTV</friendlyName>
    <modelName>TV-9000</modelName>
    <serviceList>
      <service>
        <serviceType>urn:schemas-upnp-org:service:RenderingControl:1</serviceType>
        <controlURL>/rc</controlURL>
      </service>
      <service>
        <serviceType>urn:schemas-upnp-org:service:AVTransport:1</serviceType>
        <controlURL>/ctl</controlURL>
      </service>
    </serviceList>
  </device>
</root>
'''


def http_response(content: str, url: str = LOCATION) -> MagicMock:
    ''' a stand-in for requests.Response '''
    response = MagicMock()
    response.url = url
    response.content = content.encode('utf-8')
    response.raise_for_status.return_value = None
    return response


def test_build_msearch():
    ''' test the M-SEARCH request format '''
    data = build_msearch().raw_data
    assert data.startswith(b'M-SEARCH * HTTP/1.1\r\n')
    assert b'HOST: 239.255.255.250:1900\r\n' in data
    assert b'MAN: "ssdp:discover"\r\n' in data
    assert b'MX: 3\r\n' in data
    assert b'ST: urn:schemas-upnp-org:device:MediaRenderer:1\r\n' in data
    assert data.endswith(b'\r\n\r\n')


def test_parse_relaxed_response():
    ''' test a response with bare LF line endings and mixed-case headers '''
    message = SsdpMessage.parse(b'HTTP/1.1 200 OK\nLocation: http://h/d.xml\nst: urn:x\n\n')
    assert message.status_code == 200
    assert message.is_ok
    assert message.location == 'http://h/d.xml'
    assert message.search_target == 'urn:x'
    assert message['LOCATION'] == 'http://h/d.xml'


def test_notify_target():
    ''' test that NT is used when ST is absent '''
    message = SsdpMessage.parse(b'NOTIFY * HTTP/1.1\r\nNT: urn:y\r\n\r\n')
    assert message.status_code is None
    assert message.search_target == 'urn:y'


def test_parse_device_description():
    ''' test name and control URL extraction '''
    description = parse_device_description(DESCRIPTION, LOCATION)
    assert description.display_name == 'LivingRoomTV'
    assert description.model_name == 'TV-9000'
    service = description.find_service('AVTransport')
    assert service.control_url == 'http://192.168.1.50:8080/ctl'


def test_model_name_fallback():
    ''' test that modelName is used when friendlyName is missing '''
    xml = DESCRIPTION.replace('<friendlyName>LivingRoomTV</friendlyName>', '')
    assert parse_device_description(xml, LOCATION).display_name == 'TV-9000'


@pytest.mark.asyncio
async def test_renderer_discovered():
    ''' test that a MediaRenderer response yields a renderer with a resolved control URL '''
    discovery = SsdpDiscovery()
    names = []
    urls = []
    discovery.renderers_updated.add(names.append)
    discovery.renderer_urls_updated.add(urls.append)
    with patch('castit.ssdp_discovery.requests.get', return_value=http_response(DESCRIPTION)) as mock_get:
        device = await discovery.process_response(RESPONSE, ('192.168.1.50', 1900))
    assert device is not None
    assert device.name == 'LivingRoomTV'
    assert device.kind == TransportKind.DLNA
    assert device.address == '192.168.1.50'
    assert device.control_endpoint == 'http://192.168.1.50:8080/ctl'
    mock_get.assert_called_once()
    assert mock_get.call_args[0][0] == LOCATION
    assert mock_get.call_args[1]['headers'] == {'User-Agent': 'CastIt/1.0'}
    assert names == [['LivingRoomTV']]
    assert urls == [{'LivingRoomTV': 'http://192.168.1.50:8080/ctl'}]

    with patch('castit.ssdp_discovery.requests.get') as mock_get:
        assert await discovery.process_response(RESPONSE, ('192.168.1.50', 1900)) is None
    mock_get.assert_not_called()


@pytest.mark.asyncio
async def test_control_url_resolved_after_redirect():
    ''' test that relative control URLs resolve against the final document URL '''
    discovery = SsdpDiscovery()
    final_url = 'http://192.168.1.50:49152/dev/desc.xml'
    xml = DESCRIPTION.replace('<controlURL>/ctl</controlURL>', '<controlURL>AVT/control</controlURL>')
    with patch('castit.ssdp_discovery.requests.get', return_value=http_response(xml, final_url)):
        device = await discovery.process_response(RESPONSE, ('192.168.1.50', 1900))
    assert device.control_url == 'http://192.168.1.50:49152/dev/AVT/control'


@pytest.mark.asyncio
async def test_non_ok_and_other_targets_ignored():
    ''' test that error responses and other search targets are not fetched '''
    discovery = SsdpDiscovery()
    not_ok = RESPONSE.replace(b'200 OK', b'404 Not Found')
    other = RESPONSE.replace(b'MediaRenderer', b'MediaServer')
    with patch('castit.ssdp_discovery.requests.get') as mock_get:
        assert await discovery.process_response(not_ok, ('192.168.1.50', 1900)) is None
        assert await discovery.process_response(other, ('192.168.1.50', 1900)) is None
    mock_get.assert_not_called()
    assert not discovery.renderers


@pytest.mark.asyncio
async def test_fetch_failure_is_retried_later():
    ''' test that a failed fetch leaves the location eligible for another attempt '''
    discovery = SsdpDiscovery()
    with patch('castit.ssdp_discovery.requests.get', side_effect=requests.ConnectionError('unreachable')):
        assert await discovery.process_response(RESPONSE, ('192.168.1.50', 1900)) is None
    assert LOCATION not in discovery.described_locations
    assert LOCATION not in discovery.in_flight_locations
    with patch('castit.ssdp_discovery.requests.get', return_value=http_response(DESCRIPTION)):
        assert await discovery.process_response(RESPONSE, ('192.168.1.50', 1900)) is not None


@pytest.mark.asyncio
async def test_invalid_xml_is_logged():
    ''' test that an unparseable description adds nothing '''
    discovery = SsdpDiscovery()
    with patch('castit.ssdp_discovery.requests.get', return_value=http_response('<root><device>')):
        assert await discovery.process_response(RESPONSE, ('192.168.1.50', 1900)) is None
    assert not discovery.renderers


@pytest.mark.asyncio
async def test_renderer_without_avtransport_ignored():
    ''' test that a device with no AVTransport service is not added '''
    discovery = SsdpDiscovery()
    xml = DESCRIPTION.replace('AVTransport', 'ConnectionManager')
    with patch('castit.ssdp_discovery.requests.get', return_value=http_response(xml)):
        assert await discovery.process_response(RESPONSE, ('192.168.1.50', 1900)) is None
    assert not discovery.renderers


@pytest.mark.asyncio
async def test_fetch_after_stop_is_noop():
    ''' test that a description arriving after stop has no effect '''
    discovery = SsdpDiscovery()
    await discovery.stop()
    with patch('castit.ssdp_discovery.requests.get', return_value=http_response(DESCRIPTION)):
        assert await discovery.fetch_description(LOCATION) is None
    assert not discovery.renderers


@pytest.mark.asyncio
async def test_search_attempts_bounded():
    ''' test that the search task stops after max_search_attempts '''
    discovery = SsdpDiscovery(search_interval=0.0, max_search_attempts=3)
    sent = []
    discovery.send_search = lambda: sent.append(discovery.search_attempts)
    await discovery._run_search_task()  # pylint: disable=protected-access
    assert sent == [1, 2, 3]
    assert discovery.search_attempts == 3


BAD_CONTROL_URL = '<controlURL>http://[fe80::1/ctl</controlURL>'


def test_bad_control_url_skips_only_that_service():
    ''' test that an unresolvable control URL drops its service and keeps the others '''
    xml = DESCRIPTION.replace('<controlURL>/ctl</controlURL>', BAD_CONTROL_URL)
    description = parse_device_description(xml, LOCATION)
    assert [service.control_url for service in description.services] == ['http://192.168.1.50:8080/rc']
    assert description.find_service('AVTransport') is None


@pytest.mark.asyncio
async def test_bad_control_url_is_not_refetched():
    ''' test that a description with a malformed control URL is handled once without raising '''
    discovery = SsdpDiscovery()
    xml = DESCRIPTION.replace('<controlURL>/ctl</controlURL>', BAD_CONTROL_URL)
    with patch('castit.ssdp_discovery.requests.get', return_value=http_response(xml)):
        assert await discovery.process_response(RESPONSE, ('192.168.1.50', 1900)) is None
    assert LOCATION in discovery.described_locations
    assert not discovery.renderers
    with patch('castit.ssdp_discovery.requests.get') as mock_get:
        assert await discovery.process_response(RESPONSE, ('192.168.1.50', 1900)) is None
    mock_get.assert_not_called()


@pytest.mark.asyncio
async def test_failed_response_task_is_reported():
    ''' test that an exception in a response task is reported on the errors channel '''
    discovery = SsdpDiscovery()
    errors = []
    discovery.errors.add(errors.append)

    async def broken(data, addr):
        raise RuntimeError('bad response')

    discovery.process_response = broken
    discovery.datagram_received(None, ('192.168.1.50', 1900), RESPONSE)
    tasks = list(discovery._response_tasks)  # pylint: disable=protected-access
    assert len(tasks) == 1
    await asyncio.wait(tasks)
    await asyncio.sleep(0)
    assert errors == ['Failed handling SSDP response: bad response']
    assert not discovery._response_tasks  # pylint: disable=protected-access
