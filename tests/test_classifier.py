#!/usr/bin/env python3
''' test mdns name classifiers '''

import pytest

from castit.classifier import KeywordClassifier, ServiceTypeClassifier
from castit.device import TransportKind


@pytest.mark.parametrize('name', [
    '_googlecast._tcp.local',
    'Chromecast-Ultra-1234._googlecast._tcp.local',
    'my-CASTING-box._http._tcp.local',
])
def test_keyword_matches(name):
    ''' test names that contain a casting keyword '''
    assert KeywordClassifier().classify(name) == TransportKind.CAST


@pytest.mark.parametrize('name', [
    '_airplay._tcp.local',
    'Living Room._AirPlay._tcp.local',
])
def test_airplay_keyword(name):
    ''' test that AirPlay names get their own kind '''
    assert KeywordClassifier().classify(name) == TransportKind.AIRPLAY


def test_first_matching_name_decides_kind():
    ''' test that the owner name is classified before the target '''
    classifier = KeywordClassifier()
    assert classifier.classify('_airplay._tcp.local', 'Chromecast._airplay._tcp.local') == TransportKind.AIRPLAY
    assert classifier.classify('_googlecast._tcp.local', 'AirPlay-Box._googlecast._tcp.local') == TransportKind.CAST


@pytest.mark.parametrize('name', [
    '_http._tcp.local',
    'Printer._ipp._tcp.local',
    'podcast-server._http._tcp.local',
])
def test_keyword_misses(name):
    ''' test names without a casting keyword '''
    assert KeywordClassifier().classify(name) is None


def test_keyword_any_name_matches():
    ''' test that any one of several names is enough '''
    classifier = KeywordClassifier()
    assert classifier.classify('_http._tcp.local', 'Chromecast._http._tcp.local') == TransportKind.CAST


def test_custom_keywords():
    ''' test a classifier with its own keywords and kind '''
    classifier = KeywordClassifier(['Renderer'], kind=TransportKind.DLNA)
    assert classifier.classify('MediaRenderer._upnp._tcp.local') == TransportKind.DLNA
    assert classifier.classify('_googlecast._tcp.local') is None


def test_custom_keyword_kinds():
    ''' test that keyword_kinds overrides the default kind per keyword '''
    classifier = KeywordClassifier(['renderer', 'cast'], kind=TransportKind.CAST,
                                   keyword_kinds={'Renderer': TransportKind.DLNA})
    assert classifier.classify('MediaRenderer._upnp._tcp.local') == TransportKind.DLNA
    assert classifier.classify('Cast._tcp.local') == TransportKind.CAST
    assert classifier.matches('renderer')
    assert not classifier.matches('printer')


def test_service_type_matching():
    ''' test exact service type matching '''
    classifier = ServiceTypeClassifier({'_googlecast._tcp.local.': TransportKind.CAST})
    assert classifier.classify('_googlecast._tcp.local') == TransportKind.CAST
    assert classifier.classify('Kitchen._GoogleCast._tcp.local') == TransportKind.CAST
    assert classifier.classify('x_googlecast._tcp.local') is None
    assert classifier.classify('_airplay._tcp.local') is None
