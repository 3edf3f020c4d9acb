#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Classification of mDNS names as belonging (or not) to casting receivers.

The default classifier is a keyword heuristic: a name matches if it contains one of a fixed
set of substrings, ignoring case. It will miss devices whose service types and instance names
contain none of the keywords. Any object with a matching `classify` method can be given to
MdnsDiscovery in its place, e.g. one that matches exact service types.
"""

from __future__ import annotations

from .internal_types import *
from .constants import DEFAULT_CASTING_KEYWORDS
from .device import TransportKind

class DeviceClassifier(Protocol):
    def classify(self, *names: str) -> Optional[TransportKind]:
        """Returns the transport kind if any of the given names belongs to a casting device, else None."""
        ...

DEFAULT_KEYWORD_KINDS: Dict[str, TransportKind] = { "airplay": TransportKind.AIRPLAY }
"""Keywords whose matches are not Cast receivers."""

class KeywordClassifier:
    """Classifies names by case-insensitive substring match against a keyword list.

    A matching name gets the kind listed for its keyword in keyword_kinds, or the
    classifier's default kind. Keywords are tried in order.
    """

    keywords: Tuple[str, ...]

    kind: TransportKind
    """The transport kind assigned to names whose keyword has no entry in keyword_kinds."""

    keyword_kinds: Dict[str, TransportKind]

    def __init__(
            self,
            keywords: Iterable[str]=DEFAULT_CASTING_KEYWORDS,
            kind: TransportKind=TransportKind.CAST,
            keyword_kinds: Mapping[str, TransportKind]=DEFAULT_KEYWORD_KINDS,
          ):
        self.keywords = tuple(k.lower() for k in keywords)
        self.kind = kind
        self.keyword_kinds = { k.lower(): v for k, v in keyword_kinds.items() }

    def match_kind(self, name: str) -> Optional[TransportKind]:
        lower_name = name.lower()
        for keyword in self.keywords:
            if keyword in lower_name:
                return self.keyword_kinds.get(keyword, self.kind)
        return None

    def matches(self, name: str) -> bool:
        return self.match_kind(name) is not None

    def classify(self, *names: str) -> Optional[TransportKind]:
        for name in names:
            kind = self.match_kind(name)
            if kind is not None:
                return kind
        return None

class ServiceTypeClassifier:
    """Classifies names by exact DNS-SD service type: "Foo._googlecast._tcp.local" matches
       "_googlecast._tcp.local"."""

    service_types: Dict[str, TransportKind]

    def __init__(self, service_types: Mapping[str, TransportKind]):
        self.service_types = { k.lower().rstrip('.'): v for k, v in service_types.items() }

    def classify(self, *names: str) -> Optional[TransportKind]:
        for name in names:
            lower_name = name.lower().rstrip('.')
            for service_type, kind in self.service_types.items():
                if lower_name == service_type or lower_name.endswith('.' + service_type):
                    return kind
        return None
