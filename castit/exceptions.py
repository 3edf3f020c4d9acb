#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Exceptions defined by this package"""

class CastItError(Exception):
  """Base class for all error exceptions defined by this package."""
  pass

class BindFailure(CastItError):
  """A socket or listener could not be bound."""
  pass

class MulticastJoinFailure(CastItError):
  """A multicast group could not be joined on any interface."""
  pass

class DnsDecodeError(CastItError):
  """A DNS message or name could not be decoded."""
  pass

class DnsTruncatedError(DnsDecodeError):
  """A DNS message ended before a complete field could be read."""
  pass

class DnsMalformedError(DnsDecodeError):
  """A DNS name or record is structurally invalid (bad pointer, pointer loop, bad label)."""
  pass

class NetworkFailure(CastItError):
  """An HTTP or WebSocket exchange with a device failed."""
  pass

class MediaNotFound(CastItError):
  """The media file to be served does not exist or cannot be read."""
  pass
