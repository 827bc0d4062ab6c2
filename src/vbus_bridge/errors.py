"""Exception hierarchy shared by the codec, transports, hub and transactions."""

from __future__ import annotations


class VBusError(Exception):
    """Base class for all errors raised by this package."""


class FramingError(VBusError):
    """A byte sequence does not form a valid VBus frame.

    Raised by the codec and absorbed by the stream decoders, which drop
    a byte and resynchronize on the next sync marker.
    """


class ChecksumError(FramingError):
    """A header or payload frame failed its checksum."""


class TransportError(VBusError, ConnectionError):
    """The underlying byte stream failed or was closed by the peer."""


class AuthError(VBusError):
    """The VBus-over-TCP handshake was rejected."""


class TransactionError(VBusError):
    """A parameter request could not be completed."""


class TransactionTimeout(TransactionError, TimeoutError):
    """No matching reply arrived after all retries."""


class TransactionCancelled(TransactionError):
    """The owner of a request went away before the reply arrived."""


class ResolutionError(TransactionError, LookupError):
    """Unknown parameter or a value outside the parameter's bounds."""
