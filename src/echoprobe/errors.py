"""Exception types raised by the echo protocol and its transports."""


class EchoProbeError(Exception):
    """Base class for every error raised by echoprobe."""


class TransportError(EchoProbeError):
    """A read or write on the underlying socket failed."""


class ConnectTimeout(TransportError):
    """The peer did not accept the connection within the configured bound."""


class ConnectRefused(TransportError):
    """The peer rejected the connection attempt."""


class ShortRead(TransportError):
    """The peer closed the connection in the middle of a frame."""

    def __init__(self, expected: int, received: int):
        super().__init__(f"peer closed after {received} of {expected} bytes")
        self.expected = expected
        self.received = received


class ReadTimeout(TransportError):
    """No data arrived within the configured read timeout."""


class ProtocolError(EchoProbeError):
    """A malformed or unexpected control signal was received."""


class EchoMismatch(EchoProbeError):
    """An echoed payload did not decrypt to the payload that was sent."""


class PayloadTooLarge(EchoProbeError, ValueError):
    """A payload does not fit the frame length field or the datagram limit."""


class NoResponse(EchoProbeError):
    """A datagram probe got no echo before the read timeout (non-fatal)."""
