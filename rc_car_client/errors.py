"""Error types raised by the RC car client."""


class RcCarError(Exception):
    """Base error for RC car client failures."""


class ConnectionFailedError(RcCarError):
    """Setting up a link to the car failed."""


class HandshakeTimeoutError(ConnectionFailedError):
    """The car did not acknowledge the handshake in time."""


class LinkWriteError(RcCarError):
    """Writing to the outbound stream failed."""
