"""
Error taxonomy for the connectivity and decoding layers.

None of these are fatal: transport errors send a device back to IDLE, decode
errors drop a single frame and protocol errors discard an unpaired response.
"""


class TreadsyncError(Exception):
    """Base class for all treadsync errors."""


class TransportError(TreadsyncError):
    """Scan, connect, discovery, subscription or write failure."""


class DecodeError(TreadsyncError):
    """A frame could not be decoded."""


class TruncatedFrame(DecodeError):
    """Buffer shorter than its own layout requires."""

    def __init__(self, needed: int, length: int, what: str = "frame") -> None:
        super().__init__(f"{what} truncated: need {needed} bytes, got {length}")
        self.needed = needed
        self.length = length


class InvalidStatusFrame(DecodeError):
    """Status response with non-zero padding, likely corrupted or misrouted."""


class UnexpectedSync(DecodeError):
    """Frame does not start with the expected sync byte."""


class ProtocolError(TreadsyncError):
    """Response arrived with no matching outstanding request."""
