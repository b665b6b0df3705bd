# poolfeed/errors.py

"""Exception taxonomy for the ingestion and media cache pipeline.

Every error here is recoverable: the ingestion runner records it and
moves on to the next record or adapter call.
"""


class PoolfeedError(Exception):
    """Base class for all pipeline errors."""


class TransientFetchError(PoolfeedError):
    """An outbound call timed out, was blocked, or returned junk.

    Distinct from an empty-but-successful result so callers can tell
    "no listings exist" apart from "could not ask".
    """

    def __init__(self, message: str, source: str = "") -> None:
        super().__init__(message)
        self.source = source


class GateTimeoutError(TransientFetchError):
    """Waited longer than the configured ceiling for a fetch permit."""


class ImageFetchError(TransientFetchError):
    """A remote image could not be downloaded or stored."""


class ImageRejectedError(ImageFetchError):
    """A remote image is a known-bad or low-quality asset."""


class NormalizationError(PoolfeedError):
    """A raw record cannot be coerced into a canonical listing."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class UnknownSourceError(PoolfeedError):
    """No adapter is registered for the requested marketplace."""
