"""
errors.py – Exception types shared across the rule engine.

Per-item failures (:class:`AttributeUnavailable`, :class:`ExternalCallFailed`,
:class:`MirrorInconsistent`) are caught close to where they happen and
logged.  Catalog, codec and coordinator failures propagate to the caller.
"""

from __future__ import annotations


class ReclaimarrError(Exception):
    """Base class for every error raised by this project."""


class UnknownAttribute(ReclaimarrError):
    """A catalog identifier or ``(application, property)`` pair is not registered."""

    def __init__(self, identifier: object) -> None:
        super().__init__(f"Unknown rule attribute: {identifier!r}")
        self.identifier = identifier


class IncompatibleMediaType(ReclaimarrError):
    """A rule document was declared for another media type than the import target."""

    def __init__(self, declared: str, expected: str) -> None:
        super().__init__(
            f"Rule document is for media type {declared!r}, expected {expected!r}"
        )
        self.declared = declared
        self.expected = expected


class InvalidRuleDocument(ReclaimarrError):
    """A rule document could not be parsed into rules."""


class AttributeUnavailable(ReclaimarrError):
    """A provider cannot supply an attribute for this media item."""


class ExternalCallFailed(ReclaimarrError):
    """A call to an acquisition manager or the media server failed or timed out."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class MirrorInconsistent(ReclaimarrError):
    """The media server returned a collection this engine cannot manage (e.g. a smart collection)."""


class AlreadyRunning(ReclaimarrError):
    """An enforcement run is already in progress."""

    def __init__(self) -> None:
        super().__init__("An enforcement run is already in progress")
