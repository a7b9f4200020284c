from __future__ import annotations


class NotifierError(Exception):
    """Base class for errors raised by the notification pipeline."""


class MalformedPayloadError(NotifierError):
    """A source payload, or one entry in it, cannot be normalized."""


class ImageResolutionError(NotifierError):
    """No image could be produced for a notification."""

    def __init__(self, message: str, attempts: int = 0, paid: bool = False):
        super().__init__(message)
        self.attempts = attempts
        self.paid = paid
