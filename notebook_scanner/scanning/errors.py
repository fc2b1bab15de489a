"""
Typed failures raised by the scanning core.

Every error carries a stable ``kind`` so the HTTP layer can map it to a status
code and callers can branch on it without string matching.
"""

from __future__ import annotations


class ScanError(Exception):
    kind = "ScanError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind


class NotFound(ScanError):
    kind = "NotFound"


class PageNotFound(NotFound):
    pass


class JobNotFound(NotFound):
    pass


class Conflict(ScanError):
    kind = "Conflict"


class InvalidTransition(ScanError):
    kind = "InvalidTransition"


class OwnerResolutionError(ScanError):
    kind = "OwnerResolutionError"


class RecognitionFailure(ScanError):
    kind = "RecognitionFailure"


class TokenCollision(Conflict):
    """A freshly minted token is already taken; the registry retries."""
