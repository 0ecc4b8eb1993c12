#!/usr/bin/env python3
"""Common error types shared across modules.

Collaborators (origin, archiver, fetcher, summarizer, publisher) translate their
transport failures into `CollaboratorError` carrying a closed `ErrorKind`, so the
pipeline can classify failures without inspecting messages.
"""

from asyncio import TimeoutError as AsyncTimeoutError
from enum import Enum
from typing import Dict, Any, Optional, Tuple

from aiohttp import ClientError, ClientResponseError


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    SERVICE_UNAVAILABLE = "service_unavailable"
    RATE_LIMITED = "rate_limited"
    AUTHENTICATION = "authentication"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class CollaboratorError(Exception):
    """Raised by an external collaborator call that failed.

    Attributes:
        kind: The classified failure kind.
        source: Short name of the collaborator (e.g. 'origin', 'summarizer').
    """

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.UNKNOWN, source: str = "unknown"):
        super().__init__(message)
        self.kind = kind
        self.source = source

    def __str__(self) -> str:
        return f"[{self.source}:{self.kind.value}] {super().__str__()}"


class ContentFilterError(CollaboratorError):
    """Raised when the AI provider's content filtering blocks a response.

    Attributes:
        details: Optional provider-specific payload for diagnostics.
    """

    def __init__(self, message: str = "Content filtered by AI provider", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, kind=ErrorKind.UNKNOWN, source="summarizer")
        self.details = details or {}


class PipelinePausedError(Exception):
    """Raised once per pause episode when a fatal authentication failure stops the pipeline."""

    def __init__(self, message: str, item_id: Optional[str] = None):
        super().__init__(message)
        self.item_id = item_id


class StoreError(Exception):
    """Raised when a durable store operation fails."""


def kind_for_status(status: int, credential_statuses: Tuple[int, ...] = ()) -> ErrorKind:
    """Map an HTTP status code to an ErrorKind.

    Only statuses listed in ``credential_statuses`` mean our own credentials were
    rejected. Any other 401/403 is a refusal of that one request.
    """
    if status in credential_statuses:
        return ErrorKind.AUTHENTICATION
    if status in (401, 403):
        return ErrorKind.UNKNOWN
    if status in (404, 410):
        return ErrorKind.NOT_FOUND
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status == 408:
        return ErrorKind.TIMEOUT
    if 500 <= status <= 599:
        return ErrorKind.SERVICE_UNAVAILABLE
    return ErrorKind.UNKNOWN


def from_http_exception(error: BaseException, source: str,
                        credential_statuses: Tuple[int, ...] = ()) -> CollaboratorError:
    """Translate an aiohttp/asyncio failure into a CollaboratorError."""
    if isinstance(error, CollaboratorError):
        return error
    if isinstance(error, AsyncTimeoutError):
        return CollaboratorError(f"request timed out: {error!r}", ErrorKind.TIMEOUT, source)
    if isinstance(error, ClientResponseError):
        return CollaboratorError(f"HTTP {error.status}: {error.message}", kind_for_status(error.status, credential_statuses), source)
    if isinstance(error, ClientError):
        return CollaboratorError(f"{error.__class__.__name__}: {error}", ErrorKind.SERVICE_UNAVAILABLE, source)
    return CollaboratorError(f"{error.__class__.__name__}: {error}", ErrorKind.UNKNOWN, source)


__all__ = [
    "ErrorKind",
    "CollaboratorError",
    "ContentFilterError",
    "PipelinePausedError",
    "StoreError",
    "kind_for_status",
    "from_http_exception",
]
