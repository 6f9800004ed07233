"""Error taxonomy shared by the chat, document and generation services."""

from __future__ import annotations


class ChatServiceError(Exception):
    """Base class for errors reported to callers with a status and a message."""

    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFound(ChatServiceError):
    """A chat or document id is absent from the store or projection it was expected in."""

    status_code = 404


class ValidationError(ChatServiceError):
    """A required field is missing or a named value is not recognised."""

    status_code = 400


class UpstreamFailure(ChatServiceError):
    """A generation or indexing backend call failed."""

    status_code = 502


class StorageFailure(ChatServiceError):
    """A persistent-store or object-store operation failed."""

    status_code = 500
