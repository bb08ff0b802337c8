"""Domain errors raised by the chat import pipeline.

The HTTP layer maps these onto status codes; the core modules never raise
``HTTPException`` themselves.
"""

from __future__ import annotations


class ChatImportError(Exception):
    """Base class for every error the import pipeline raises on purpose."""

    status_code = 500


class ValidationError(ChatImportError):
    """Missing or malformed input, rejected before any mutation."""

    status_code = 400


class BundleError(ChatImportError):
    """The uploaded archive is unreadable or holds no transcript."""

    status_code = 400


class NotFoundError(ChatImportError):
    status_code = 404


class ForbiddenError(NotFoundError):
    """The session or job exists but belongs to another owner."""

    status_code = 403


class ExpiredError(NotFoundError):
    """The preview session outlived its TTL and its bundle is gone."""

    status_code = 410


class ConflictError(ChatImportError):
    """A row collided with the message uniqueness key.

    Recovered locally and counted as a skipped message.
    """

    status_code = 409


class TransactionError(ChatImportError):
    """Unexpected storage failure; the surrounding transaction was rolled back."""

    status_code = 500
