# Overview: Domain error taxonomy; each error carries the HTTP status the API layer returns for it.

from __future__ import annotations

from typing import Any


class StorefrontError(Exception):
    """Base for errors surfaced to API callers."""

    status_code = 500
    terminal = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        if self.terminal:
            body["terminal"] = True
        return body


class ValidationError(StorefrontError, ValueError):
    """400-level input problem."""

    status_code = 400


class NotFoundError(StorefrontError):
    status_code = 404


class ConflictError(StorefrontError, ValueError):
    """409-level business rule conflict (e.g., insufficient stock, already paid)."""

    status_code = 409


class RetryLimitError(ConflictError):
    """Payment retries exhausted. Terminal: callers should stop retrying."""

    terminal = True


class AuthenticityError(StorefrontError):
    """Webhook signature did not verify."""

    status_code = 401


class UpstreamError(StorefrontError):
    """The payment gateway failed a call the caller depends on."""

    status_code = 502


class TransientProcessingError(StorefrontError):
    """
    Unexpected failure while applying a webhook.

    Surfaces as 500 so the gateway redelivers; the handler is safe to re-run.
    """

    status_code = 500
