"""Error taxonomy for the chat relay.

Every failure the gateway surfaces to a caller derives from RelayError.
The server maps each class to an HTTP status once, in one place, so the
pipeline code only has to raise the right type.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base exception for all gateway errors."""

    status_code = 500


class ConfigurationError(RelayError):
    """Provider credentials or gateway settings are missing."""

    status_code = 500


class InvalidRequestError(RelayError):
    """The client input failed validation before any upstream call."""

    status_code = 400


class UnsupportedAttachmentError(InvalidRequestError):
    """The selected model cannot accept file or image attachments."""


class NotFoundError(RelayError):
    """A session or message referenced by the client does not exist."""

    status_code = 404


class SessionBusyError(RelayError):
    """Another completion is already running against the session."""

    status_code = 409


class UpstreamError(RelayError):
    """The provider rejected the request or the transport failed.

    Attributes:
        status: HTTP status returned by the provider, or None for
                transport-level failures.
        body: Raw response body when the provider returned one.
    """

    status_code = 502

    def __init__(self, message: str, *, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class AttachmentUnavailableError(UpstreamError):
    """An attachment's backing file could not be read."""


class PersistenceError(RelayError):
    """A write to or read from the message store failed."""

    status_code = 500
