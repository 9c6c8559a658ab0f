"""Error taxonomy shared by the ingestion pipeline, queue and API."""

from __future__ import annotations


class GitWhisperError(Exception):
    """Base class for all domain errors.

    ``retryable`` tells the job queue whether a failed unit may be retried.
    """

    retryable = False


class AuthError(GitWhisperError):
    """Missing or rejected credential. Terminal until the credential is fixed."""


class RateLimitError(GitWhisperError):
    """The remote host or provider throttled the request."""

    retryable = True


class TransientError(GitWhisperError):
    """Network failure, timeout or server-side error."""

    retryable = True


class ValidationError(GitWhisperError):
    """Malformed input. Terminal and surfaced to the caller."""


class ProviderEmptyResult(GitWhisperError):
    """The provider answered but returned nothing usable."""


class NotFoundError(GitWhisperError):
    """A referenced entity does not exist."""


class AlreadySavedError(GitWhisperError):
    """The same question was already saved for this project and user."""


def is_retryable(exc: BaseException) -> bool:
    """Terminal domain errors fail immediately; anything else may be retried."""
    if isinstance(exc, GitWhisperError):
        return exc.retryable
    return True
