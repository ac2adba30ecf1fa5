"""Exception hierarchy shared by the sync engine.

The classes group failures by how callers are expected to react:

* ``TransientError``: network trouble or rate limiting; retried with backoff.
* ``ProtocolError``: the remote answered with something we cannot use;
  the category sync is aborted for this run and its cursor is left alone.
* ``StorageError``: the local database failed; always propagated.
* ``UserInputError``: a bad filter expression or citation entry; reported
  per item.
"""

from __future__ import annotations

from typing import Optional


class ArxivReaderError(Exception):
    """Base class for all errors raised by arxiv_reader."""


class TransientError(ArxivReaderError):
    """A failure that is expected to go away when retried."""


class NetworkError(TransientError):
    """Connection failure, timeout or 5xx answer from the feed."""


class RateLimited(TransientError):
    """The feed asked us to slow down."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProtocolError(ArxivReaderError):
    """Malformed or unexpected response from the feed."""


class BadResumptionToken(ProtocolError):
    """The OAI-PMH resumption token was rejected (usually expired)."""


class StorageError(ArxivReaderError):
    """Local persistence failure."""


class UserInputError(ArxivReaderError):
    """Invalid input supplied by the user."""


class FilterSyntaxError(UserInputError):
    """Raised when a filter expression cannot be compiled."""

    def __init__(self, message: str, position: Optional[int] = None):
        if position is not None:
            message = f"{message} (at index {position})"
        super().__init__(message)
        self.position = position


class CitationParseError(UserInputError):
    """Raised for a single malformed entry of a citation file."""

    def __init__(self, message: str, key: Optional[str] = None, line: Optional[int] = None):
        where = []
        if key:
            where.append(f"entry {key}")
        if line is not None:
            where.append(f"line {line}")
        if where:
            message = f"{', '.join(where)}: {message}"
        super().__init__(message)
        self.key = key
        self.line = line


class ConfigError(ArxivReaderError):
    """Invalid or missing configuration."""
