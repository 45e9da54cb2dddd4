"""Errors raised by the store and the core, with their HTTP status."""


class CalpushError(Exception):
    """Base exception for calpush errors."""

    status_code = 500


class NotFoundError(CalpushError):
    """A credential or watch channel does not exist.

    Also raised when a webhook's channel ID exists but its token or resource ID
    does not match, so callers cannot tell which part was wrong.
    """

    status_code = 404


class PersistenceError(CalpushError):
    """A write to the store was rejected."""

    status_code = 422
