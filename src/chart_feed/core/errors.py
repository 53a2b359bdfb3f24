from __future__ import annotations


class ChartFeedError(RuntimeError):
    """Base error for the feed and clock services."""


class MalformedMessageError(ChartFeedError):
    """A socket frame could not be decoded into a known message."""


class AuthenticationRequiredError(ChartFeedError):
    """No usable API credential is stored."""
