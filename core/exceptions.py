# core/exceptions.py
"""Exceptions raised by the relay"""


class RelayError(Exception):
    """Base class for relay errors"""


class UpstreamError(RelayError):
    """
    The upstream court site could not be reached or answered badly.

    The message is deliberately generic, the real cause is chained
    (``raise ... from exc``) and written to the server log only.
    """

    def __init__(self, message: str = "Failed to fetch from upstream"):
        super().__init__(message)
        self.message = message


class InvalidCookieJar(RelayError):
    """The client sent cookies in a shape we cannot convert"""
