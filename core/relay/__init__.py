# core/relay/__init__.py
"""
Relay building blocks: cookie handling, upstream transport and the
case-search request model. The HTTP surface lives in ``core.relay_server``.
"""

from .case_search import CaseSearchRequest
from .cookie_jar import (
    SESSION_ID_RULES,
    SessionIdRule,
    extract_set_cookies,
    find_session_id,
    format_cookie_header,
    normalize_cookie_jar,
    parse_cookie_string,
)
from .upstream import FetcherSettings, UpstreamFetcher, UpstreamReply

__all__ = [
    "CaseSearchRequest",
    "FetcherSettings",
    "SESSION_ID_RULES",
    "SessionIdRule",
    "UpstreamFetcher",
    "UpstreamReply",
    "extract_set_cookies",
    "find_session_id",
    "format_cookie_header",
    "normalize_cookie_jar",
    "parse_cookie_string",
]
