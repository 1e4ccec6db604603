# core/relay/cookie_jar.py
"""
Cookie plumbing between the browser client and the court sites.

The client keeps the session: it sends its cookies with every call and gets
the (possibly updated) cookies back. Nothing is stored on the server.
The canonical wire form is a JSON object ``{name: value}``; a raw
``"a=1; b=2"`` header string is accepted at the boundary and converted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Sequence, Union

from core.exceptions import InvalidCookieJar

CookieInput = Union[Mapping[str, object], str, None]


def parse_cookie_string(raw: Optional[str]) -> Dict[str, str]:
    """Parse ``"a=1; b=2"`` into a dict.

    Only the first ``=`` separates name and value, so base64-like values keep
    their padding. A repeated name keeps its last value.
    """
    cookies: Dict[str, str] = {}
    if not raw:
        return cookies

    for fragment in raw.split(';'):
        name, sep, value = fragment.strip().partition('=')
        name = name.strip()
        if not name or not sep:
            continue
        cookies[name] = value.strip()
    return cookies


def normalize_cookie_jar(value: CookieInput) -> Dict[str, str]:
    """Convert whatever the client sent into the canonical ``{name: value}`` dict"""
    if value is None:
        return {}
    if isinstance(value, str):
        return parse_cookie_string(value)
    if isinstance(value, Mapping):
        return {str(name): '' if v is None else str(v) for name, v in value.items()}
    raise InvalidCookieJar(
        f"Cookies must be an object or a cookie header string, got {type(value).__name__}"
    )


def format_cookie_header(cookies: CookieInput) -> str:
    """Build the value of an outgoing ``Cookie`` header.

    An empty or missing collection gives ``""``; deciding whether that is an
    error is up to the caller.
    """
    jar = normalize_cookie_jar(cookies)
    return '; '.join(f"{name}={value}" for name, value in jar.items())


def extract_set_cookies(headers: Iterable[str]) -> Dict[str, str]:
    """Read ``Set-Cookie`` header values into ``{name: value}``.

    Attributes after the first ``;`` (Path, HttpOnly, Expires...) are dropped.
    Later headers win over earlier ones with the same name.
    """
    cookies: Dict[str, str] = {}
    for header in headers or ():
        pair = header.split(';', 1)[0]
        name, sep, value = pair.partition('=')
        name = name.strip()
        if not name or not sep:
            continue
        cookies[name] = value.strip()
    return cookies


@dataclass(frozen=True)
class SessionIdRule:
    """Matches a cookie name; ``mode`` is ``exact``, ``prefix`` or ``contains``.

    Comparison is case-insensitive.
    """

    pattern: str
    mode: str = 'exact'

    def matches(self, name: str) -> bool:
        name = name.lower()
        pattern = self.pattern.lower()
        if self.mode == 'exact':
            return name == pattern
        if self.mode == 'prefix':
            return name.startswith(pattern)
        if self.mode == 'contains':
            return pattern in name
        raise ValueError(f"Unknown match mode: {self.mode}")


# Order matters: the first matching rule wins
SESSION_ID_RULES: Sequence[SessionIdRule] = (
    SessionIdRule('PHPSESSID'),
    SessionIdRule('JSESSIONID'),
    SessionIdRule('HCSERVICES_SESSID'),
    SessionIdRule('PHPSESSID', 'prefix'),
    SessionIdRule('JSESSIONID', 'prefix'),
    SessionIdRule('HCSERVICES_SESSID', 'prefix'),
    SessionIdRule('session', 'contains'),
)


def find_session_id(
    cookies: Mapping[str, str],
    rules: Sequence[SessionIdRule] = SESSION_ID_RULES,
) -> Optional[str]:
    """Best-effort guess of the upstream session id; may return ``None``"""
    if not cookies:
        return None
    for rule in rules:
        for name, value in cookies.items():
            if rule.matches(name):
                return value
    return None


__all__ = [
    "SESSION_ID_RULES",
    "SessionIdRule",
    "extract_set_cookies",
    "find_session_id",
    "format_cookie_header",
    "normalize_cookie_jar",
    "parse_cookie_string",
]
