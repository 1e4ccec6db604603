# core/courts.py
"""Upstream court endpoints and the browser headers they expect"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import quote

DEFAULT_USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36'
)

_CLIENT_HINTS = {
    'sec-ch-ua': '"Chromium";v="136", "Brave";v="136", "Not.A/Brand";v="99"',
    'sec-ch-ua-mobile': '?0',
    'sec-ch-ua-platform': '"Windows"',
    'sec-gpc': '1',
}

IMAGE_HEADERS = {
    'Accept': 'image/avif,image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.5',
    'Priority': 'i',
    **_CLIENT_HINTS,
    'sec-fetch-dest': 'image',
    'sec-fetch-mode': 'no-cors',
    'sec-fetch-site': 'same-origin',
}

FORM_HEADERS = {
    'Accept': '*/*',
    'Accept-Language': 'en-US,en;q=0.5',
    'Content-Type': 'application/x-www-form-urlencoded; charset=UTF-8',
    'X-Requested-With': 'XMLHttpRequest',
    **_CLIENT_HINTS,
    'sec-fetch-dest': 'empty',
    'sec-fetch-mode': 'cors',
    'sec-fetch-site': 'same-origin',
}

DEFAULT_IMAGE_TYPE = 'image/png'

CASE_QUERY_PATH = '/hcservices/cases_qry/index_qry.php'
CASE_QUERY_ACTION = 'showRecords'
CASE_QUERY_APP_FLAG = 'web'

_last_stamp = 0
_stamp_lock = threading.Lock()


def cache_buster() -> int:
    """Millisecond timestamp, bumped past the previous value when calls collide"""
    global _last_stamp
    with _stamp_lock:
        _last_stamp = max(int(time.time() * 1000), _last_stamp + 1)
        return _last_stamp


@dataclass(frozen=True)
class CaptchaSite:
    """A court site that serves captcha images.

    ``requires_challenge_id`` marks sites that tie the image to a server-side
    id instead of only to the session cookies.
    """

    name: str
    base_url: str
    path: str
    referer_path: str
    requires_challenge_id: bool = False

    @property
    def default_referer(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.referer_path}"

    def captcha_url(self, challenge_id: Optional[str] = None) -> str:
        base = self.base_url.rstrip('/')
        if self.requires_challenge_id:
            if not challenge_id:
                raise ValueError(f"{self.name} captcha needs a challenge id")
            return f"{base}{self.path}?_siwp_captcha&id={quote(str(challenge_id), safe='')}"
        # strictly increasing, so no two fetches share a cacheable URL
        return f"{base}{self.path}?{cache_buster()}"


def high_court_site(base_url: str) -> CaptchaSite:
    return CaptchaSite(
        name='highcourt',
        base_url=base_url,
        path='/hcservices/securimage/securimage_show.php',
        referer_path='/',
    )


def district_court_site(base_url: str) -> CaptchaSite:
    return CaptchaSite(
        name='districtcourt',
        base_url=base_url,
        path='/',
        referer_path='/case-status-search-by-petitioner-respondent/',
        requires_challenge_id=True,
    )


def case_query_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}{CASE_QUERY_PATH}?action_code={CASE_QUERY_ACTION}"


def case_query_referer(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/hcservices/main.php"


def form_headers_for(base_url: str) -> Dict[str, str]:
    """Form-submission headers with ``Origin`` pointing at the court host"""
    headers = dict(FORM_HEADERS)
    headers['Origin'] = base_url.rstrip('/')
    return headers


__all__ = [
    "CASE_QUERY_ACTION",
    "CASE_QUERY_APP_FLAG",
    "CaptchaSite",
    "DEFAULT_IMAGE_TYPE",
    "DEFAULT_USER_AGENT",
    "FORM_HEADERS",
    "IMAGE_HEADERS",
    "cache_buster",
    "case_query_referer",
    "case_query_url",
    "district_court_site",
    "form_headers_for",
    "high_court_site",
]
