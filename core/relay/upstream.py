# core/relay/upstream.py
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from aiohttp import (
    ClientConnectorError,
    ClientError,
    ClientSession,
    ClientTimeout,
    DummyCookieJar,
    TCPConnector,
)

from core.courts import DEFAULT_USER_AGENT, IMAGE_HEADERS
from core.exceptions import UpstreamError
from core.relay.cookie_jar import extract_set_cookies

logger = logging.getLogger(__name__)

TEXTUAL_TYPES = ('text/', 'json', 'javascript', 'xml')


@dataclass(frozen=True)
class FetcherSettings:
    """Transport settings, fixed for the lifetime of an :class:`UpstreamFetcher`"""

    relay_api_key: str = ''
    relay_endpoint: str = 'https://api.scraperapi.com/'
    direct_timeout: float = 20.0
    relay_timeout: float = 60.0
    connect_timeout: float = 10.0

    @property
    def relay_enabled(self) -> bool:
        return bool(self.relay_api_key)

    @property
    def timeout(self) -> float:
        return self.relay_timeout if self.relay_enabled else self.direct_timeout

    @classmethod
    def from_config(cls, config) -> "FetcherSettings":
        return cls(
            relay_api_key=(config.get('relay.api_key') or '').strip(),
            relay_endpoint=config.get('relay.endpoint', cls.relay_endpoint),
            direct_timeout=float(config.get('upstream.timeout', cls.direct_timeout)),
            relay_timeout=float(config.get('relay.timeout', cls.relay_timeout)),
            connect_timeout=float(config.get('upstream.connect_timeout', cls.connect_timeout)),
        )


@dataclass
class UpstreamReply:
    status: int
    body: bytes
    content_type: Optional[str] = None
    set_cookies: List[str] = field(default_factory=list)

    def cookies(self) -> Dict[str, str]:
        return extract_set_cookies(self.set_cookies)

    def looks_textual(self) -> bool:
        content_type = (self.content_type or '').lower()
        if not content_type:
            return True
        return any(marker in content_type for marker in TEXTUAL_TYPES)

    def text(self) -> str:
        # hcservices replies sometimes start with a BOM
        return self.body.decode('utf-8', errors='replace').lstrip('\ufeff')

    def json_or_text(self) -> Any:
        """JSON if the body parses, otherwise the raw text. Never raises."""
        text = self.text()
        if not self.looks_textual():
            return text
        try:
            return json.loads(text)
        except ValueError:
            return text


class UpstreamFetcher:
    def __init__(self, settings: FetcherSettings):
        """
        Args:
            settings: transport settings; relay mode is decided here once
        """
        self.settings = settings

        # Connection pool shared by all upstream requests
        self.connector = None
        self.session = None

        self.stats = {
            'total_requests': 0,
            'total_responses': 0,
            'errors': 0
        }

    @property
    def mode(self) -> str:
        return 'relay' if self.settings.relay_enabled else 'direct'

    async def initialize(self):
        """Creates the connection pool and session on first use"""
        if self.connector is None:
            self.connector = TCPConnector(
                limit=100,
                limit_per_host=50,
                ttl_dns_cache=300,
                enable_cleanup_closed=True
            )

        if self.session is None:
            self.session = ClientSession(
                connector=self.connector,
                # cookies never outlive a single client request
                cookie_jar=DummyCookieJar(),
                timeout=ClientTimeout(
                    total=self.settings.timeout,
                    connect=self.settings.connect_timeout
                )
            )
            logger.info(f"🌐 Upstream fetcher ready: mode={self.mode}, timeout={self.settings.timeout}s")

    async def cleanup(self):
        """Closes the session and the connection pool"""
        if self.session:
            await self.session.close()
            self.session = None
        if self.connector:
            await self.connector.close()
            self.connector = None

    def _target(self, url: str):
        """Returns (request url, query params) for the configured transport mode"""
        if not self.settings.relay_enabled:
            return url, None
        return self.settings.relay_endpoint, {
            'api_key': self.settings.relay_api_key,
            'url': url,
            'keep_headers': 'true',
        }

    async def fetch(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        data: Any = None,
        failure_message: str = 'Failed to fetch from upstream',
    ) -> UpstreamReply:
        """
        Sends one request to a court site, directly or through the relay.

        Raises:
            UpstreamError: transport error, timeout or non-2xx status
        """
        await self.initialize()
        self.stats['total_requests'] += 1

        request_url, params = self._target(url)
        logger.info(f"➡️ {method} {url} (mode={self.mode})")
        logger.debug(f"   Upstream headers: {dict(headers)}")

        try:
            async with self.session.request(
                method=method,
                url=request_url,
                params=params,
                headers=dict(headers),
                data=data,
                allow_redirects=True
            ) as response:
                body = await response.read()
                logger.info(f"⬅️ Upstream response: {response.status} ({len(body)} bytes)")
                logger.debug(f"   Response headers: {dict(response.headers)}")

                if response.status < 200 or response.status >= 300:
                    self.stats['errors'] += 1
                    logger.error(
                        f"❌ Upstream returned HTTP {response.status}\n"
                        f"   URL: {url}\n"
                        f"   Body: {body[:200]!r}"
                    )
                    raise UpstreamError(failure_message)

                self.stats['total_responses'] += 1
                return UpstreamReply(
                    status=response.status,
                    body=body,
                    content_type=response.headers.get('Content-Type'),
                    set_cookies=response.headers.getall('Set-Cookie', []),
                )

        except UpstreamError:
            raise

        except ClientConnectorError as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Upstream unreachable: {e}")
            raise UpstreamError(failure_message) from e

        except asyncio.TimeoutError as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Upstream timed out after {self.settings.timeout}s: {url}")
            raise UpstreamError(failure_message) from e

        except ClientError as e:
            self.stats['errors'] += 1
            logger.error(f"❌ Upstream request error: {e}", exc_info=True)
            raise UpstreamError(failure_message) from e

    async def fetch_captcha_image(
        self,
        url: str,
        cookie_header: str,
        referer: str,
        user_agent: Optional[str] = None,
    ) -> UpstreamReply:
        headers = dict(IMAGE_HEADERS)
        headers['Referer'] = referer
        headers['User-Agent'] = user_agent or DEFAULT_USER_AGENT
        if cookie_header:
            headers['Cookie'] = cookie_header

        return await self.fetch('GET', url, headers, failure_message='Failed to fetch captcha image')

    async def submit_form(
        self,
        url: str,
        form: Mapping[str, str],
        headers: Mapping[str, str],
        cookie_header: str,
        referer: str,
        user_agent: Optional[str] = None,
    ) -> UpstreamReply:
        headers = dict(headers)
        headers['Referer'] = referer
        headers['User-Agent'] = user_agent or DEFAULT_USER_AGENT
        if cookie_header:
            headers['Cookie'] = cookie_header

        return await self.fetch('POST', url, headers, data=dict(form), failure_message='Case verification failed')

    def get_full_stats(self):
        return dict(self.stats)
