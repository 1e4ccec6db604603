# core/relay_server.py
import asyncio
import base64
import logging
import signal
from typing import Any, Dict, Optional

import requests
from aiohttp import web

from core.config_manager import ConfigManager
from core.courts import (
    CaptchaSite,
    DEFAULT_IMAGE_TYPE,
    case_query_referer,
    case_query_url,
    district_court_site,
    form_headers_for,
    high_court_site,
)
from core.exceptions import InvalidCookieJar, UpstreamError
from core.relay.case_search import CaseSearchRequest
from core.relay.cookie_jar import find_session_id, format_cookie_header, normalize_cookie_jar
from core.relay.upstream import FetcherSettings, UpstreamFetcher
from utils.port_utils import check_port_availability

logger = logging.getLogger(__name__)

CAPTCHA_FAILURE = 'Failed to fetch captcha image'
CASE_FAILURE = 'Case verification failed'


def _error(status: int, message: str, **extra) -> web.Response:
    body = {'error': message}
    body.update(extra)
    return web.json_response(body, status=status)


def _text(value: Any) -> str:
    if value is None:
        return ''
    return str(value).strip()


class CaptchaRelay:
    """HTTP handlers. Holds no per-client state: cookies travel in every request."""

    def __init__(self, config: ConfigManager, fetcher: UpstreamFetcher):
        self.fetcher = fetcher
        self.high_court_url = config.get('upstream.high_court_url')
        self.high_court = high_court_site(self.high_court_url)
        self.district_court = district_court_site(config.get('upstream.district_court_url'))

    async def health(self, request):
        return web.Response(text='OK')

    async def high_court_captcha(self, request):
        return await self._relay_captcha(request, self.high_court)

    async def district_court_captcha(self, request):
        return await self._relay_captcha(request, self.district_court)

    async def _read_params(self, request) -> Optional[Dict[str, Any]]:
        """Query string for GET, JSON or form body for POST. ``None`` if the body is unusable."""
        if request.method == 'GET':
            return dict(request.query)

        if not request.body_exists:
            return {}

        if request.content_type in ('application/x-www-form-urlencoded', 'multipart/form-data'):
            return dict(await request.post())

        try:
            payload = await request.json()
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None

    async def _relay_captcha(self, request, site: CaptchaSite):
        logger.info(f"🖼️ Handling {site.name} captcha request ({request.method})")

        params = await self._read_params(request)
        if params is None:
            return _error(400, 'Request body must be a JSON object.')

        if params.get('cookies') is None:
            logger.warning(f"⚠️ Missing cookies for {site.name} captcha")
            return _error(400, 'Cookies are required.')

        challenge_id = _text(params.get('id'))
        if site.requires_challenge_id and not challenge_id:
            logger.warning(f"⚠️ Missing captcha id for {site.name} captcha")
            return _error(400, 'Captcha ID is required.')

        try:
            submitted = normalize_cookie_jar(params['cookies'])
        except InvalidCookieJar as e:
            return _error(400, str(e))

        cookie_header = format_cookie_header(submitted)
        referer = request.headers.get('Referer') or site.default_referer
        user_agent = request.headers.get('User-Agent')
        logger.debug(f"   Cookie header: {cookie_header!r}, challenge id: {challenge_id!r}")

        try:
            reply = await self.fetcher.fetch_captcha_image(
                site.captcha_url(challenge_id or None),
                cookie_header,
                referer,
                user_agent,
            )
        except UpstreamError as e:
            logger.error(f"❌ {site.name} captcha failed: {e.message}")
            return _error(500, CAPTCHA_FAILURE)

        content_type = (reply.content_type or DEFAULT_IMAGE_TYPE).split(';')[0].strip()

        if _text(params.get('format')).lower() == 'image':
            return web.Response(body=reply.body, headers={'Content-Type': content_type})

        cookies = reply.cookies() or submitted
        body = {
            'captchaImageBase64': f"data:{content_type};base64,{base64.b64encode(reply.body).decode('ascii')}",
            'cookies': cookies,
        }
        session_id = find_session_id(cookies)
        if session_id:
            body['sessionId'] = session_id

        logger.info(f"✅ {site.name} captcha relayed ({content_type}, {len(reply.body)} bytes, {len(cookies)} cookies)")
        return web.json_response(body)

    async def case_search(self, request):
        logger.info("🔎 Handling case search submission")

        try:
            payload = await request.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            return _error(400, 'Request body must be a JSON object.')

        try:
            search = CaseSearchRequest.from_payload(payload)
        except InvalidCookieJar as e:
            return _error(400, str(e))

        missing = search.missing_fields()
        if missing:
            logger.warning(f"⚠️ Case search rejected, missing: {', '.join(missing)}")
            return _error(400, f"Missing required fields: {', '.join(missing)}", missingFields=missing)

        try:
            reply = await self.fetcher.submit_form(
                case_query_url(self.high_court_url),
                search.form_data(),
                form_headers_for(self.high_court_url),
                search.cookie_header,
                referer=case_query_referer(self.high_court_url),
                user_agent=request.headers.get('User-Agent'),
            )
        except UpstreamError as e:
            logger.error(f"❌ Case search failed: {e.message}")
            return _error(500, CASE_FAILURE, details=e.message)

        # an invalid captcha comes back as JSON or as text; pass either through
        data = reply.json_or_text()
        cookies = reply.cookies() or search.cookies
        session_id = search.session_id or find_session_id(cookies)

        logger.info(f"✅ Case search relayed (session: {session_id or 'unknown'})")
        return web.json_response({
            'sessionID': session_id,
            'data': data,
            'cookies': cookies,
        })


@web.middleware
async def request_logging_middleware(request, handler):
    logger.info(f"📥 {request.method} {request.path_qs}")
    logger.debug(f"   Headers: {dict(request.headers)}")
    return await handler(request)


@web.middleware
async def error_middleware(request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except asyncio.CancelledError:
        logger.info(f"🔌 Client went away: {request.method} {request.path}")
        raise
    except Exception as e:
        logger.error(f"❌ Unhandled error in {request.method} {request.path}: {e}", exc_info=True)
        return _error(500, 'Internal server error')


def cors_middleware(allowed_origin: str):
    """CORS headers for the configured frontend origin (``*`` allows any)"""

    def cors_headers(origin: Optional[str]) -> Dict[str, str]:
        if allowed_origin == '*':
            allow = '*'
        elif origin and origin == allowed_origin:
            allow = origin
        else:
            return {}
        return {
            'Access-Control-Allow-Origin': allow,
            'Access-Control-Allow-Methods': 'GET, POST, OPTIONS',
            'Access-Control-Allow-Headers': 'Content-Type, Authorization, X-Requested-With',
            'Vary': 'Origin',
        }

    @web.middleware
    async def middleware(request, handler):
        headers = cors_headers(request.headers.get('Origin'))
        if request.method == 'OPTIONS':
            response = web.Response(status=204)
        else:
            try:
                response = await handler(request)
            except web.HTTPException as exc:
                # 404/405 from routing must stay readable by the browser
                exc.headers.update(headers)
                raise
        response.headers.update(headers)
        return response

    return middleware


def create_app(config: ConfigManager, fetcher: Optional[UpstreamFetcher] = None) -> web.Application:
    if fetcher is None:
        fetcher = UpstreamFetcher(FetcherSettings.from_config(config))
    relay = CaptchaRelay(config, fetcher)

    app = web.Application(middlewares=[
        cors_middleware(config.get('server.allowed_origin', '*')),
        request_logging_middleware,
        error_middleware,
    ])

    app.router.add_get('/health', relay.health)
    for path, handler in (
        ('/captcha/highcourt', relay.high_court_captcha),
        ('/captcha/districtcourt', relay.district_court_captcha),
    ):
        app.router.add_get(path, handler)
        app.router.add_post(path, handler)
    app.router.add_post('/api/case', relay.case_search)

    async def on_startup(app):
        await fetcher.initialize()

    async def on_cleanup(app):
        await fetcher.cleanup()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app


class RelayServer:
    def __init__(self, config: ConfigManager):
        self.config = config
        self.host = config.get('server.host', '0.0.0.0')
        self.port = int(config.get('server.port', 3000))
        self.settings = FetcherSettings.from_config(config)
        self.fetcher = None
        self.runner = None
        self.site = None
        self.loop = None

    async def start(self) -> bool:
        """Starts listening. Returns False if the port is taken."""
        port_available, port_message = check_port_availability(self.port, self.host)
        if not port_available:
            logger.error(f"❌ {port_message}")
            return False

        if self.settings.relay_enabled:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self.check_relay_credential)
        else:
            logger.warning("⚠️ SCRAPER_API_KEY is not set, court sites will be called directly")

        self.fetcher = UpstreamFetcher(self.settings)
        app = create_app(self.config, self.fetcher)

        self.runner = web.AppRunner(app, access_log=None)
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, host=self.host, port=self.port)
        await self.site.start()

        logger.info(f"✅ Captcha relay listening at http://{self.host}:{self.port}")
        logger.info(f"   Allowed origin: {self.config.get('server.allowed_origin')}")
        return True

    def check_relay_credential(self) -> bool:
        """
        Checks the relay-service key against its account endpoint.
        Non-fatal: a failed check only logs a warning.

        Returns:
            bool: True if the key was accepted
        """
        account_url = self.config.get('relay.account_url')

        try:
            response = requests.get(
                account_url,
                params={'api_key': self.settings.relay_api_key},
                timeout=10
            )
        except requests.Timeout:
            logger.warning("⚠️ Relay account check timed out (>10s)")
            return False
        except requests.RequestException as e:
            logger.warning(f"⚠️ Relay account check failed: {e}")
            return False

        if response.status_code != 200:
            logger.warning(
                f"⚠️ Relay credential rejected!\n"
                f"   Status: {response.status_code}\n"
                f"   Response: {response.text[:200]}"
            )
            return False

        try:
            data = response.json()
        except ValueError:
            data = {}

        logger.info(
            f"✅ Relay credential accepted\n"
            f"   Requests used: {data.get('requestCount')}\n"
            f"   Request limit: {data.get('requestLimit')}"
        )
        return True

    async def stop(self):
        """Stops listening and logs upstream statistics"""
        if self.site:
            await self.site.stop()
            self.site = None
        if self.runner:
            await self.runner.cleanup()
            self.runner = None

        if self.fetcher:
            stats = self.fetcher.get_full_stats()
            logger.info(
                f"📊 Session statistics:\n"
                f"   Upstream requests: {stats['total_requests']}\n"
                f"   Upstream responses: {stats['total_responses']}\n"
                f"   Errors: {stats['errors']}"
            )

    def run(self) -> int:
        """Blocks until interrupted. Returns a process exit code."""
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)

        try:
            if not self.loop.run_until_complete(self.start()):
                return 1

            try:
                self.loop.add_signal_handler(signal.SIGTERM, self.loop.stop)
            except NotImplementedError:
                # Windows
                pass

            self.loop.run_forever()

        except KeyboardInterrupt:
            logger.info("🛑 Interrupted")

        finally:
            logger.info("🛑 Stopping captcha relay...")
            self.loop.run_until_complete(self.stop())
            self.loop.close()

        return 0
