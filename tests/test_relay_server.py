import asyncio
import base64
import time
from unittest import TestCase, mock

import requests
from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase, TestServer

from core.config_manager import ConfigManager
from core.relay.upstream import UpstreamReply
from core.relay_server import RelayServer, create_app
from tests.fake_court import CALLS, GIF_BYTES, KNOBS, PNG_BYTES, build_fake_court

ORIGIN = "https://client.example"

SEARCH = {
    "captcha": "x7k2p",
    "petres_name": "Sharma",
    "rgyear": "2024",
    "caseStatusSearchType": "CSpartyName",
    "f": "Both",
    "court_code": "1",
    "state_code": "13",
    "court_complex_code": "1",
    "cookies": {"HCSERVICES_SESSID": "s1", "JSESSION": "j1"},
}


def make_config(base_url: str, **overrides) -> ConfigManager:
    config = ConfigManager(load_env=False)
    config.set("upstream.high_court_url", base_url)
    config.set("upstream.district_court_url", base_url)
    config.set("server.allowed_origin", ORIGIN)
    for key, value in overrides.items():
        config.set(key, value)
    return config


class RelayAppTestCase(AioHTTPTestCase):
    config_overrides = {}

    async def asyncSetUp(self) -> None:
        self.court_app = build_fake_court()
        self.court = TestServer(self.court_app)
        await self.court.start_server()
        await super().asyncSetUp()

    async def asyncTearDown(self) -> None:
        await super().asyncTearDown()
        await self.court.close()

    async def get_application(self) -> web.Application:
        base_url = str(self.court.make_url("")).rstrip("/")
        return create_app(make_config(base_url, **self.config_overrides))

    @property
    def calls(self):
        return self.court_app[CALLS]


class HealthAndCorsTest(RelayAppTestCase):
    async def test_health(self) -> None:
        async with self.client.get("/health") as resp:
            self.assertEqual(resp.status, 200)
            self.assertEqual(await resp.text(), "OK")
            self.assertTrue(resp.content_type.startswith("text/plain"))

    async def test_cors_headers_for_allowed_origin(self) -> None:
        async with self.client.get("/health", headers={"Origin": ORIGIN}) as resp:
            self.assertEqual(resp.headers["Access-Control-Allow-Origin"], ORIGIN)

    async def test_no_cors_headers_for_other_origin(self) -> None:
        async with self.client.get("/health", headers={"Origin": "https://evil.example"}) as resp:
            self.assertNotIn("Access-Control-Allow-Origin", resp.headers)

    async def test_routing_errors_keep_cors_headers(self) -> None:
        async with self.client.get("/api/case", headers={"Origin": ORIGIN}) as resp:
            self.assertEqual(resp.status, 405)
            self.assertEqual(resp.headers["Access-Control-Allow-Origin"], ORIGIN)

        async with self.client.get("/nowhere", headers={"Origin": ORIGIN}) as resp:
            self.assertEqual(resp.status, 404)
            self.assertEqual(resp.headers["Access-Control-Allow-Origin"], ORIGIN)

    async def test_preflight(self) -> None:
        headers = {"Origin": ORIGIN, "Access-Control-Request-Method": "POST"}
        async with self.client.options("/api/case", headers=headers) as resp:
            self.assertEqual(resp.status, 204)
            self.assertIn("POST", resp.headers["Access-Control-Allow-Methods"])


class HighCourtCaptchaTest(RelayAppTestCase):
    async def test_json_envelope(self) -> None:
        async with self.client.post("/captcha/highcourt", json={"cookies": {"PHPSESSID": "abc"}}) as resp:
            self.assertEqual(resp.status, 200)
            body = await resp.json()

        prefix = "data:image/png;base64,"
        self.assertTrue(body["captchaImageBase64"].startswith(prefix))
        self.assertEqual(base64.b64decode(body["captchaImageBase64"][len(prefix):]), PNG_BYTES)
        self.assertEqual(body["cookies"], {"HCSERVICES_SESSID": "fresh123"})
        self.assertEqual(body["sessionId"], "fresh123")

        call = self.calls[-1]
        self.assertEqual(call["headers"]["Cookie"], "PHPSESSID=abc")
        # cache buster is a millisecond timestamp
        self.assertTrue(call["raw_query"].isdigit())

    async def test_concurrent_fetches_use_distinct_urls(self) -> None:
        async def fetch() -> int:
            async with self.client.post("/captcha/highcourt", json={"cookies": {}}) as resp:
                return resp.status

        statuses = await asyncio.gather(*(fetch() for _ in range(10)))

        self.assertEqual(statuses, [200] * 10)
        self.assertEqual(len({call["raw_query"] for call in self.calls}), 10)

    async def test_get_with_raw_cookie_string(self) -> None:
        async with self.client.get("/captcha/highcourt", params={"cookies": "a=1; tok=YQ=="}) as resp:
            self.assertEqual(resp.status, 200)
        self.assertEqual(self.calls[-1]["headers"]["Cookie"], "a=1; tok=YQ==")

    async def test_referer_and_user_agent_are_forwarded(self) -> None:
        headers = {"Referer": "https://client.example/page", "User-Agent": "Browser/9"}
        async with self.client.post("/captcha/highcourt", json={"cookies": {}}, headers=headers) as resp:
            self.assertEqual(resp.status, 200)
        call = self.calls[-1]
        self.assertEqual(call["headers"]["Referer"], "https://client.example/page")
        self.assertEqual(call["headers"]["User-Agent"], "Browser/9")

    async def test_raw_image_format(self) -> None:
        payload = {"cookies": {"a": "1"}, "format": "image"}
        async with self.client.post("/captcha/highcourt", json=payload) as resp:
            self.assertEqual(resp.status, 200)
            self.assertEqual(resp.content_type, "image/png")
            self.assertEqual(await resp.read(), PNG_BYTES)

    async def test_missing_cookies(self) -> None:
        async with self.client.post("/captcha/highcourt", json={}) as resp:
            self.assertEqual(resp.status, 400)
            self.assertEqual(await resp.json(), {"error": "Cookies are required."})
        self.assertEqual(self.calls, [])

    async def test_malformed_cookies(self) -> None:
        async with self.client.post("/captcha/highcourt", json={"cookies": ["a=1"]}) as resp:
            self.assertEqual(resp.status, 400)
        self.assertEqual(self.calls, [])

    async def test_invalid_json_body(self) -> None:
        async with self.client.post(
            "/captcha/highcourt", data="{oops", headers={"Content-Type": "application/json"}
        ) as resp:
            self.assertEqual(resp.status, 400)

    async def test_upstream_failure(self) -> None:
        self.court_app[KNOBS]["captcha_status"] = 502
        async with self.client.post("/captcha/highcourt", json={"cookies": {}}) as resp:
            self.assertEqual(resp.status, 500)
            self.assertEqual(await resp.json(), {"error": "Failed to fetch captcha image"})


class UpstreamTimeoutTest(RelayAppTestCase):
    config_overrides = {"upstream.timeout": 0.3}

    async def test_timeout_gives_generic_500(self) -> None:
        self.court_app[KNOBS]["delay"] = 2
        started = time.monotonic()
        async with self.client.post("/captcha/highcourt", json={"cookies": {}}) as resp:
            self.assertEqual(resp.status, 500)
            self.assertEqual(await resp.json(), {"error": "Failed to fetch captcha image"})
        self.assertLess(time.monotonic() - started, 1.5)


class DistrictCourtCaptchaTest(RelayAppTestCase):
    async def test_requires_challenge_id(self) -> None:
        async with self.client.post("/captcha/districtcourt", json={"cookies": {"a": "1"}}) as resp:
            self.assertEqual(resp.status, 400)
            self.assertEqual(await resp.json(), {"error": "Captcha ID is required."})
        self.assertEqual(self.calls, [])

    async def test_challenge_id_goes_into_query(self) -> None:
        payload = {"cookies": {"wp_session": "w1"}, "id": "5f2a 9"}
        async with self.client.post("/captcha/districtcourt", json=payload) as resp:
            self.assertEqual(resp.status, 200)
            body = await resp.json()

        call = self.calls[-1]
        self.assertEqual(call["path"], "/")
        self.assertIn("_siwp_captcha", call["query"])
        self.assertEqual(call["query"]["id"], "5f2a 9")
        base_url = str(self.court.make_url("")).rstrip("/")
        self.assertEqual(call["headers"]["Referer"], f"{base_url}/case-status-search-by-petitioner-respondent/")

        # no new cookies: the submitted jar comes back
        self.assertEqual(body["cookies"], {"wp_session": "w1"})
        self.assertEqual(body["sessionId"], "w1")
        self.assertTrue(body["captchaImageBase64"].startswith("data:image/gif;base64,"))
        self.assertEqual(base64.b64decode(body["captchaImageBase64"].split(",", 1)[1]), GIF_BYTES)

    async def test_get_with_query_params(self) -> None:
        async with self.client.get("/captcha/districtcourt", params={"cookies": "a=1", "id": "abc"}) as resp:
            self.assertEqual(resp.status, 200)
            body = await resp.json()
        self.assertEqual(self.calls[-1]["query"]["id"], "abc")
        self.assertNotIn("sessionId", body)


class CaseSearchTest(RelayAppTestCase):
    async def test_successful_search_echoes_cookies(self) -> None:
        async with self.client.post("/api/case", json=SEARCH) as resp:
            self.assertEqual(resp.status, 200)
            body = await resp.json()

        self.assertEqual(body["data"], "<table><tr><td>WP/123/2024</td></tr></table>")
        self.assertEqual(body["cookies"], SEARCH["cookies"])
        self.assertEqual(body["sessionID"], "s1")

        call = self.calls[-1]
        self.assertEqual(call["method"], "POST")
        self.assertEqual(call["query"], {"action_code": "showRecords"})
        self.assertEqual(call["headers"]["Cookie"], "HCSERVICES_SESSID=s1; JSESSION=j1")
        self.assertEqual(call["headers"]["X-Requested-With"], "XMLHttpRequest")
        form = call["form"]
        self.assertEqual(form["action_code"], "showRecords")
        self.assertEqual(form["appFlag"], "web")
        for name in ("captcha", "petres_name", "rgyear", "caseStatusSearchType", "f",
                     "court_code", "state_code", "court_complex_code"):
            self.assertEqual(form[name], SEARCH[name])

    async def test_invalid_captcha_json_is_parsed(self) -> None:
        payload = dict(SEARCH, captcha="wrong")
        async with self.client.post("/api/case", json=payload) as resp:
            self.assertEqual(resp.status, 200)
            body = await resp.json()
        self.assertEqual(body["data"], {"con": "Invalid Captcha"})

    async def test_new_cookies_replace_submitted(self) -> None:
        def reply():
            response = web.Response(text="[]", content_type="application/json")
            response.headers.add("Set-Cookie", "HCSERVICES_SESSID=rotated; path=/")
            return response

        self.court_app[KNOBS]["case_reply"] = reply
        async with self.client.post("/api/case", json=SEARCH) as resp:
            body = await resp.json()
        self.assertEqual(body["cookies"], {"HCSERVICES_SESSID": "rotated"})
        self.assertEqual(body["sessionID"], "rotated")
        self.assertEqual(body["data"], [])

    async def test_caller_session_id_wins(self) -> None:
        payload = dict(SEARCH, sessionId="from-client")
        async with self.client.post("/api/case", json=payload) as resp:
            body = await resp.json()
        self.assertEqual(body["sessionID"], "from-client")

    async def test_empty_cookie_jar_is_rejected(self) -> None:
        payload = dict(SEARCH, cookies={})
        async with self.client.post("/api/case", json=payload) as resp:
            self.assertEqual(resp.status, 400)
            body = await resp.json()
        self.assertEqual(body["missingFields"], ["cookiesString"])
        self.assertIn("cookiesString", body["error"])
        self.assertEqual(self.calls, [])

    async def test_every_missing_field_is_named(self) -> None:
        async with self.client.post("/api/case", json={"captcha": "abc", "rgyear": 2024}) as resp:
            self.assertEqual(resp.status, 400)
            body = await resp.json()
        self.assertEqual(
            body["missingFields"],
            ["petres_name", "caseStatusSearchType", "f", "court_code", "state_code",
             "court_complex_code", "cookiesString"],
        )

    async def test_non_object_body(self) -> None:
        async with self.client.post("/api/case", json=["nope"]) as resp:
            self.assertEqual(resp.status, 400)

    async def test_upstream_failure(self) -> None:
        self.court_app[KNOBS]["case_reply"] = lambda: web.Response(status=500, text="boom")
        async with self.client.post("/api/case", json=SEARCH) as resp:
            self.assertEqual(resp.status, 500)
            body = await resp.json()
        self.assertEqual(body["error"], "Case verification failed")
        self.assertIn("details", body)
        self.assertNotIn("boom", body["details"])


class StubFetcher:
    def __init__(self, reply: UpstreamReply):
        self.reply = reply

    async def initialize(self):
        pass

    async def cleanup(self):
        pass

    async def fetch_captcha_image(self, url, cookie_header, referer, user_agent=None):
        return self.reply


class DefaultImageTypeTest(AioHTTPTestCase):
    async def get_application(self) -> web.Application:
        reply = UpstreamReply(200, b"raw-image", content_type=None)
        return create_app(make_config("http://court.invalid"), fetcher=StubFetcher(reply))

    async def test_missing_content_type_defaults_to_png(self) -> None:
        async with self.client.post("/captcha/highcourt", json={"cookies": {}}) as resp:
            body = await resp.json()
        self.assertTrue(body["captchaImageBase64"].startswith("data:image/png;base64,"))

        async with self.client.post("/captcha/highcourt", json={"cookies": {}, "format": "image"}) as resp:
            self.assertEqual(resp.content_type, "image/png")


class RelayCredentialCheckTest(TestCase):
    def make_server(self) -> RelayServer:
        config = make_config("http://court.invalid")
        config.set("relay.api_key", "secret")
        return RelayServer(config)

    def test_accepted_key(self) -> None:
        response = mock.Mock(status_code=200)
        response.json.return_value = {"requestCount": 10, "requestLimit": 1000}
        with mock.patch("core.relay_server.requests.get", return_value=response) as get:
            self.assertTrue(self.make_server().check_relay_credential())
        self.assertEqual(get.call_args.kwargs["params"], {"api_key": "secret"})

    def test_rejected_key(self) -> None:
        response = mock.Mock(status_code=403, text="invalid key")
        with mock.patch("core.relay_server.requests.get", return_value=response):
            self.assertFalse(self.make_server().check_relay_credential())

    def test_network_failure_is_not_fatal(self) -> None:
        with mock.patch("core.relay_server.requests.get", side_effect=requests.ConnectionError("down")):
            self.assertFalse(self.make_server().check_relay_credential())

    def test_relay_mode_is_fixed_at_construction(self) -> None:
        server = self.make_server()
        server.config.set("relay.api_key", "")
        self.assertTrue(server.settings.relay_enabled)
