"""Tests for the broker-authenticated fetcher."""

import asyncio
import json
from datetime import date, timedelta

import httpx
import pytest

from metriq.connectors.fetcher import IntegrationFetcher, resolve_body, resolve_endpoint
from metriq.core.errors import FetchFailure


def _fetcher(handler, **kwargs):
    kwargs.setdefault("secret_key", "sk-test")
    return IntegrationFetcher(
        base_url="https://broker.test/",
        transport=httpx.MockTransport(handler),
        retry_base_delay=0,
        stats_retry_delays=(0, 0, 0),
        **kwargs,
    )


def _fetch(fetcher, *args, **kwargs):
    async def go():
        try:
            return await fetcher.fetch(*args, **kwargs)
        finally:
            await fetcher.close()

    return asyncio.run(go())


class TestPlaceholders:
    def test_params_substituted(self):
        assert resolve_endpoint("/repos/{OWNER}/{REPO}", {"OWNER": "a", "REPO": "b"}) == "/repos/a/b"

    def test_date_tokens(self):
        resolved = resolve_endpoint("?startDate=28daysAgo&endDate=today")
        start = (date.today() - timedelta(days=28)).isoformat()
        assert resolved == f"?startDate={start}&endDate={date.today().isoformat()}"

    def test_body_parsed_after_substitution(self):
        body = resolve_body('{"event": "{EVENT_NAME}"}', {"EVENT_NAME": "signup"})
        assert body == {"event": "signup"}

    def test_non_json_body_kept(self):
        assert resolve_body("plain {X}", {"X": "y"}) == "plain y"


class TestProxyFetch:
    def test_proxy_url_and_headers(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"stargazers_count": 7})

        response = _fetch(
            _fetcher(handler), "github", "conn-1", "/repos/{OWNER}/{REPO}", params={"OWNER": "o", "REPO": "r"}
        )

        assert response.data == {"stargazers_count": 7}
        request = seen[0]
        assert str(request.url) == "https://broker.test/proxy/repos/o/r"
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert request.headers["Connection-Id"] == "conn-1"
        assert request.headers["Provider-Config-Key"] == "github"

    def test_post_body_sent_as_json(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"results": []})

        _fetch(
            _fetcher(handler),
            "posthog",
            "conn-1",
            "/api/projects/{PROJECT_ID}/query/",
            method="post",
            params={"PROJECT_ID": "9", "EVENT_NAME": "signup"},
            body='{"query": "{EVENT_NAME}"}',
        )
        assert seen == [{"query": "signup"}]

    def test_server_errors_retried(self):
        statuses = iter([500, 503, 200])

        def handler(request):
            return httpx.Response(next(statuses), json={"ok": True})

        assert _fetch(_fetcher(handler), "github", "c", "/user").data == {"ok": True}

    def test_rate_limit_retried(self):
        statuses = iter([429, 200])

        def handler(request):
            return httpx.Response(next(statuses), json={"ok": True})

        assert _fetch(_fetcher(handler), "github", "c", "/user").status == 200

    def test_client_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, json={"error": {"message": "Bad credentials"}})

        with pytest.raises(FetchFailure) as exc:
            _fetch(_fetcher(handler), "github", "c", "/user")
        assert exc.value.message == "Bad credentials"
        assert exc.value.status_code == 401
        assert len(calls) == 1

    def test_connection_errors_exhaust_retries(self):
        def handler(request):
            raise httpx.ConnectError("boom", request=request)

        with pytest.raises(FetchFailure, match="Connection failed after 3 retries"):
            _fetch(_fetcher(handler, max_retries=3), "github", "c", "/user")

    def test_missing_secret_key(self):
        with pytest.raises(FetchFailure, match="secret key not configured"):
            _fetch(_fetcher(lambda r: httpx.Response(200), secret_key=""), "github", "c", "/user")

    def test_github_stats_202_retried(self):
        responses = iter([httpx.Response(202), httpx.Response(200, json=[{"week": 1, "total": 3}])])

        def handler(request):
            return next(responses)

        response = _fetch(_fetcher(handler), "github", "c", "/repos/o/r/stats/commit_activity")
        assert response.data == [{"week": 1, "total": 3}]


class TestDirectFetch:
    def test_full_url_uses_access_token(self):
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.host == "broker.test":
                return httpx.Response(200, json={"credentials": {"access_token": "tok-1"}})
            return httpx.Response(200, json={"rows": []})

        response = _fetch(
            _fetcher(handler),
            "youtube",
            "conn-9",
            "https://youtubeanalytics.googleapis.com/v2/reports?startDate=28daysAgo&filters=video=={VIDEO_ID}",
            params={"VIDEO_ID": "abc"},
        )

        assert response.data == {"rows": []}
        token_request, api_request = seen
        assert token_request.url.path == "/connection/conn-9"
        assert token_request.url.params["provider_config_key"] == "youtube"
        assert api_request.headers["Authorization"] == "Bearer tok-1"
        assert "28daysAgo" not in str(api_request.url)
        assert "abc" in str(api_request.url)

    def test_missing_token(self):
        def handler(request):
            return httpx.Response(200, json={"credentials": {}})

        with pytest.raises(FetchFailure, match="access token"):
            _fetch(_fetcher(handler), "youtube", "c", "https://example.test/x")
