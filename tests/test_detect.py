"""Tests for OpenCode endpoint detection."""

import json

import httpx
import pytest

from ca_switch.detect import (
    Detector,
    Endpoint,
    ModelReport,
    SiteReport,
    build_api_url,
    default_model,
    endpoint_for,
    format_report,
)
from ca_switch.errors import ConfigError, RemoteUnavailable


class FakeOpenAIServer:
    """Answers /v1/models and /v1/chat/completions for one API key."""

    def __init__(self, api_key="sk-test", models=("gpt-4o", "o3"), completion_tokens=20, stream_status=200):
        self.api_key = api_key
        self.models = list(models)
        self.completion_tokens = completion_tokens
        self.stream_status = stream_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("Authorization") != f"Bearer {self.api_key}":
            return httpx.Response(401)
        if request.method == "GET" and request.url.path == "/v1/models":
            return httpx.Response(200, json={"data": [{"id": m, "object": "model"} for m in self.models]})
        if request.method == "POST" and request.url.path == "/v1/chat/completions":
            body = json.loads(request.read())
            if body["model"] not in self.models:
                return httpx.Response(404, json={"error": "no such model"})
            if body["stream"]:
                return httpx.Response(self.stream_status, content=b"data: {}\n\ndata: [DONE]\n\n")
            return httpx.Response(
                200,
                json={
                    "choices": [{"message": {"role": "assistant", "content": "Hi."}}],
                    "usage": {"completion_tokens": self.completion_tokens},
                },
            )
        return httpx.Response(404)


def make_detector(handler):
    return Detector(transport=httpx.MockTransport(handler))


@pytest.fixture
def server():
    return FakeOpenAIServer()


class TestBuildApiUrl:
    @pytest.mark.parametrize(
        "base, expected",
        [
            ("https://api.test", "https://api.test/v1/models"),
            ("https://api.test/", "https://api.test/v1/models"),
            ("https://api.test/v1", "https://api.test/v1/models"),
            ("https://api.test/v1/", "https://api.test/v1/models"),
            ("https://relay.test/openai", "https://relay.test/openai/v1/models"),
        ],
    )
    def test_v1_added_once(self, base, expected):
        assert build_api_url(base, "/models") == expected


class TestEndpointFor:
    def test_top_level_keys(self):
        endpoint = endpoint_for({"base_url": "https://api.test", "api_key": "k"})
        assert endpoint == Endpoint("https://api.test", "k")

    def test_provider_options(self):
        settings = {
            "provider": {
                "zeta": {"options": {"baseURL": "https://z.test", "apiKey": "kz"}},
                "alpha": {"options": {"baseURL": "https://a.test", "apiKey": "ka"}},
            }
        }
        assert endpoint_for(settings) == Endpoint("https://a.test", "ka", "alpha")
        assert endpoint_for(settings, "zeta") == Endpoint("https://z.test", "kz", "zeta")

    def test_unknown_provider(self):
        with pytest.raises(ConfigError):
            endpoint_for({"provider": {"a": {"options": {"baseURL": "https://a.test"}}}}, "b")

    def test_missing_base_url(self):
        with pytest.raises(ConfigError):
            endpoint_for({"model": "x"})
        with pytest.raises(ConfigError):
            endpoint_for({"provider": {"a": {"options": {"apiKey": "k"}}}})

    def test_default_model_strips_provider_prefix(self):
        endpoint = Endpoint("https://a.test", "k", "relay")
        assert default_model({"model": "relay/gpt-4o"}, endpoint) == "gpt-4o"
        assert default_model({"model": "other/gpt-4o"}, endpoint) == "other/gpt-4o"
        assert default_model({}, endpoint) is None


class TestDetectSite:
    def test_lists_models(self, server):
        report = make_detector(server).detect_site("https://api.test", "sk-test")
        assert report.models == ["gpt-4o", "o3"]
        assert report.response_time_ms >= 0
        assert server.requests[0].url == "https://api.test/v1/models"
        assert server.requests[0].headers["Authorization"] == "Bearer sk-test"

    def test_rejected_key(self, server):
        with pytest.raises(RemoteUnavailable, match="API key rejected"):
            make_detector(server).detect_site("https://api.test", "wrong")

    def test_server_error(self):
        detector = make_detector(lambda request: httpx.Response(502))
        with pytest.raises(RemoteUnavailable, match="HTTP 502"):
            detector.detect_site("https://api.test", "k")

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(RemoteUnavailable, match="Cannot reach"):
            make_detector(handler).detect_site("https://api.test", "k")

    def test_not_json(self):
        detector = make_detector(lambda request: httpx.Response(200, content=b"<html>"))
        with pytest.raises(RemoteUnavailable, match="did not return JSON"):
            detector.detect_site("https://api.test", "k")

    def test_no_model_list(self):
        detector = make_detector(lambda request: httpx.Response(200, json={"object": "list"}))
        with pytest.raises(RemoteUnavailable, match="no model list"):
            detector.detect_site("https://api.test", "k")


class TestDetectModel:
    def test_completion_timing(self, server):
        report = make_detector(server).detect_model("https://api.test/v1", "sk-test", "gpt-4o")
        assert report.model == "gpt-4o"
        assert 0 <= report.first_token_ms <= report.total_ms
        assert report.tokens_per_second is not None and report.tokens_per_second > 0
        assert report.stream_available is None
        body = json.loads(server.requests[0].read())
        assert body["max_tokens"] == 50
        assert body["stream"] is False
        assert len(server.requests) == 1

    def test_no_usage_means_no_speed(self):
        server = FakeOpenAIServer(completion_tokens=0)
        report = make_detector(server).detect_model("https://api.test", "sk-test", "o3")
        assert report.tokens_per_second is None

    def test_unknown_model(self, server):
        with pytest.raises(RemoteUnavailable, match="HTTP 404"):
            make_detector(server).detect_model("https://api.test", "sk-test", "missing")

    def test_stream_check(self, server):
        report = make_detector(server).detect_model("https://api.test", "sk-test", "o3", stream=True)
        assert report.stream_available is True
        body = json.loads(server.requests[1].read())
        assert body["stream"] is True
        assert body["max_tokens"] == 10

    def test_stream_failure_is_reported_not_raised(self):
        server = FakeOpenAIServer(stream_status=400)
        report = make_detector(server).detect_model("https://api.test", "sk-test", "o3", stream=True)
        assert report.stream_available is False


class TestFormatReport:
    def test_site(self):
        lines = format_report(SiteReport("https://api.test", ["a", "b"], 12.4))
        assert lines == ["Response time: 12 ms", "Models: 2", "  1. a", "  2. b"]

    def test_model(self):
        lines = format_report(ModelReport("o3", 100.0, 2000.0, 10.0, False))
        assert "Speed: 10.0 tokens/s" in lines
        assert "Streaming: no" in lines
