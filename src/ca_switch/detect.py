"""Check an OpenAI-compatible endpoint: list its models and time a completion."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from ca_switch.errors import ConfigError, RemoteUnavailable

logger = logging.getLogger(__name__)

MODEL_PROMPT = "Introduce yourself in one sentence."
STREAM_PROMPT = "Say hello"


def build_api_url(base_url: str, path: str) -> str:
    """Join ``path`` onto ``base_url``, adding ``/v1`` unless it is already there."""
    base = base_url.rstrip("/")
    if base.endswith("/v1"):
        return f"{base}{path}"
    return f"{base}/v1{path}"


@dataclass
class Endpoint:
    base_url: str
    api_key: str
    provider: str | None = None


def endpoint_for(settings: dict[str, Any], provider: str | None = None) -> Endpoint:
    """Find the API endpoint an OpenCode profile talks to.

    Profiles either carry ``base_url``/``api_key`` at the top level or
    follow opencode.json and put them under ``provider.<id>.options``
    (``baseURL``/``apiKey``). Without ``provider`` the first one wins.
    """
    if provider is None and settings.get("base_url"):
        return Endpoint(settings["base_url"], str(settings.get("api_key", "")))

    providers = settings.get("provider")
    if not isinstance(providers, dict) or not providers:
        raise ConfigError("Profile has no base_url and no provider with options.baseURL.")
    if provider is None:
        provider = sorted(providers)[0]
    entry = providers.get(provider)
    if not isinstance(entry, dict):
        raise ConfigError(f"Profile has no provider '{provider}'.")
    options = entry.get("options")
    if not isinstance(options, dict):
        options = {}
    base_url = options.get("baseURL") or options.get("base_url")
    if not base_url:
        raise ConfigError(f"Provider '{provider}' has no options.baseURL.")
    return Endpoint(base_url, str(options.get("apiKey") or options.get("api_key") or ""), provider)


def default_model(settings: dict[str, Any], endpoint: Endpoint) -> str | None:
    """The profile's ``model``, minus a ``<provider>/`` prefix for that provider."""
    model = settings.get("model")
    if not isinstance(model, str) or not model:
        return None
    if endpoint.provider and model.startswith(f"{endpoint.provider}/"):
        return model[len(endpoint.provider) + 1:]
    return model


@dataclass
class SiteReport:
    base_url: str
    models: list[str] = field(default_factory=list)
    response_time_ms: float = 0.0


@dataclass
class ModelReport:
    model: str
    first_token_ms: float
    total_ms: float
    tokens_per_second: float | None = None
    stream_available: bool | None = None


class Detector:
    """Runs site and model checks against an OpenAI-compatible API."""

    def __init__(self, timeout: float = 30.0, transport: httpx.BaseTransport | None = None):
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def _send(self, method: str, url: str, api_key: str, **kwargs) -> tuple[httpx.Response, float]:
        """Issue one request and return it with the milliseconds until headers arrived.

        The body is left unread. Transport errors, rejected keys and any
        other non-success status become RemoteUnavailable.
        """
        headers = {"Authorization": f"Bearer {api_key}"}
        logger.debug("%s %s", method, url)
        start = time.perf_counter()
        try:
            request = self._client.build_request(method, url, headers=headers, **kwargs)
            response = self._client.send(request, stream=True)
        except httpx.TransportError as e:
            raise RemoteUnavailable(f"Cannot reach {url}: {e}") from e
        elapsed = (time.perf_counter() - start) * 1000

        if response.status_code in (401, 403):
            response.close()
            raise RemoteUnavailable(f"API key rejected (HTTP {response.status_code}) by {url}")
        if not response.is_success:
            response.close()
            raise RemoteUnavailable(f"{url} returned HTTP {response.status_code}")
        return response, elapsed

    def _read_json(self, response: httpx.Response, url: str) -> Any:
        try:
            response.read()
        except httpx.TransportError as e:
            raise RemoteUnavailable(f"Connection to {url} dropped: {e}") from e
        finally:
            response.close()
        try:
            return response.json()
        except ValueError as e:
            raise RemoteUnavailable(f"{url} did not return JSON: {e}") from e

    def detect_site(self, base_url: str, api_key: str) -> SiteReport:
        """List the models the endpoint offers and how fast it answers."""
        url = build_api_url(base_url, "/models")
        start = time.perf_counter()
        response, _ = self._send("GET", url, api_key)
        body = self._read_json(response, url)
        elapsed = (time.perf_counter() - start) * 1000

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            raise RemoteUnavailable(f"{url} returned no model list")
        models = [item["id"] for item in data if isinstance(item, dict) and isinstance(item.get("id"), str)]
        return SiteReport(base_url=base_url, models=models, response_time_ms=elapsed)

    def detect_model(self, base_url: str, api_key: str, model: str, stream: bool = False) -> ModelReport:
        """Time one short completion; with ``stream`` also check streaming works."""
        url = build_api_url(base_url, "/chat/completions")
        body = {
            "model": model,
            "messages": [{"role": "user", "content": MODEL_PROMPT}],
            "max_tokens": 50,
            "stream": False,
        }
        start = time.perf_counter()
        response, first_token_ms = self._send("POST", url, api_key, json=body)
        completion = self._read_json(response, url)
        total_ms = (time.perf_counter() - start) * 1000

        report = ModelReport(model=model, first_token_ms=first_token_ms, total_ms=total_ms)
        usage = completion.get("usage") if isinstance(completion, dict) else None
        tokens = usage.get("completion_tokens") if isinstance(usage, dict) else None
        if isinstance(tokens, int) and tokens > 0 and total_ms > 0:
            report.tokens_per_second = tokens / (total_ms / 1000)

        if stream:
            report.stream_available = self._stream_works(url, api_key, model)
        return report

    def _stream_works(self, url: str, api_key: str, model: str) -> bool:
        body = {
            "model": model,
            "messages": [{"role": "user", "content": STREAM_PROMPT}],
            "max_tokens": 10,
            "stream": True,
        }
        try:
            response, _ = self._send("POST", url, api_key, json=body)
        except RemoteUnavailable as e:
            logger.debug("Streaming check failed: %s", e)
            return False
        response.close()
        return True

    def close(self) -> None:
        self._client.close()


def format_report(report: SiteReport | ModelReport) -> list[str]:
    """Plain report lines for the CLI."""
    if isinstance(report, SiteReport):
        lines = [f"Response time: {report.response_time_ms:.0f} ms", f"Models: {len(report.models)}"]
        lines += [f"  {i}. {model}" for i, model in enumerate(report.models, 1)]
        return lines
    lines = [
        f"Model: {report.model}",
        f"First byte: {report.first_token_ms:.0f} ms",
        f"Total: {report.total_ms:.0f} ms",
    ]
    if report.tokens_per_second is not None:
        lines.append(f"Speed: {report.tokens_per_second:.1f} tokens/s")
    if report.stream_available is not None:
        lines.append(f"Streaming: {'yes' if report.stream_available else 'no'}")
    return lines

