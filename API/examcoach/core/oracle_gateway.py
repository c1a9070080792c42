import asyncio
import json
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence

import httpx

from examcoach.core.app_metrics import record_oracle_call
from examcoach.core.errors import ConfigError, UpstreamError
from examcoach.core.logging import DOMAIN_ORACLE, get_domain_logger, log_event
from examcoach.core.settings import settings

logger = get_domain_logger(__name__, DOMAIN_ORACLE)

# (mime type, base64 payload)
InlineImage = tuple[str, str]


def _estimate_tokens(text: str) -> int:
    # Lightweight deterministic estimate used for observability without provider-specific token APIs.
    return max(1, len((text or "").strip()) // 4)


class BaseOracleGateway(ABC):
    """Sends one composed prompt to the text-generation service.

    No automatic retries: every failure surfaces exactly once per call, as
    ConfigError (no credential) or UpstreamError (network, service, timeout).
    """

    provider_name: str

    @property
    def configured(self) -> bool:
        return True

    @abstractmethod
    async def generate(self, prompt: str, *, images: Sequence[InlineImage] = ()) -> str:
        raise NotImplementedError

    @abstractmethod
    def generate_stream(self, prompt: str, *, images: Sequence[InlineImage] = ()) -> AsyncIterator[str]:
        """Finite, non-restartable sequence of text fragments in arrival order."""
        raise NotImplementedError


class GeminiOracleGateway(BaseOracleGateway):
    provider_name = "gemini"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model_name: str | None = None,
        api_base: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = settings.gemini_api_key if api_key is None else api_key
        self.model_name = model_name or settings.llm_model
        self.api_base = (api_base or settings.gemini_api_base).rstrip("/")
        self.timeout_seconds = float(settings.oracle_timeout_seconds if timeout_seconds is None else timeout_seconds)
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool((self.api_key or "").strip())

    def _require_key(self) -> str:
        if not self.configured:
            record_oracle_call(ConfigError.code)
            raise ConfigError()
        return self.api_key.strip()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)

    def _url(self, method: str) -> str:
        return f"{self.api_base}/models/{self.model_name}:{method}"

    def _payload(self, prompt: str, images: Sequence[InlineImage]) -> dict:
        parts: list[dict] = [{"text": prompt}]
        for mime_type, data in images:
            parts.append({"inline_data": {"mime_type": mime_type, "data": data}})
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": settings.oracle_temperature,
                "maxOutputTokens": settings.oracle_max_output_tokens,
            },
        }

    @staticmethod
    def _candidate_text(data: dict) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts if isinstance(p, dict))

    def _log_call(self, mode: str, prompt: str, completion: str, started: float) -> None:
        log_event(
            logger,
            "oracle_call",
            mode=mode,
            provider=self.provider_name,
            model=self.model_name,
            prompt_tokens_estimate=_estimate_tokens(prompt),
            completion_tokens_estimate=_estimate_tokens(completion),
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )

    @staticmethod
    def _upstream(exc: Exception) -> UpstreamError:
        if isinstance(exc, httpx.TimeoutException):
            return UpstreamError("De feedbackservice reageerde niet op tijd. Probeer het opnieuw.", details={"reason": "timeout"})
        if isinstance(exc, httpx.HTTPStatusError):
            return UpstreamError(details={"reason": "http_status", "status": exc.response.status_code})
        return UpstreamError(details={"reason": type(exc).__name__})

    async def _post(self, prompt: str, images: Sequence[InlineImage], api_key: str) -> dict:
        async with self._client() as client:
            response = await client.post(
                self._url("generateContent"),
                json=self._payload(prompt, images),
                headers={"x-goog-api-key": api_key},
            )
            response.raise_for_status()
            return response.json()

    async def generate(self, prompt: str, *, images: Sequence[InlineImage] = ()) -> str:
        api_key = self._require_key()
        started = time.perf_counter()
        try:
            # httpx times each read; the whole call gets the same budget on top.
            data = await asyncio.wait_for(self._post(prompt, images, api_key), self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.warning("Oracle call exceeded %.1fs", self.timeout_seconds)
            record_oracle_call(UpstreamError.code)
            raise self._upstream(httpx.TimeoutException("oracle call exceeded its time budget")) from exc
        except httpx.HTTPError as exc:
            logger.warning("Oracle call failed: %s", exc)
            record_oracle_call(UpstreamError.code)
            raise self._upstream(exc) from exc
        except ValueError as exc:
            record_oracle_call(UpstreamError.code)
            raise UpstreamError(details={"reason": "invalid_json"}) from exc

        text = self._candidate_text(data)
        if not text.strip():
            record_oracle_call(UpstreamError.code)
            reason = (data.get("promptFeedback") or {}).get("blockReason") or "no_candidates"
            raise UpstreamError(details={"reason": reason})
        record_oracle_call()
        self._log_call("generate", prompt, text, started)
        return text

    async def generate_stream(self, prompt: str, *, images: Sequence[InlineImage] = ()) -> AsyncIterator[str]:
        api_key = self._require_key()
        started = time.perf_counter()
        received: list[str] = []
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    self._url("streamGenerateContent"),
                    params={"alt": "sse"},
                    json=self._payload(prompt, images),
                    headers={"x-goog-api-key": api_key},
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        response.raise_for_status()
                    lines = response.aiter_lines()
                    # Only time spent waiting on the service counts against the budget.
                    waited = time.perf_counter() - started
                    while True:
                        mark = time.perf_counter()
                        try:
                            line = await anext(lines)
                        except StopAsyncIteration:
                            break
                        waited += time.perf_counter() - mark
                        if waited > self.timeout_seconds:
                            raise httpx.ReadTimeout("oracle stream exceeded its time budget", request=response.request)
                        if not line.startswith("data:"):
                            continue
                        body = line[len("data:"):].strip()
                        if not body or body == "[DONE]":
                            continue
                        try:
                            chunk = json.loads(body)
                        except ValueError:
                            logger.warning("Skipping unreadable stream event")
                            continue
                        fragment = self._candidate_text(chunk)
                        if fragment:
                            received.append(fragment)
                            yield fragment
        except httpx.HTTPError as exc:
            logger.warning("Oracle stream failed after %d fragments: %s", len(received), exc)
            record_oracle_call(UpstreamError.code)
            raise self._upstream(exc) from exc

        if not received:
            record_oracle_call(UpstreamError.code)
            raise UpstreamError(details={"reason": "empty_stream"})
        record_oracle_call()
        self._log_call("stream", prompt, "".join(received), started)


class NullOracleGateway(BaseOracleGateway):
    provider_name = "none"

    @property
    def configured(self) -> bool:
        return False

    async def generate(self, prompt: str, *, images: Sequence[InlineImage] = ()) -> str:
        raise ConfigError("Er is geen feedbackservice geconfigureerd (LLM_PROVIDER).")

    async def generate_stream(self, prompt: str, *, images: Sequence[InlineImage] = ()) -> AsyncIterator[str]:
        raise ConfigError("Er is geen feedbackservice geconfigureerd (LLM_PROVIDER).")
        yield ""  # pragma: no cover


def get_oracle_gateway() -> BaseOracleGateway:
    provider = (settings.llm_provider or "").lower()
    if provider == "gemini":
        return GeminiOracleGateway()
    return NullOracleGateway()
