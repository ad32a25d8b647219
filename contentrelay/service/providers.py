from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from contentrelay.config import ProviderProfile, Settings, get_provider_profile
from contentrelay.logging import get_logger, sanitize_error_message
from contentrelay.service.errors import ProviderError

logger = get_logger(__name__)

GROQ_API_BASE = "https://api.groq.com/openai/v1"
OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

COMPLETE_MAX_TOKENS = 1000
STREAM_MAX_TOKENS = 2048
DEFAULT_TEMPERATURE = 0.7

ChatMessage = Dict[str, str]


class LLMProvider(ABC):
    """HTTP client for one generation provider.

    ``complete`` returns the whole reply; ``stream`` yields decoded text
    chunks as they arrive. Both raise ``ProviderError`` for every failure.
    """

    def __init__(
        self,
        name: str,
        api_key: Optional[str],
        *,
        profile: Optional[ProviderProfile] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.name = name
        self.api_key = api_key
        self.profile = profile or get_provider_profile(name)
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    @property
    def default_model(self) -> str:
        return self.profile.default_model

    @property
    def models(self) -> Tuple[str, ...]:
        return self.profile.models

    def supports_model(self, model: Optional[str]) -> bool:
        return self.profile.supports_model(model)

    def resolve_model(self, model: Optional[str]) -> str:
        """The requested model if this provider serves it, else the provider default."""
        if model and self.supports_model(model):
            return model
        if model:
            logger.info(
                "provider_model_substituted",
                provider=self.name,
                requested=model,
                model=self.default_model,
            )
        return self.default_model

    def _headers(self) -> Dict[str, str]:
        return {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers=self._headers(),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _error(self, message: str, *, status_code: Optional[int] = None, body: Any = None) -> ProviderError:
        return ProviderError(
            message,
            provider=self.name,
            status_code=status_code,
            detail={"body": sanitize_error_message(str(body))} if body else None,
        )

    def _translate(self, exc: httpx.HTTPError, operation: str) -> ProviderError:
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            logger.error(
                f"provider_{operation}_api_error",
                provider=self.name,
                status_code=status,
            )
            return self._error(f"{self.name} returned HTTP {status}", status_code=status)
        if isinstance(exc, httpx.TimeoutException):
            logger.error(f"provider_{operation}_timeout", provider=self.name, timeout=self.timeout)
            return self._error(f"{self.name} timed out")
        logger.error(
            f"provider_{operation}_connect_error",
            provider=self.name,
            error_type=type(exc).__name__,
        )
        return self._error(f"failed to reach {self.name}")

    @abstractmethod
    def _complete_request(
        self, messages: List[ChatMessage], model: str, max_tokens: int, temperature: float
    ) -> Tuple[str, Dict[str, Any]]:
        """URL and JSON body for a non-streaming call."""

    @abstractmethod
    def _stream_request(
        self, messages: List[ChatMessage], model: str, max_tokens: int, temperature: float
    ) -> Tuple[str, Dict[str, Any]]:
        """URL and JSON body for a streaming call."""

    @abstractmethod
    def _extract_completion(self, data: Dict[str, Any]) -> str:
        ...

    @abstractmethod
    def _parse_stream_data(self, data: str) -> Tuple[bool, Optional[str]]:
        """Decode one SSE ``data:`` payload into ``(done, text)``."""

    async def complete(
        self,
        messages: List[ChatMessage],
        *,
        model: Optional[str] = None,
        max_tokens: int = COMPLETE_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> str:
        if not self.is_configured:
            raise self._error(f"{self.name} is not configured")
        resolved = self.resolve_model(model)
        url, body = self._complete_request(messages, resolved, max_tokens, temperature)
        try:
            client = await self._get_client()
            response = await client.post(url, json=body)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise self._translate(exc, "complete") from exc
        except ValueError as exc:
            raise self._error(f"{self.name} returned malformed JSON") from exc
        try:
            text = self._extract_completion(data)
        except (AttributeError, TypeError, KeyError, IndexError) as exc:
            logger.error("provider_complete_unexpected_shape", provider=self.name, error_type=type(exc).__name__)
            raise self._error(f"{self.name} returned an unexpected response shape") from exc
        if not isinstance(text, str) or not text:
            raise self._error(f"{self.name} returned an empty completion")
        logger.info("provider_complete_success", provider=self.name, model=resolved, chars=len(text))
        return text

    async def stream(
        self,
        messages: List[ChatMessage],
        *,
        model: Optional[str] = None,
        max_tokens: int = STREAM_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> AsyncIterator[str]:
        if not self.is_configured:
            raise self._error(f"{self.name} is not configured")
        resolved = self.resolve_model(model)
        url, body = self._stream_request(messages, resolved, max_tokens, temperature)
        try:
            client = await self._get_client()
            async with client.stream("POST", url, json=body) as response:
                if response.status_code >= 400:
                    error_body = await response.aread()
                    logger.error(
                        "provider_stream_api_error",
                        provider=self.name,
                        status_code=response.status_code,
                    )
                    raise self._error(
                        f"{self.name} returned HTTP {response.status_code}",
                        status_code=response.status_code,
                        body=error_body[:500].decode("utf-8", errors="replace"),
                    )
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    try:
                        done, text = self._parse_stream_data(line[len("data:"):].strip())
                    except (AttributeError, TypeError, KeyError, IndexError) as exc:
                        raise self._error(f"{self.name} stream frame has an unexpected shape") from exc
                    if isinstance(text, str) and text:
                        yield text
                    if done:
                        break
        except httpx.HTTPError as exc:
            raise self._translate(exc, "stream") from exc


class OpenAICompatibleProvider(LLMProvider):
    """Chat-completions style APIs (Groq, OpenRouter)."""

    def __init__(
        self,
        name: str,
        api_key: Optional[str],
        *,
        base_url: str,
        extra_headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(name, api_key, **kwargs)
        self.base_url = base_url.rstrip("/")
        self.extra_headers = dict(extra_headers or {})

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", **self.extra_headers}

    def _body(self, messages, model, max_tokens, temperature, *, stream: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if stream:
            body["stream"] = True
        return body

    def _complete_request(self, messages, model, max_tokens, temperature):
        return (
            f"{self.base_url}/chat/completions",
            self._body(messages, model, max_tokens, temperature, stream=False),
        )

    def _stream_request(self, messages, model, max_tokens, temperature):
        return (
            f"{self.base_url}/chat/completions",
            self._body(messages, model, max_tokens, temperature, stream=True),
        )

    def _extract_completion(self, data: Dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        return message.get("content") or ""

    def _parse_stream_data(self, data: str) -> Tuple[bool, Optional[str]]:
        if data == "[DONE]":
            return True, None
        try:
            payload = json.loads(data)
        except ValueError:
            return False, None
        if not isinstance(payload, dict):
            return False, None
        if payload.get("error"):
            raise self._error(f"{self.name} stream reported an error", body=payload["error"])
        choices = payload.get("choices") or []
        if not choices:
            return False, None
        delta = choices[0].get("delta") or {}
        return False, delta.get("content")


class GeminiProvider(LLMProvider):
    """Google Generative Language API (``generateContent`` / ``streamGenerateContent``)."""

    def __init__(self, api_key: Optional[str], *, base_url: str = GEMINI_API_BASE, **kwargs: Any) -> None:
        super().__init__("gemini", api_key, **kwargs)
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key or ""}

    @staticmethod
    def format_messages(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
        """Map chat messages onto Gemini ``contents``.

        Gemini has no system role: the system text is folded into the first
        user turn, and ``assistant`` becomes ``model``.
        """

        system_text = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
        contents: List[Dict[str, Any]] = []
        for message in messages:
            role = message.get("role")
            if role == "system":
                continue
            text = message.get("content", "")
            if role == "user" and system_text and not contents:
                text = f"{system_text}\n\nUser Query: {text}"
            contents.append(
                {
                    "role": "model" if role == "assistant" else "user",
                    "parts": [{"text": text}],
                }
            )
        if system_text and not any(c["role"] == "user" for c in contents):
            contents.insert(0, {"role": "user", "parts": [{"text": system_text}]})
        return contents

    def _body(self, messages, max_tokens, temperature) -> Dict[str, Any]:
        return {
            "contents": self.format_messages(messages),
            "generationConfig": {"maxOutputTokens": max_tokens, "temperature": temperature},
        }

    def _complete_request(self, messages, model, max_tokens, temperature):
        return (
            f"{self.base_url}/models/{model}:generateContent",
            self._body(messages, max_tokens, temperature),
        )

    def _stream_request(self, messages, model, max_tokens, temperature):
        return (
            f"{self.base_url}/models/{model}:streamGenerateContent?alt=sse",
            self._body(messages, max_tokens, temperature),
        )

    @staticmethod
    def _candidate_text(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))

    def _extract_completion(self, data: Dict[str, Any]) -> str:
        return self._candidate_text(data)

    def _parse_stream_data(self, data: str) -> Tuple[bool, Optional[str]]:
        try:
            payload = json.loads(data)
        except ValueError:
            return False, None
        if not isinstance(payload, dict):
            return False, None
        if payload.get("error"):
            raise self._error("gemini stream reported an error", body=payload["error"])
        return False, self._candidate_text(payload) or None


def build_providers(
    settings: Settings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, LLMProvider]:
    """One client per known provider; unconfigured ones report ``is_configured=False``."""

    timeout = settings.provider_timeout_seconds
    return {
        "groq": OpenAICompatibleProvider(
            "groq",
            settings.groq_api_key,
            base_url=GROQ_API_BASE,
            timeout=timeout,
            transport=transport,
        ),
        "gemini": GeminiProvider(settings.gemini_api_key, timeout=timeout, transport=transport),
        "openrouter": OpenAICompatibleProvider(
            "openrouter",
            settings.openrouter_api_key,
            base_url=OPENROUTER_API_BASE,
            extra_headers={
                "HTTP-Referer": settings.openrouter_site_url,
                "X-Title": settings.openrouter_site_name,
            },
            timeout=timeout,
            transport=transport,
        ),
    }
