from __future__ import annotations

from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional

from contentrelay.config import PROVIDER_PRIORITY, ProviderProfile, get_provider_profile
from contentrelay.logging import get_logger, sanitize_error_message
from contentrelay.service.errors import GENERATION_FAILED_MESSAGE, ProviderError
from contentrelay.service.providers import ChatMessage, LLMProvider

logger = get_logger(__name__)


class LLMService:
    """Routes generation across interchangeable providers with failover.

    Streaming tries the preferred provider, then every other configured
    provider in priority order. If no stream produced output, exactly one
    non-streaming call is made on the preferred provider; if that fails too
    the caller receives the fixed apology instead of an error.
    """

    def __init__(
        self,
        providers: Mapping[str, LLMProvider],
        *,
        priority: Iterable[str] = PROVIDER_PRIORITY,
        default_provider: str = "groq",
        selection_provider: str = "groq",
        selection_model: Optional[str] = None,
    ) -> None:
        self.providers: Dict[str, LLMProvider] = dict(providers)
        self.priority = list(priority)
        self.default_provider = default_provider
        self.selection_provider = selection_provider
        self.selection_model = selection_model

    def configured_providers(self) -> List[str]:
        ranked = [name for name in self.priority if name in self.providers]
        ranked += [name for name in self.providers if name not in ranked]
        return [name for name in ranked if self.providers[name].is_configured]

    def fallback_order(self, preferred: Optional[str] = None) -> List[str]:
        configured = self.configured_providers()
        head = (preferred or self.default_provider or "").lower()
        if head in configured:
            return [head] + [name for name in configured if name != head]
        if preferred:
            logger.warning("preferred_provider_unavailable", provider=preferred)
        return configured

    def profile(self, provider: Optional[str]) -> ProviderProfile:
        name = (provider or self.default_provider or "").lower()
        if name in self.providers:
            return self.providers[name].profile
        return get_provider_profile(name)

    def context_budget(self, provider: Optional[str]) -> int:
        return self.profile(provider).context_token_budget

    def resolve_provider(self, provider: Optional[str]) -> Optional[str]:
        """Provider a generation request will start with, after availability checks."""
        order = self.fallback_order(provider)
        return order[0] if order else None

    def available_providers(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": name,
                "default_model": self.providers[name].default_model,
                "models": list(self.providers[name].models),
                "streaming": self.providers[name].profile.supports_streaming,
            }
            for name in self.configured_providers()
        ]

    async def check_providers(self) -> Dict[str, bool]:
        """Ping every configured provider with a tiny completion."""
        status: Dict[str, bool] = {}
        ping = [{"role": "user", "content": "Reply with OK."}]
        for name in self.configured_providers():
            try:
                await self.providers[name].complete(ping, max_tokens=5, temperature=0.0)
                status[name] = True
            except ProviderError as exc:
                logger.warning(
                    "provider_check_failed",
                    provider=name,
                    status_code=exc.status_code,
                    error=exc.message,
                )
                status[name] = False
        return status

    async def complete(
        self,
        messages: List[ChatMessage],
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Single non-streaming call on one provider; raises ``ProviderError``."""

        name = (provider or self.default_provider or "").lower()
        client = self.providers.get(name)
        if client is None or not client.is_configured:
            raise ProviderError(f"provider {name!r} is not configured", provider=name)
        kwargs: Dict[str, Any] = {"model": model}
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if temperature is not None:
            kwargs["temperature"] = temperature
        return await client.complete(messages, **kwargs)

    async def complete_for_selection(self, messages: List[ChatMessage]) -> str:
        return await self.complete(
            messages,
            provider=self.selection_provider,
            model=self.selection_model,
            temperature=0.0,
        )

    async def stream_with_fallback(
        self,
        messages: List[ChatMessage],
        *,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> AsyncIterator[str]:
        order = self.fallback_order(provider)
        if not order:
            logger.error("no_providers_configured")
            yield GENERATION_FAILED_MESSAGE
            return

        for name in order:
            emitted = False
            try:
                async for chunk in self.providers[name].stream(messages, model=model):
                    emitted = True
                    yield chunk
            except Exception as exc:
                error = exc.message if isinstance(exc, ProviderError) else str(exc)
                if emitted:
                    # Partial answer already delivered; do not splice another provider's text in
                    logger.error(
                        "provider_stream_interrupted",
                        provider=name,
                        error_type=type(exc).__name__,
                        error=sanitize_error_message(error),
                    )
                    return
                logger.warning(
                    "provider_stream_failed",
                    provider=name,
                    error_type=type(exc).__name__,
                    error=sanitize_error_message(error),
                )
                continue
            if emitted:
                logger.info("provider_stream_completed", provider=name)
                return
            logger.warning("provider_stream_empty", provider=name)

        preferred = order[0]
        try:
            text = await self.providers[preferred].complete(messages, model=model)
        except Exception as exc:
            logger.error(
                "provider_complete_fallback_failed",
                provider=preferred,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            yield GENERATION_FAILED_MESSAGE
            return
        logger.info("provider_complete_fallback_used", provider=preferred)
        yield text

    async def close(self) -> None:
        for client in self.providers.values():
            await client.close()
