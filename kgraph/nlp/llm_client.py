"""LLM collaborator: the completion protocol, an OpenAI-compatible HTTP client and provider lookup."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Protocol

import requests

from ..errors import ConfigurationError, NotFoundError, ParseError
from ..utils.logging import get_logger

LOGGER = get_logger(__name__)


class LLMClient(Protocol):
    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        json_schema: Optional[Dict[str, Any]],
        temperature: float,
    ) -> str: ...


@dataclass(slots=True)
class ProviderConfig:
    id: str
    base_url: str
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None
    timeout: float = 120
    headers: Dict[str, str] = field(default_factory=dict)

    def resolve_api_key(self) -> Optional[str]:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.getenv(self.api_key_env)
        return None


class ChatCompletionClient:
    """Posts to ``{base_url}/chat/completions`` and returns the first choice's text."""

    def __init__(
        self,
        provider: ProviderConfig,
        model: str,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.provider = provider
        self.model = model
        self._session = session or requests.Session()

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        json_schema: Optional[Dict[str, Any]],
        temperature: float,
    ) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
        }
        if json_schema:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "graph_extraction", "schema": json_schema},
            }
        headers = {"Content-Type": "application/json", **self.provider.headers}
        api_key = self.provider.resolve_api_key()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        url = self.provider.base_url.rstrip("/") + "/chat/completions"
        LOGGER.debug("Calling %s with model %s", url, self.model)
        response = self._session.post(url, json=payload, headers=headers, timeout=self.provider.timeout)
        response.raise_for_status()
        data = response.json()
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ParseError("LLM response has no message content") from exc
        if not isinstance(content, str) or not content.strip():
            raise ParseError("LLM response content is empty")
        return content


ClientFactory = Callable[[str], LLMClient]


class ProviderRegistry:
    """Resolves provider ids to LLM clients."""

    def __init__(
        self,
        providers: Iterable[ProviderConfig] = (),
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        self._session_factory = session_factory
        self._factories: Dict[str, ClientFactory] = {}
        for provider in providers:
            self.register(provider)

    @classmethod
    def from_config(
        cls,
        providers: Mapping[str, Mapping[str, Any]],
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> "ProviderRegistry":
        configs = []
        for provider_id, entry in (providers or {}).items():
            if not entry.get("base_url"):
                raise ConfigurationError(f"Provider {provider_id!r} has no base_url")
            configs.append(
                ProviderConfig(
                    id=provider_id,
                    base_url=entry["base_url"],
                    api_key=entry.get("api_key"),
                    api_key_env=entry.get("api_key_env"),
                    timeout=float(entry.get("timeout", 120)),
                    headers=dict(entry.get("headers") or {}),
                )
            )
        return cls(configs, session_factory=session_factory)

    def register(self, provider: ProviderConfig) -> None:
        def _factory(model: str) -> LLMClient:
            return ChatCompletionClient(provider, model, session=self._session_factory())

        self._factories[provider.id] = _factory

    def register_factory(self, provider_id: str, factory: ClientFactory) -> None:
        self._factories[provider_id] = factory

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._factories

    def create_client(self, provider_id: str, model: str) -> LLMClient:
        factory = self._factories.get(provider_id)
        if factory is None:
            raise NotFoundError("provider", provider_id)
        return factory(model)
