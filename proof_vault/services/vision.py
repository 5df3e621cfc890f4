"""
Vision backends that turn image bytes into a natural-language description.

Backends are registered in a ``ProviderRegistry`` under one or more selector
strings (``openai``, ``gpt-4o-mini``, ``grok`` ...). The proof engine only ever
talks to the registry, so adding a backend means registering another
``DescriptionProvider``.
"""

import base64
import structlog
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Tuple

import requests

from proof_vault.config import Settings
from proof_vault.core.errors import ProviderFailure, UnsupportedProviderError
from proof_vault.core.utils import detect_mime_type, format_file_size
from proof_vault.models.proof import Description

logger = structlog.get_logger()


def normalize_selector(selector: Optional[str]) -> str:
    return (selector or "").strip().lower()


class DescriptionProvider(ABC):
    """A single vision backend."""

    name: str = "unknown"
    selectors: Tuple[str, ...] = ()

    @abstractmethod
    def describe(self, data: bytes) -> Description:
        """Describe ``data``; raise ProviderFailure on any backend problem."""


class ChatCompletionVisionProvider(DescriptionProvider):
    """Backend speaking the OpenAI-compatible chat completions API."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str,
        prompt: str,
        timeout: float = 60.0,
        max_tokens: int = 300,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.prompt = prompt
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.session = session or requests.Session()

    def _build_payload(self, data: bytes) -> dict:
        mime_type = detect_mime_type(data)
        encoded = base64.b64encode(data).decode("ascii")
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": self.prompt},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{mime_type};base64,{encoded}"},
                        },
                    ],
                }
            ],
        }

    def describe(self, data: bytes) -> Description:
        if not self.api_key:
            raise ProviderFailure(self.name, "API key is not configured")

        url = f"{self.base_url}/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}"}

        logger.info("Requesting image description",
                    provider=self.name, model=self.model,
                    image_size=format_file_size(len(data)))

        try:
            response = self.session.post(
                url, json=self._build_payload(data), headers=headers, timeout=self.timeout
            )
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            status_code = getattr(e.response, "status_code", None)
            logger.error("Vision backend returned an error",
                         provider=self.name, status_code=status_code)
            raise ProviderFailure(self.name, f"HTTP {status_code}") from e
        except requests.exceptions.RequestException as e:
            logger.error("Vision backend request failed", provider=self.name, error=str(e))
            raise ProviderFailure(self.name, e) from e

        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error("Malformed vision backend response", provider=self.name, error=str(e))
            raise ProviderFailure(self.name, f"malformed response: {e}") from e

        if not isinstance(content, str) or not content.strip():
            raise ProviderFailure(self.name, "empty description")

        model = body.get("model") or self.model
        logger.info("Image description received", provider=self.name, model=model)
        return Description(description=content.strip(), model=model)


class OpenAIVisionProvider(ChatCompletionVisionProvider):
    name = "openai"
    selectors = ("openai", "gpt-4o-mini")


class GrokVisionProvider(ChatCompletionVisionProvider):
    name = "grok"
    selectors = ("grok", "grok-2-vision")


class MockVisionProvider(DescriptionProvider):
    """Offline backend for development; output depends only on the bytes."""

    name = "mock"
    selectors = ("mock", "mock-vision-1")
    model = "mock-vision-1"

    def describe(self, data: bytes) -> Description:
        mime_type = detect_mime_type(data)
        description = f"A {mime_type} image of {format_file_size(len(data))}."
        return Description(description=description, model=self.model)


class ProviderRegistry:
    """Dispatch table from selector string to provider."""

    def __init__(self, providers: Iterable[DescriptionProvider] = ()):
        self._providers: Dict[str, DescriptionProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: DescriptionProvider) -> None:
        for selector in (provider.name,) + tuple(provider.selectors):
            self._providers[normalize_selector(selector)] = provider

    def resolve(self, selector: Optional[str]) -> DescriptionProvider:
        provider = self._providers.get(normalize_selector(selector))
        if provider is None:
            raise UnsupportedProviderError(selector)
        return provider

    def describe(self, data: bytes, selector: Optional[str]) -> Description:
        provider = self.resolve(selector)
        try:
            return provider.describe(data)
        except ProviderFailure:
            raise
        except Exception as e:
            logger.error("Vision provider raised unexpectedly",
                         provider=provider.name, error=str(e), exc_info=True)
            raise ProviderFailure(provider.name, e) from e

    def names(self) -> List[str]:
        return sorted({provider.name for provider in self._providers.values()})

    def __contains__(self, selector) -> bool:
        return normalize_selector(selector) in self._providers


def build_provider_registry(settings: Settings, session: Optional[requests.Session] = None) -> ProviderRegistry:
    """Register every backend known to this service."""
    session = session or requests.Session()
    return ProviderRegistry([
        OpenAIVisionProvider(
            api_key=settings.OPENAI_API_KEY,
            model=settings.OPENAI_MODEL,
            base_url=settings.OPENAI_BASE_URL,
            prompt=settings.VISION_PROMPT,
            timeout=settings.PROVIDER_TIMEOUT,
            session=session,
        ),
        GrokVisionProvider(
            api_key=settings.XAI_API_KEY,
            model=settings.GROK_MODEL,
            base_url=settings.GROK_BASE_URL,
            prompt=settings.VISION_PROMPT,
            timeout=settings.PROVIDER_TIMEOUT,
            session=session,
        ),
        MockVisionProvider(),
    ])
