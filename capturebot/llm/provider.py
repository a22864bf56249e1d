"""
Completion provider interface and implementations.

Provides an abstraction over the text-completion service used for trend
narration and merge advice. ``NoLLMProvider`` stands in when no credential
is configured: callers check ``enabled`` and skip the feature.
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Any, Optional, List

import httpx

from capturebot.core.logging import get_logger
from capturebot.core.settings import Settings, get_settings

logger = get_logger(__name__)

# gpt-4o-mini pricing (per token)
GPT4O_MINI_INPUT_COST = 0.15 / 1_000_000
GPT4O_MINI_OUTPUT_COST = 0.60 / 1_000_000

_CODE_FENCE_RE = re.compile(r'```json\n?|\n?```')


class CompletionError(Exception):
    """Raised when a completion call fails or returns unusable output."""


@dataclass
class CompletionResult:
    """Text returned by the completion service and what it cost."""
    text: str
    cost: float


def calculate_cost(usage: Dict[str, Any]) -> float:
    """Cost in USD of a call given its token usage."""
    return (
        (usage.get('prompt_tokens') or 0) * GPT4O_MINI_INPUT_COST
        + (usage.get('completion_tokens') or 0) * GPT4O_MINI_OUTPUT_COST
    )


def parse_json_response(text: str) -> Any:
    """
    Parse a JSON completion, tolerating markdown code fences.

    Raises:
        CompletionError: if the text is not valid JSON
    """
    try:
        return json.loads(_CODE_FENCE_RE.sub('', text).strip())
    except json.JSONDecodeError as e:
        raise CompletionError(f"Completion was not valid JSON: {e}") from e


def _extract_content(data: Any) -> Optional[str]:
    """Message content of the first choice, or None when the body is malformed."""
    if not isinstance(data, dict):
        return None
    choices = data.get('choices')
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get('message')
    if not isinstance(message, dict):
        return None
    content = message.get('content')
    return content if isinstance(content, str) else None


class CompletionProvider(ABC):
    """Abstract base class for completion providers."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identification name."""

    @property
    def enabled(self) -> bool:
        """Whether the provider can serve completions."""
        return True

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        temperature: float = 0.2,
        max_tokens: int = 500
    ) -> CompletionResult:
        """
        Run a single-prompt completion.

        Raises:
            CompletionError: on transport, HTTP or response-shape failures
        """

    async def aclose(self) -> None:
        """Release provider resources."""


class OpenAICompletionProvider(CompletionProvider):
    """Chat completions against the OpenAI API (or a compatible endpoint)."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip('/')
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self.call_count = 0
        self.total_cost = 0.0

    @property
    def provider_name(self) -> str:
        return "OpenAI"

    async def complete(
        self,
        prompt: str,
        temperature: float = 0.2,
        max_tokens: int = 500
    ) -> CompletionResult:
        self.call_count += 1
        messages: List[Dict[str, str]] = [{"role": "user", "content": prompt}]

        try:
            response = await self.client.post(
                f"{self.base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "model": self.model,
                    "messages": messages,
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                },
            )
        except httpx.HTTPError as e:
            raise CompletionError(f"Completion request failed: {e}") from e

        if response.status_code != 200:
            logger.error(
                f"OpenAI API error: {response.status_code}",
                extra={'status': response.status_code, 'body': response.text[:500]}
            )
            raise CompletionError(f"OpenAI API error: {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise CompletionError("OpenAI returned a non-JSON body") from e

        text = _extract_content(data)
        if not text:
            raise CompletionError("No content in OpenAI response")

        usage = data.get('usage')
        cost = calculate_cost(usage if isinstance(usage, dict) else {})
        self.total_cost += cost
        return CompletionResult(text=text, cost=cost)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class NoLLMProvider(CompletionProvider):
    """
    Provider used when no completion credential is configured.

    Reports itself disabled; calling ``complete`` is a programming error.
    """

    @property
    def provider_name(self) -> str:
        return "NoLLM"

    @property
    def enabled(self) -> bool:
        return False

    async def complete(
        self,
        prompt: str,
        temperature: float = 0.2,
        max_tokens: int = 500
    ) -> CompletionResult:
        raise CompletionError("No completion provider configured")


def get_completion_provider(settings: Optional[Settings] = None) -> CompletionProvider:
    """Create the provider matching the configured credentials."""
    settings = settings or get_settings()
    if not settings.openai_api_key:
        logger.info("OPENAI_API_KEY not configured, completion features disabled")
        return NoLLMProvider()

    return OpenAICompletionProvider(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        base_url=settings.openai_base_url,
        timeout=settings.completion_timeout_seconds,
    )
