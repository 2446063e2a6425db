"""Language-model clients used by prompt steps."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import requests

from ..core.exceptions import StepExecutionError
from ..core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Completion:
    """Text produced by a model together with its token usage."""
    text: str
    tokens_used: int = 0
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None

    @property
    def split_known(self) -> bool:
        return self.input_tokens is not None and self.output_tokens is not None


class LanguageModelClient(ABC):
    """Anything that turns a prompt into a completion."""

    @abstractmethod
    def complete(self, prompt: str, max_tokens: int, model: str) -> Completion:
        """Generate text for a prompt.

        Raises:
            StepExecutionError: If the backend rejects the request or is unreachable
        """


class OpenAICompatibleClient(LanguageModelClient):
    """Client for any backend exposing the OpenAI ``/chat/completions`` API (OpenAI, Groq)."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 120.0,
                 session: Optional[requests.Session] = None, provider: str = "openai"):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()
        self.provider = provider

    def complete(self, prompt: str, max_tokens: int, model: str) -> Completion:
        if not self.api_key:
            raise StepExecutionError(f"No API key configured for provider '{self.provider}'")

        payload = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            response = self.session.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=headers,
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise StepExecutionError(f"{self.provider} request failed: {e}")

        if not response.ok:
            raise StepExecutionError(
                f"{self.provider} returned HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            body = response.json()
            text = body["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise StepExecutionError(f"Malformed {self.provider} response: {e}")

        usage = body.get("usage") or {}
        input_tokens = usage.get("prompt_tokens")
        output_tokens = usage.get("completion_tokens")
        total = usage.get("total_tokens")
        if total is None:
            total = (input_tokens or 0) + (output_tokens or 0)

        logger.debug(f"{self.provider} completion for {model}: {total} tokens")
        return Completion(
            text=text,
            tokens_used=int(total),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


class ModelRouter(LanguageModelClient):
    """Dispatches each request to a client chosen by model-name prefix."""

    def __init__(self, default: LanguageModelClient,
                 routes: Optional[List[Tuple[str, LanguageModelClient]]] = None):
        self.default = default
        self.routes = list(routes or [])

    def client_for(self, model: str) -> LanguageModelClient:
        for prefix, client in self.routes:
            if model.startswith(prefix):
                return client
        return self.default

    def complete(self, prompt: str, max_tokens: int, model: str) -> Completion:
        return self.client_for(model).complete(prompt, max_tokens, model)


def build_model_router(config: Any) -> ModelRouter:
    """``gpt*`` models go to OpenAI, everything else to Groq."""
    openai_client = OpenAICompatibleClient(
        config.openai_base_url, config.openai_api_key, timeout=config.llm_timeout, provider="openai"
    )
    groq_client = OpenAICompatibleClient(
        config.groq_base_url, config.groq_api_key, timeout=config.llm_timeout, provider="groq"
    )
    return ModelRouter(default=groq_client, routes=[("gpt", openai_client)])

