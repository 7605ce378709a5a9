"""
Remote LLM providers for EchoVault.

Thin adapters over vendor SDKs exposing one chat call and one batch
embedding call. Failures surface as RemoteCallError carrying the vendor
message. Nothing here retries.
"""

import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence


class RemoteCallError(Exception):
    """Raised when a remote model call fails."""

    def __init__(self, message: str, model: Optional[str] = None):
        self.model = model
        super().__init__(message)


@dataclass
class CompletionResult:
    """Result of a chat completion."""
    content: str
    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int
    raw_response: Optional[dict] = None


@dataclass
class EmbeddingBatch:
    """Result of a batch embedding call."""
    vectors: list[list[float]]
    model: str
    input_tokens: int
    latency_ms: int = 0


class LLMProvider(ABC):
    """Abstract base class for remote providers."""

    name: str = "provider"

    @abstractmethod
    def complete(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.2,
        max_tokens: int = 280,
        response_format: Optional[str] = "json",
        stop: Optional[Sequence[str]] = None,
    ) -> CompletionResult:
        """Run a chat completion."""
        pass

    @abstractmethod
    def embed(self, model: str, inputs: Sequence[str]) -> EmbeddingBatch:
        """Embed a batch of texts."""
        pass


class MockProvider(LLMProvider):
    """
    Scripted provider for testing.

    Chat responses are consumed in order from `responses` (the last one
    repeats); `failures` maps model names to error messages.
    """

    name = "mock"

    def __init__(
        self,
        responses: Optional[Sequence[str]] = None,
        output_tokens: int = 50,
        embedding_dimensions: int = 8,
        failures: Optional[dict[str, str]] = None,
    ):
        self.responses = list(responses or ['{"answer": "ok", "confidence": 0.9}'])
        self.output_tokens = output_tokens
        self.embedding_dimensions = embedding_dimensions
        self.failures = dict(failures or {})
        self.calls: list[dict] = []

    def complete(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.2,
        max_tokens: int = 280,
        response_format: Optional[str] = "json",
        stop: Optional[Sequence[str]] = None,
    ) -> CompletionResult:
        self.calls.append({
            "kind": "chat",
            "model": model,
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if model in self.failures:
            raise RemoteCallError(self.failures[model], model=model)

        index = min(len(self.chat_calls) - 1, len(self.responses) - 1)
        return CompletionResult(
            content=self.responses[index],
            model=model,
            input_tokens=max(1, (len(system_prompt) + len(user_prompt)) // 4),
            output_tokens=self.output_tokens,
            latency_ms=1,
        )

    def embed(self, model: str, inputs: Sequence[str]) -> EmbeddingBatch:
        self.calls.append({"kind": "embed", "model": model, "inputs": list(inputs)})
        if model in self.failures:
            raise RemoteCallError(self.failures[model], model=model)

        vectors = []
        for text in inputs:
            base = float(len(text) % 7 + 1)
            vectors.append([base / (i + 1) for i in range(self.embedding_dimensions)])
        return EmbeddingBatch(
            vectors=vectors,
            model=model,
            input_tokens=sum(max(1, len(t) // 4) for t in inputs),
            latency_ms=1,
        )

    @property
    def chat_calls(self) -> list[dict]:
        return [c for c in self.calls if c["kind"] == "chat"]

    @property
    def embed_calls(self) -> list[dict]:
        return [c for c in self.calls if c["kind"] == "embed"]


class OpenAIProvider(LLMProvider):
    """
    OpenAI API provider.

    Requires OPENAI_API_KEY environment variable.
    """

    name = "openai"

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self._client = None

    @property
    def client(self):
        if self._client is None:
            try:
                from openai import OpenAI
                self._client = OpenAI(api_key=self.api_key)
            except ImportError:
                raise ImportError("openai package required. Install with: pip install openai")
        return self._client

    def complete(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.2,
        max_tokens: int = 280,
        response_format: Optional[str] = "json",
        stop: Optional[Sequence[str]] = None,
    ) -> CompletionResult:
        """Run a chat completion via the OpenAI API."""
        start_time = time.time()

        kwargs = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format == "json":
            kwargs["response_format"] = {"type": "json_object"}
        if stop:
            kwargs["stop"] = list(stop)

        try:
            response = self.client.chat.completions.create(**kwargs)
        except Exception as e:
            raise RemoteCallError(f"openai chat failed: {e}", model=model) from e

        latency_ms = int((time.time() - start_time) * 1000)
        usage = response.usage
        return CompletionResult(
            content=response.choices[0].message.content or "",
            model=model,
            input_tokens=usage.prompt_tokens if usage else len(user_prompt) // 4,
            output_tokens=usage.completion_tokens if usage else 0,
            latency_ms=latency_ms,
            raw_response=response.model_dump(),
        )

    def embed(self, model: str, inputs: Sequence[str]) -> EmbeddingBatch:
        """Embed a batch via the OpenAI API."""
        start_time = time.time()
        try:
            response = self.client.embeddings.create(model=model, input=list(inputs))
        except Exception as e:
            raise RemoteCallError(f"openai embeddings failed: {e}", model=model) from e

        usage = response.usage
        return EmbeddingBatch(
            vectors=[list(item.embedding) for item in response.data],
            model=model,
            input_tokens=usage.prompt_tokens if usage else sum(len(t) // 4 for t in inputs),
            latency_ms=int((time.time() - start_time) * 1000),
        )


class AnthropicProvider(LLMProvider):
    """
    Anthropic API provider (chat only).

    Requires ANTHROPIC_API_KEY environment variable.
    """

    name = "anthropic"

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        self._client = None

    @property
    def client(self):
        if self._client is None:
            try:
                from anthropic import Anthropic
                self._client = Anthropic(api_key=self.api_key)
            except ImportError:
                raise ImportError("anthropic package required. Install with: pip install anthropic")
        return self._client

    def complete(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.2,
        max_tokens: int = 280,
        response_format: Optional[str] = "json",
        stop: Optional[Sequence[str]] = None,
    ) -> CompletionResult:
        """Run a chat completion via the Anthropic API."""
        start_time = time.time()
        system = system_prompt
        if response_format == "json":
            system = f"{system_prompt}\nRespond with a single JSON object."

        kwargs = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": system,
            "messages": [{"role": "user", "content": user_prompt}],
        }
        if stop:
            kwargs["stop_sequences"] = list(stop)

        try:
            response = self.client.messages.create(**kwargs)
        except Exception as e:
            raise RemoteCallError(f"anthropic chat failed: {e}", model=model) from e

        return CompletionResult(
            content=response.content[0].text if response.content else "",
            model=model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            latency_ms=int((time.time() - start_time) * 1000),
            raw_response=response.model_dump(),
        )

    def embed(self, model: str, inputs: Sequence[str]) -> EmbeddingBatch:
        raise RemoteCallError("anthropic provider does not support embeddings", model=model)


class ProviderRouter(LLMProvider):
    """Dispatches to a provider by model name prefix."""

    name = "router"

    def __init__(self, providers: dict[str, LLMProvider], default: LLMProvider):
        self.providers = providers
        self.default = default

    def _provider_for(self, model: str) -> LLMProvider:
        for prefix, provider in self.providers.items():
            if model.startswith(prefix):
                return provider
        return self.default

    def complete(self, model: str, system_prompt: str, user_prompt: str, **kwargs) -> CompletionResult:
        return self._provider_for(model).complete(model, system_prompt, user_prompt, **kwargs)

    def embed(self, model: str, inputs: Sequence[str]) -> EmbeddingBatch:
        return self._provider_for(model).embed(model, inputs)


def default_provider() -> LLMProvider:
    """OpenAI for everything, Anthropic for claude-* models."""
    return ProviderRouter({"claude": AnthropicProvider()}, default=OpenAIProvider())
