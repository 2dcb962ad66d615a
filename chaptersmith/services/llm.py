"""
LLM Client Service for AI-powered text generation.

Provides a unified async interface for calling Claude (Anthropic) and GPT
(OpenAI) models, with whole-response and streaming calls plus cost estimation.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI


class ModelProvider(str, Enum):
    """Supported model providers."""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"


@dataclass
class LLMResponse:
    """Response from an LLM call."""
    content: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    estimated_cost: float
    stop_reason: Optional[str] = None


@dataclass
class ModelConfig:
    """Configuration for a specific model."""
    provider: ModelProvider
    model_id: str
    max_tokens: int
    input_cost_per_1k: float  # USD per 1000 input tokens
    output_cost_per_1k: float  # USD per 1000 output tokens


# Model configurations with pricing
MODELS = {
    # Anthropic models
    "claude-3-5-sonnet-20241022": ModelConfig(
        provider=ModelProvider.ANTHROPIC,
        model_id="claude-3-5-sonnet-20241022",
        max_tokens=8192,
        input_cost_per_1k=0.003,
        output_cost_per_1k=0.015,
    ),
    "claude-sonnet-4-20250514": ModelConfig(
        provider=ModelProvider.ANTHROPIC,
        model_id="claude-sonnet-4-20250514",
        max_tokens=8192,
        input_cost_per_1k=0.003,
        output_cost_per_1k=0.015,
    ),
    "claude-3-haiku-20240307": ModelConfig(
        provider=ModelProvider.ANTHROPIC,
        model_id="claude-3-haiku-20240307",
        max_tokens=4096,
        input_cost_per_1k=0.00025,
        output_cost_per_1k=0.00125,
    ),
    # OpenAI models
    "gpt-4o": ModelConfig(
        provider=ModelProvider.OPENAI,
        model_id="gpt-4o",
        max_tokens=4096,
        input_cost_per_1k=0.0025,
        output_cost_per_1k=0.01,
    ),
    "gpt-4o-mini": ModelConfig(
        provider=ModelProvider.OPENAI,
        model_id="gpt-4o-mini",
        max_tokens=4096,
        input_cost_per_1k=0.00015,
        output_cost_per_1k=0.0006,
    ),
}


class BaseLLMClient(ABC):
    """Abstract base class for LLM clients."""

    def __init__(self, config: ModelConfig):
        self.config = config
        self.model = config.model_id

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """Generate text from a prompt."""

    @abstractmethod
    def generate_stream(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: float = 0.7,
    ) -> AsyncIterator[str]:
        """Generate text with streaming output."""

    def _calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """Calculate estimated cost for the request."""
        input_cost = (input_tokens / 1000) * self.config.input_cost_per_1k
        output_cost = (output_tokens / 1000) * self.config.output_cost_per_1k
        return input_cost + output_cost


class AnthropicClient(BaseLLMClient):
    """Anthropic Claude client."""

    def __init__(self, config: ModelConfig):
        super().__init__(config)
        api_key = os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable not set")
        self.client = AsyncAnthropic(api_key=api_key)

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """Generate text using Claude."""
        message = await self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens or self.config.max_tokens,
            temperature=temperature,
            system=system_prompt or "You are a helpful AI assistant.",
            messages=[{"role": "user", "content": prompt}],
        )

        content = message.content[0].text if message.content else ""
        input_tokens = message.usage.input_tokens
        output_tokens = message.usage.output_tokens

        return LLMResponse(
            content=content,
            model=self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            estimated_cost=self._calculate_cost(input_tokens, output_tokens),
            stop_reason=message.stop_reason,
        )

    async def generate_stream(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: float = 0.7,
    ) -> AsyncIterator[str]:
        """Generate text with streaming using Claude."""
        async with self.client.messages.stream(
            model=self.model,
            max_tokens=max_tokens or self.config.max_tokens,
            temperature=temperature,
            system=system_prompt or "You are a helpful AI assistant.",
            messages=[{"role": "user", "content": prompt}],
        ) as stream:
            async for text in stream.text_stream:
                yield text


class OpenAIClient(BaseLLMClient):
    """OpenAI GPT client."""

    def __init__(self, config: ModelConfig):
        super().__init__(config)
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("OPENAI_API_KEY environment variable not set")
        self.client = AsyncOpenAI(api_key=api_key)

    @staticmethod
    def _messages(prompt: str, system_prompt: Optional[str]) -> list[dict]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: float = 0.7,
    ) -> LLMResponse:
        """Generate text using GPT."""
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=self._messages(prompt, system_prompt),
            max_tokens=max_tokens or self.config.max_tokens,
            temperature=temperature,
        )

        content = response.choices[0].message.content or ""
        input_tokens = response.usage.prompt_tokens if response.usage else 0
        output_tokens = response.usage.completion_tokens if response.usage else 0

        return LLMResponse(
            content=content,
            model=self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            estimated_cost=self._calculate_cost(input_tokens, output_tokens),
            stop_reason=response.choices[0].finish_reason,
        )

    async def generate_stream(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: float = 0.7,
    ) -> AsyncIterator[str]:
        """Generate text with streaming using GPT."""
        stream = await self.client.chat.completions.create(
            model=self.model,
            messages=self._messages(prompt, system_prompt),
            max_tokens=max_tokens or self.config.max_tokens,
            temperature=temperature,
            stream=True,
        )

        async for chunk in stream:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content


_clients: dict[str, BaseLLMClient] = {}


def get_llm_client(provider: str, model: str) -> BaseLLMClient:
    """Get or create a cached client for a provider/model pair."""
    key = f"{provider}:{model}"
    if key in _clients:
        return _clients[key]

    config = MODELS.get(model)
    if not config:
        raise ValueError(f"Unknown model: {model}")
    if config.provider.value != provider:
        raise ValueError(f"Model {model} is not served by provider {provider}")

    if config.provider == ModelProvider.ANTHROPIC:
        client: BaseLLMClient = AnthropicClient(config)
    elif config.provider == ModelProvider.OPENAI:
        client = OpenAIClient(config)
    else:
        raise ValueError(f"Unknown provider: {config.provider}")

    _clients[key] = client
    return client
