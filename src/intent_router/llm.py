"""
LLM service boundary and the OpenRouter-backed implementation.

This module provides:
- ``LLMOptions`` and the ``LLMService`` protocol consumed by the classifiers
- ``OpenRouterLLMService``, an ``AsyncOpenAI`` client pointed at OpenRouter
- ``LLMError`` for every provider-side failure

Implementations must be safe to call concurrently and must raise on failure
rather than return a malformed success.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from openai import AsyncOpenAI
from loguru import logger

from src.intent_router.utils import ConfigurationError, Timer, get_config


class LLMError(Exception):
    """Raised when LLM operations fail."""
    pass


@dataclass(frozen=True)
class LLMOptions:
    """Per-call generation options."""
    max_tokens: int = 200
    temperature: float = 0.1
    timeout_ms: int = 3000
    user_id: Optional[str] = None


@runtime_checkable
class LLMService(Protocol):
    """Completion provider consumed by the classifiers."""

    async def generate_completion(self, prompt: str, options: LLMOptions) -> str:
        ...


class OpenRouterLLMService:
    """OpenRouter completion client for classification prompts."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config if config is not None else get_config()
        self.model = self.config.get("ROUTING_MODEL") or "openai/gpt-4o-mini"

        if client is None:
            api_key = self.config.get("OPENROUTER_API_KEY")
            if not api_key:
                raise ConfigurationError("Required environment variable OPENROUTER_API_KEY is not set")
            client = AsyncOpenAI(
                base_url=self.config.get("LLM_BASE_URL") or "https://openrouter.ai/api/v1",
                api_key=api_key,
                timeout=self.config.get("REQUEST_TIMEOUT_SECONDS", 10),
                default_headers={
                    "X-Title": "Intent Routing Orchestrator"
                }
            )
        self.client = client

        logger.info("OpenRouter LLM service initialized", model=self.model)

    async def generate_completion(self, prompt: str, options: LLMOptions) -> str:
        """
        Run a single-turn completion.

        Args:
            prompt: Full prompt text, sent as one user message
            options: Token budget, temperature, timeout and user attribution

        Returns:
            str: Stripped completion text

        Raises:
            LLMError: If the request fails or returns no text
        """
        try:
            with Timer("llm_completion"):
                request: Dict[str, Any] = {
                    "model": self.model,
                    "messages": [{"role": "user", "content": prompt}],
                    "temperature": options.temperature,
                    "max_tokens": options.max_tokens,
                    "timeout": options.timeout_ms / 1000.0,
                }
                if options.user_id:
                    request["user"] = options.user_id

                response = await self.client.chat.completions.create(**request)

                if not response.choices:
                    raise LLMError("No response choices returned from LLM")

                text = response.choices[0].message.content
                if not text:
                    raise LLMError("Empty response from LLM")

                logger.debug("LLM completion generated",
                             model=self.model,
                             response_length=len(text),
                             tokens_used=getattr(response.usage, "total_tokens", None))
                return text.strip()

        except LLMError:
            raise
        except Exception as e:
            logger.warning("LLM completion failed", error=str(e), model=self.model)
            raise LLMError(f"LLM completion failed: {str(e)}") from e
