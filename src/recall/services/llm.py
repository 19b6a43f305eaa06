"""LLM provider adapter via LiteLLM Router.

Used only to turn a run of transcript messages into summary text. One model
group, "fast", is configured from whichever API keys are present: Claude
Haiku first, GPT-4o-mini as the fallback.
"""

from __future__ import annotations

import structlog
from litellm import Router

from src.recall.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class LLMService:
    """LLM provider abstraction with LiteLLM Router.

    The Anthropic model is registered first so it serves the "fast" group
    whenever its key is configured. The OpenAI model is the fallback.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()

        model_list = []

        if settings.ANTHROPIC_API_KEY:
            model_list.append({
                "model_name": "fast",
                "litellm_params": {
                    "model": "anthropic/claude-3-5-haiku-20241022",
                    "api_key": settings.ANTHROPIC_API_KEY,
                },
            })

        if settings.OPENAI_API_KEY:
            model_list.append({
                "model_name": "fast",
                "litellm_params": {
                    "model": "openai/gpt-4o-mini",
                    "api_key": settings.OPENAI_API_KEY,
                },
            })

        if not model_list:
            logger.warning("llm.unconfigured", detail="no LLM API keys configured")
            self.router = None
            return

        self.router = Router(
            model_list=model_list,
            num_retries=settings.LLM_MAX_RETRIES,
            timeout=settings.LLM_TIMEOUT,
            allowed_fails=3,
            cooldown_time=30,
        )

    @property
    def available(self) -> bool:
        return self.router is not None

    async def completion(
        self,
        messages: list[dict],
        model: str = "fast",
        max_tokens: int = 300,
        temperature: float = 0.1,
        metadata: dict | None = None,
    ) -> dict:
        """Execute a completion call through the LiteLLM Router.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            model: Model group name. Only "fast" is registered.
            max_tokens: Maximum tokens in the response.
            temperature: Sampling temperature.
            metadata: Extra metadata forwarded to LiteLLM callbacks.

        Returns:
            Dict with content, model, and usage.

        Raises:
            RuntimeError: If no LLM API keys are configured.
        """
        if not self.router:
            raise RuntimeError("No LLM API keys configured")

        response = await self.router.acompletion(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            metadata=metadata or {},
        )

        usage = {}
        if hasattr(response, "usage") and response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        logger.debug("llm.completion", model=response.model, **usage)

        return {
            "content": response.choices[0].message.content,
            "model": response.model,
            "usage": usage,
        }
