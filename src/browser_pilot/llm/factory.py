"""
LLM factory for creating provider instances.
"""

from ..config import LLMConfig, Settings
from .anthropic import AnthropicLLM
from .base import BaseLLM


def create_llm(config: LLMConfig | None = None, settings: Settings | None = None) -> BaseLLM:
    """Create an LLM instance based on configuration.

    The orchestrator speaks the Anthropic content-block format (text,
    tool_use, tool_result), so Anthropic is the only routed provider.
    """
    if config is None:
        if settings is None:
            from ..config import get_settings
            settings = get_settings()
        config = settings.get_llm_config()

    provider = config.provider

    if provider == "anthropic":
        if not config.api_key:
            raise ValueError("ANTHROPIC_API_KEY is not set in environment variables")
        return AnthropicLLM(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            max_tokens=config.max_tokens,
            timeout=config.timeout,
        )
    else:
        raise ValueError(f"Unknown LLM provider: {provider}")
