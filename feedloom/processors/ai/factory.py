from __future__ import annotations

from ...models import AIConfig
from .base import AIClient


def create_ai_client(config: AIConfig) -> AIClient:
    """Create the chat-completion client for the configured backend.

    Only OpenAI-compatible endpoints are supported; ``apiBase`` selects the
    provider. No local fallbacks.
    """
    if not config.api_key:
        raise ValueError("aiClassify.apiKey is not set (or FEEDLOOM_AI_API_KEY)")

    from .openai_compat import ChatCompletionsClient  # lazy import

    return ChatCompletionsClient(config)
