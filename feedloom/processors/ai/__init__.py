"""AI backend client (OpenAI-compatible chat completions) and reply parsing."""

from .base import AIClient
from .factory import create_ai_client

__all__ = ["AIClient", "create_ai_client"]
