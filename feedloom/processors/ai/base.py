from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class AIClient(ABC):
    """Abstract chat-completion client used for classification and post-processing."""

    @abstractmethod
    def complete(
        self,
        system: str,
        user: str,
        *,
        json_mode: bool = True,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Return the assistant message text for one system+user exchange.

        Raises ``AIResponseError`` on transport failures and unusable replies.
        """
