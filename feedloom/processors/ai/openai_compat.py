from __future__ import annotations

from typing import Any, Dict, Optional

import requests

from ...errors import AIResponseError
from ...models import AIConfig
from .base import AIClient


class ChatCompletionsClient(AIClient):
    """HTTP client for OpenAI-compatible ``/chat/completions`` endpoints.

    Settings come from the ``aiClassify`` configuration block: api base,
    key, model, temperature, max tokens and request timeout.
    """

    def __init__(self, config: AIConfig, *, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.base_url = config.api_base.rstrip("/")
        self.session = session or requests.Session()

    def _payload(self, system: str, user: str, json_mode: bool, max_tokens: Optional[int]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": self.config.temperature,
            "max_tokens": max_tokens or self.config.max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    def complete(
        self,
        system: str,
        user: str,
        *,
        json_mode: bool = True,
        max_tokens: Optional[int] = None,
    ) -> str:
        url = f"{self.base_url}/chat/completions"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
        }
        try:
            resp = self.session.post(
                url,
                json=self._payload(system, user, json_mode, max_tokens),
                headers=headers,
                timeout=self.config.timeout,
            )
        except requests.RequestException as exc:
            raise AIResponseError(f"Request to {url} failed: {exc}") from exc

        try:
            data = resp.json()
        except ValueError as exc:
            raise AIResponseError(f"Non-JSON reply (HTTP {resp.status_code}): {resp.text[:200]}") from exc

        # Error bodies carry {"error": {"message": ...}}, sometimes with a 200 status
        error = data.get("error") if isinstance(data, dict) else None
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise AIResponseError(f"API error: {message}")
        if resp.status_code >= 400:
            raise AIResponseError(f"HTTP {resp.status_code} from {url}")

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise AIResponseError("API returned no choices")
        try:
            return str(choices[0]["message"]["content"] or "").strip()
        except (KeyError, TypeError, IndexError) as exc:
            raise AIResponseError(f"Malformed choice in reply: {exc}") from exc
