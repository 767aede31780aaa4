from __future__ import annotations

import logging
from typing import Any

import requests

from xlsa_web.config.ini_config import AiSettings
from xlsa_web.domain.models import AiReply
from xlsa_web.domain.outcome import AppError, Err, Ok, Outcome

logger = logging.getLogger(__name__)


class OpenRouterClient:
    """
    OpenAI-compatible chat-completions client (OpenRouter by default).
    Transport failures, non-2xx responses and malformed bodies all come back
    as ProviderError; nothing is raised to the caller.
    """

    provider_name = "openrouter"

    def __init__(self, settings: AiSettings, session: requests.Session | None = None):
        self.base_url = settings.base_url.rstrip("/")
        self.timeout = settings.timeout_seconds
        self._session = session or requests.Session()
        self.headers = {
            "Content-Type": "application/json",
            "HTTP-Referer": settings.app_url,
            "X-Title": settings.app_title,
        }
        if settings.api_key:
            self.headers["Authorization"] = f"Bearer {settings.api_key}"

    def send(self, model_id: str, messages: list, options: dict | None = None) -> Outcome[AiReply]:
        options = options or {}
        if not messages:
            return Err(AppError.invalid_input("At least one message is required"))

        payload = {
            "model": model_id,
            "messages": messages,
            "max_tokens": options.get("max_tokens", 4096),
            "temperature": options.get("temperature", 0.4),
            "top_p": options.get("top_p", 1.0),
        }

        try:
            response = self._session.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=self.headers,
                timeout=self.timeout,
            )
        except requests.Timeout:
            logger.warning("AI backend timed out after %ss (model=%s)", self.timeout, model_id)
            return Err(AppError.provider(self.provider_name, "Request timed out"))
        except requests.RequestException as e:
            logger.warning("AI backend request failed (model=%s): %s", model_id, e)
            return Err(AppError.provider(self.provider_name, "Request failed"))

        if not 200 <= response.status_code < 300:
            logger.warning("AI backend returned HTTP %s (model=%s)", response.status_code, model_id)
            return Err(AppError.provider(self.provider_name, f"HTTP {response.status_code}", status=response.status_code))

        try:
            data: Any = response.json()
        except ValueError:
            return Err(AppError.provider(self.provider_name, "Malformed JSON response"))

        return self._parse(data, model_id)

    def _parse(self, data: Any, model_id: str) -> Outcome[AiReply]:
        if not isinstance(data, dict):
            return Err(AppError.provider(self.provider_name, "Malformed JSON response"))

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return Err(AppError.provider(self.provider_name, "No response generated"))

        message = choices[0].get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            return Err(AppError.provider(self.provider_name, "Response has no message content"))

        return Ok(AiReply(
            content=content,
            tokens_used=self._total_tokens(data.get("usage")),
            model_id=str(data.get("model") or model_id),
        ))

    @staticmethod
    def _total_tokens(usage: Any) -> int:
        """Usage is informational; a malformed block counts as zero tokens."""
        if not isinstance(usage, dict):
            return 0
        try:
            return max(int(usage.get("total_tokens") or 0), 0)
        except (TypeError, ValueError, OverflowError):
            return 0
