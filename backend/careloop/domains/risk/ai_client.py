"""
Conversational AI service client.

The service receives the grounding context, the patient's latest utterance
and the fixed tool schema, and answers with an assistant message plus zero or
more tool calls. Text generation itself lives entirely in that service.
"""
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from careloop.core.config import settings
from careloop.core.errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class AIResponse:
    assistant_message: str
    tool_calls: list[dict[str, Any]] = field(default_factory=list)


class ConversationalAIClient:
    def __init__(self, base_url: str | None = None, api_key: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.AI_SERVICE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.AI_SERVICE_API_KEY
        self.timeout = timeout or settings.AI_SERVICE_TIMEOUT
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client (lazy initialization)."""
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.Client(base_url=self.base_url, timeout=self.timeout, headers=headers)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "ConversationalAIClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def respond(
        self,
        context: dict[str, Any],
        patient_utterance: str,
        tool_schema: list[dict[str, Any]],
    ) -> AIResponse:
        try:
            response = self._get_client().post(
                "/respond",
                json={
                    "context": context,
                    "patientUtterance": patient_utterance,
                    "toolSchema": tool_schema,
                },
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"AI service HTTP error: {e}")
            raise ProviderError(f"AI service returned status {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"AI service request error: {e}")
            raise ProviderError(f"Failed to connect to AI service: {e}") from e

        tool_calls = data.get("toolCalls") or []
        if not isinstance(tool_calls, list):
            raise ProviderError("AI service returned toolCalls that is not a list")
        return AIResponse(
            assistant_message=data.get("assistantMessage", ""),
            tool_calls=tool_calls,
        )


# Singleton instance for reuse
_default_client: ConversationalAIClient | None = None


def get_ai_client() -> ConversationalAIClient:
    """Get the default conversational AI client instance."""
    global _default_client
    if _default_client is None:
        _default_client = ConversationalAIClient()
    return _default_client
