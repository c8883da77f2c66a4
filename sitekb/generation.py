"""Text generation client wrapping OpenAI chat completions.

Provides:
- get_client: Cached OpenAI client
- GenerationClient: ``complete(system_prompt, user_prompt, max_tokens, temperature)``
  used for document classification, RAG answers and structured JSON synthesis

Every provider failure is re-raised as GenerationError with the underlying message.
"""
import logging
from typing import Optional

from openai import OpenAI

from sitekb.config import settings
from sitekb.errors import GenerationError

logger = logging.getLogger(__name__)

_client: OpenAI | None = None


def get_client() -> OpenAI:
    """Return a cached OpenAI Chat Completions client using the configured API key.

    Returns:
        OpenAI: Client instance reused across calls.
    """
    global _client
    if _client is None:
        _client = OpenAI(api_key=settings.OPENAI_API_KEY)
    return _client


class GenerationClient:
    """Single-call completion API used by every generation step.

    Args:
        client: An OpenAI-compatible client exposing ``chat.completions.create``.
        model: Chat model name.
        max_tokens: Default output token cap.
        temperature: Default sampling temperature.
    """

    def __init__(self, client: OpenAI, model: str, max_tokens: int = 2000, temperature: float = 0.7):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        json_mode: bool = False,
    ) -> str:
        """Run one chat completion and return the message text.

        Args:
            system_prompt: System message.
            user_prompt: User message.
            max_tokens: Optional override of the default output cap.
            temperature: Optional override of the default temperature.
            json_mode: Ask the provider for a JSON object response.

        Returns:
            str: The stripped message content (may be empty).

        Raises:
            GenerationError: If the API call fails.
        """
        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=self.temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.max_tokens,
                **kwargs,
            )
        except Exception as exc:
            logger.error("Completion call failed (model=%s): %s", self.model, exc)
            raise GenerationError(f"Failed to generate response: {exc}") from exc
        content = resp.choices[0].message.content or ""
        return content.strip()
