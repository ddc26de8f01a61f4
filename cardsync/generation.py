"""
Chain card generation.

The dynamic-context chain asks an external generator for the next variant
card. Any generator works as long as it returns a small JSON object with
"front", "back" and "notes"; the default uses OpenAI chat completions in
JSON mode.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Optional, Protocol

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ValidationError

from cardsync.config import Settings
from cardsync.errors import GenerationError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You write flashcards. Each new card builds on the previous cards in the "
    "chain and must test something the learner has not seen yet. "
    'Reply with a JSON object: {"front": "...", "back": "...", "notes": "..."}.'
)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class GeneratedCard(BaseModel):
    """Fields the generator must return."""
    front: str
    back: str = ""
    notes: str = ""


class ChainGenerator(Protocol):
    async def generate(self, prompt: str) -> str:
        ...


def parse_generated(text: Optional[str]) -> GeneratedCard:
    """
    Parse generator output.

    Raises:
        GenerationError: If the output is not a JSON object or front is empty
    """
    if not text or not text.strip():
        raise GenerationError("Generator returned no content")
    cleaned = _CODE_FENCE.sub("", text.strip())
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise GenerationError(f"Generator output is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise GenerationError("Generator output is not a JSON object")
    try:
        card = GeneratedCard.model_validate(data)
    except ValidationError as e:
        raise GenerationError(f"Generator output is missing fields: {e.error_count()} error(s)") from e
    if not card.front.strip():
        raise GenerationError("Generator returned an empty front")
    return card


class OpenAIChainGenerator:
    """
    ChainGenerator backed by the OpenAI API.

    Args:
        api_key: Defaults to OPENAI_API_KEY
        model: Defaults to CARDSYNC_GENERATION_MODEL
        client: Preconfigured AsyncOpenAI client
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        temperature: float = 0.7,
    ):
        settings = Settings.from_env()
        self.api_key = api_key or settings.openai_api_key
        self.model = model or settings.generation_model
        self.temperature = temperature
        self._client = client

    def get_client(self) -> AsyncOpenAI:
        """Get or create the OpenAI client."""
        if self._client is None:
            if not self.api_key:
                raise GenerationError("OPENAI_API_KEY not found in environment variables")
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def generate(self, prompt: str) -> str:
        client = self.get_client()
        try:
            completion = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
                temperature=self.temperature,
            )
        except OpenAIError as e:
            logger.warning(f"Chain generation request failed: {e}")
            raise GenerationError(str(e)) from e

        content = completion.choices[0].message.content
        if not content:
            raise GenerationError("Generator returned no content")
        return content
