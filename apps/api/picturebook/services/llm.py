"""
LLM Service: story text generation with a vision chat model
"""

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Optional

import httpx
import structlog

from picturebook.core.config import settings
from picturebook.core.errors import ErrorCode, StoryGenerationError

logger = structlog.get_logger()

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
PAGE_MARKER = re.compile(r"^--- Page (\d+) ---$")


@dataclass
class TokenUsage:
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


@dataclass
class StoryCompletion:
    content: Optional[str]
    usage: TokenUsage = field(default_factory=TokenUsage)


class LLMClient:
    """
    Chat-completions client

    Supports: OpenAI, Mock
    """

    def __init__(self, provider: Optional[str] = None):
        self.provider = provider or settings.llm_provider

    async def complete(self, system_prompt: str, content: list[dict]) -> StoryCompletion:
        """Send one system prompt plus multimodal user content and return the JSON text."""
        if self.provider == "openai":
            return await self._call_openai(system_prompt, content)
        elif self.provider == "mock":
            return await self._call_mock(system_prompt, content)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider}")

    async def _call_openai(self, system_prompt: str, content: list[dict]) -> StoryCompletion:
        """Call OpenAI API"""
        if not settings.llm_api_key:
            raise StoryGenerationError(
                ErrorCode.LLM_FAILED,
                "OpenAI API key is not configured. Set the LLM_API_KEY environment variable.",
            )

        try:
            async with httpx.AsyncClient(timeout=settings.llm_timeout) as client:
                response = await client.post(
                    OPENAI_CHAT_URL,
                    headers={
                        "Authorization": f"Bearer {settings.llm_api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "model": settings.llm_model,
                        "messages": [
                            {"role": "system", "content": system_prompt},
                            {"role": "user", "content": content},
                        ],
                        "max_tokens": settings.llm_max_tokens,
                        "response_format": {"type": "json_object"},
                    },
                )
        except httpx.HTTPError as e:
            raise StoryGenerationError(ErrorCode.LLM_FAILED, f"OpenAI request failed: {e}") from e

        if response.status_code != 200:
            logger.error("OpenAI API error", status=response.status_code, body=response.text)
            raise StoryGenerationError(
                ErrorCode.LLM_FAILED, f"OpenAI API error: {response.status_code}"
            )

        data = response.json()
        choices = data.get("choices") or [{}]
        usage = data.get("usage") or {}
        return StoryCompletion(
            content=(choices[0].get("message") or {}).get("content"),
            usage=TokenUsage(
                prompt_tokens=usage.get("prompt_tokens"),
                completion_tokens=usage.get("completion_tokens"),
                total_tokens=usage.get("total_tokens"),
            ),
        )

    async def _call_mock(self, system_prompt: str, content: list[dict]) -> StoryCompletion:
        """Mock LLM for testing"""
        await asyncio.sleep(0.05)  # Simulate API latency

        texts = [part["text"] for part in content if part.get("type") == "text"]
        page_numbers = [
            int(match.group(1)) for match in (PAGE_MARKER.match(text) for text in texts) if match
        ]
        winkify = any("illustrationNotes" in text for text in texts)

        story = {}
        for number in page_numbers:
            text = f"Page {number}: a little adventure begins, one happy step at a time."
            if winkify:
                story[str(number)] = {
                    "text": text,
                    "illustrationNotes": "sparkles around the action" if number % 2 else None,
                }
            else:
                story[str(number)] = text

        return StoryCompletion(
            content=json.dumps(story),
            usage=TokenUsage(prompt_tokens=100, completion_tokens=50, total_tokens=150),
        )
