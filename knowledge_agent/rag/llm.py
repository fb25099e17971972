"""Unified chat client for OpenAI and Anthropic.

The answer stream and the router's resolution prompts both go through
``LLMClient``: ``chat`` for short JSON-returning calls, ``chat_stream`` for
incremental text.
"""

import json
import logging
import os
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "openai": "gpt-4o",
    "anthropic": "claude-sonnet-4-6",
}


class LLMClient:
    """Chat client supporting OpenAI and Anthropic."""

    def __init__(
        self,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        client=None,
    ):
        self.provider = provider or os.getenv("LLM_PROVIDER", "openai")
        if self.provider not in DEFAULT_MODELS:
            raise ValueError(f"Unsupported provider: {self.provider}")
        self.model = model or os.getenv("LLM_MODEL") or DEFAULT_MODELS[self.provider]

        if client is not None:
            self.client = client
        elif self.provider == "anthropic":
            import anthropic
            self.client = anthropic.Anthropic(
                api_key=api_key or os.getenv("ANTHROPIC_API_KEY")
            )
        else:
            from openai import OpenAI
            self.client = OpenAI(
                api_key=api_key or os.getenv("OPENAI_API_KEY")
            )

    # ------------------------------------------------------------------
    # Simple chat (router resolution, entity extraction)
    # ------------------------------------------------------------------

    def chat(
        self,
        system: str,
        user: str,
        temperature: float = 0.0,
        max_tokens: int = 512,
    ) -> str:
        """Send a simple chat completion request."""
        if self.provider == "anthropic":
            response = self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
            return response.content[0].text
        response = self.client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        return response.choices[0].message.content or ""

    # ------------------------------------------------------------------
    # Streaming (grounded answers)
    # ------------------------------------------------------------------

    def chat_stream(
        self,
        system: str,
        user: str,
        temperature: float = 0.4,
        max_tokens: int = 1024,
    ) -> Iterator[str]:
        """Yield text deltas from a streaming chat completion."""
        if self.provider == "anthropic":
            with self.client.messages.stream(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=[{"role": "user", "content": user}],
            ) as stream:
                for text in stream.text_stream:
                    if text:
                        yield text
            return

        response = self.client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            stream=True,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        for chunk in response:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content


def parse_json_response(raw: str):
    """Parse a JSON reply, tolerating markdown code fences."""
    cleaned = (raw or "").strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned.rsplit("```", 1)[0]
    return json.loads(cleaned.strip())
