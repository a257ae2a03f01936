# -*- coding: utf-8 -*-
"""HTTP client for the remote sentiment collaborator.

Sends a prompt to an OpenAI-compatible chat-completions endpoint and
validates the JSON it returns. Every failure surfaces as
RemoteUnavailableError (or its MalformedRemoteResponseError subclass) so the
analysis engine can fall back to local heuristics.
"""
from __future__ import annotations

from typing import Dict, List, Literal, Optional, Sequence, Tuple
from urllib.parse import urlparse
import logging

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import remote_api_key
from .errors import MalformedRemoteResponseError, RemoteUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_MODEL = "gpt-3.5-turbo"
DEFAULT_TIMEOUT = 10.0

SYSTEM_PROMPT = (
    "You are an AI assistant that analyzes journal entries. Provide structured, "
    "helpful insights about the user's thoughts and emotions. "
    "Return only valid JSON responses."
)

SentimentLabel = Literal["positive", "negative", "neutral"]

# ---------------------------------------------------------------------
# Response schema
# ---------------------------------------------------------------------

class EntrySentimentPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entry_index: int = Field(alias="entryIndex", ge=0)
    sentiment: SentimentLabel
    score: float = Field(ge=-1.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)


class SentimentPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    overall_sentiment: SentimentLabel = Field(alias="overallSentiment")
    sentiment_score: float = Field(alias="sentimentScore", ge=-1.0, le=1.0)
    entry_sentiments: List[EntrySentimentPayload] = Field(alias="entrySentiments")


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def parse_sentiment_payload(text: str) -> SentimentPayload:
    """Validate the model's reply; raise MalformedRemoteResponseError if it is not the schema."""
    if not isinstance(text, str):
        raise MalformedRemoteResponseError(f"Remote reply is {type(text).__name__}, not text")
    try:
        return SentimentPayload.model_validate_json(_strip_code_fence(text))
    except ValidationError as exc:
        raise MalformedRemoteResponseError(
            f"Remote sentiment response failed validation ({exc.error_count()} errors)"
        ) from exc


def build_sentiment_prompt(items: Sequence[Tuple[int, str]]) -> str:
    """Prompt for *items* given as (entry index, plaintext) pairs."""
    feed = "\n\n".join(f"Entry {idx}: {text}" for idx, text in items)
    return f"""Analyze the sentiment of these journal entries. Provide an overall sentiment analysis and per-entry analysis.

Journal Entries:
{feed}

Respond with JSON:
{{
  "overallSentiment": "positive|negative|neutral",
  "sentimentScore": -1 to 1,
  "entrySentiments": [
    {{
      "entryIndex": number,
      "sentiment": "positive|negative|neutral",
      "score": -1 to 1,
      "confidence": 0 to 1
    }}
  ]
}}"""

# ---------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------

class RemoteAnalyzer:
    """Async chat-completions client used for remote sentiment analysis."""

    def __init__(
        self,
        api_key: str,
        *,
        api_url: str = DEFAULT_API_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT,
        max_tokens: int = 800,
        temperature: float = 0.2,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        # bearer token must not travel in cleartext off this machine
        if not api_url.startswith("https://"):
            host = urlparse(api_url).hostname or ""
            if host not in ("localhost", "127.0.0.1", "::1"):
                raise ValueError(
                    f"Remote analysis URL must use HTTPS (got {api_url}). "
                    "Use HTTPS to protect API credentials, or use localhost for local development."
                )

        self._api_url = api_url
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        headers: Dict[str, str] = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self._client = httpx.AsyncClient(headers=headers, timeout=timeout, transport=transport)

    @classmethod
    def from_config(cls, cfg: Dict[str, object]) -> Optional["RemoteAnalyzer"]:
        """Build a client from config, or None when no credential is configured."""
        api_key = remote_api_key()
        if not api_key:
            logger.info("Remote API key not found; analysis will be limited to local processing")
            return None
        return cls(
            api_key,
            api_url=str(cfg.get("remote_api_url", DEFAULT_API_URL)),
            model=str(cfg.get("remote_model", DEFAULT_MODEL)),
            timeout=float(cfg.get("remote_timeout", DEFAULT_TIMEOUT)),
            max_tokens=int(cfg.get("remote_max_tokens", 800)),
            temperature=float(cfg.get("remote_temperature", 0.2)),
        )

    async def complete(self, prompt: str) -> str:
        """POST the prompt and return the first choice's text content."""
        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
        }
        try:
            resp = await self._client.post(self._api_url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise RemoteUnavailableError(
                f"Remote analysis rejected: {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise RemoteUnavailableError(f"Remote analysis failed: {e}") from e
        except ValueError as e:
            raise MalformedRemoteResponseError("Remote response was not JSON") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise MalformedRemoteResponseError("Remote response missing message content") from e
        if content is None:
            return ""
        if not isinstance(content, str):
            raise MalformedRemoteResponseError(
                f"Remote message content is {type(content).__name__}, not text"
            )
        return content

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
