"""Chat-completion collaborator behind the rate-limited analysis endpoint."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import httpx

from ..models import ChatMessage


logger = logging.getLogger(__name__)

MARKET_CONTEXT_LIMIT = 5000

SYSTEM_PROMPT_TEMPLATE = """You are an AI financial analyst for a market terminal.
You provide concise, insightful commentary and answer questions about market data.
Current market data context: {context}
Keep responses brief, professional, and focused on financial insights.
Never provide investment advice or make specific trading recommendations."""


class CompletionError(RuntimeError):
    """The completion provider failed or returned an unusable response."""


class CompletionProvider(Protocol):
    async def complete(self, messages: Sequence[Mapping[str, str]]) -> str: ...

    async def aclose(self) -> None: ...


def build_messages(messages: Sequence[ChatMessage], market_data: Optional[Mapping[str, Any]]) -> List[Dict[str, str]]:
    """Prepend the system prompt, embedding a size-capped copy of the market data."""

    context = json.dumps(market_data, default=str)[:MARKET_CONTEXT_LIMIT] if market_data else "{}"
    prompt = SYSTEM_PROMPT_TEMPLATE.format(context=context)
    return [{"role": "system", "content": prompt}] + [
        {"role": message.role, "content": message.content} for message in messages
    ]


class ChatCompletionClient:
    """Minimal client for an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gpt-4",
        base_url: str = "https://api.openai.com/v1",
        session: httpx.AsyncClient | None = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> None:
        if not api_key:
            raise ValueError("an API key is required for the completion provider")
        self._api_key = api_key
        self._model = model
        self._url = f"{base_url.rstrip('/')}/chat/completions"
        self._client = session
        self._owns_client = session is None
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def _client_instance(self) -> httpx.AsyncClient:
        if self._client is None:
            timeout = httpx.Timeout(30.0, connect=5.0)
            self._client = httpx.AsyncClient(timeout=timeout)
        return self._client

    async def complete(self, messages: Sequence[Mapping[str, str]]) -> str:
        client = await self._client_instance()
        body = {
            "model": self._model,
            "messages": list(messages),
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            response = await client.post(self._url, json=body, headers=headers)
            response.raise_for_status()
            payload = response.json()
            return payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise CompletionError(f"malformed completion response: {exc}") from exc
        except Exception as exc:
            logger.warning("Completion request failed: %s", exc)
            raise CompletionError(str(exc)) from exc

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
