from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_MODEL = "gpt-4.1-mini"
DEFAULT_ANTHROPIC_MODEL = "claude-haiku-4-5"
DEFAULT_TIMEOUT_S = 30.0


@dataclass
class LLMUsage:
    input_tokens: int
    output_tokens: int
    model: str


@dataclass
class LLMResponse:
    text: str
    usage: LLMUsage | None = None


class LLMBridge(Protocol):
    async def call(
        self,
        provider_id: str,
        model_id: str,
        system_prompt: str,
        user_message: str,
        max_tokens: int,
    ) -> LLMResponse | None: ...


def default_model_for(provider_id: str) -> str:
    if provider_id == "anthropic":
        return DEFAULT_ANTHROPIC_MODEL
    return DEFAULT_OPENAI_MODEL


class ProviderBridge:
    """LLM bridge over the OpenAI and Anthropic SDKs.

    Any provider other than ``anthropic`` is treated as OpenAI-compatible, which
    together with ``base_url`` covers local and proxy endpoints. Failures are
    logged and reported as ``None``.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = httpx.Timeout(timeout_s, connect=min(10.0, timeout_s))
        self._clients: dict[str, Any] = {}

    def _client(self, provider_id: str) -> Any:
        client = self._clients.get(provider_id)
        if client is not None:
            return client
        if provider_id == "anthropic":
            import anthropic

            client = anthropic.AsyncAnthropic(
                api_key=self.api_key, base_url=self.base_url, timeout=self.timeout
            )
        else:
            from openai import AsyncOpenAI

            client = AsyncOpenAI(
                api_key=self.api_key, base_url=self.base_url, timeout=self.timeout
            )
        self._clients[provider_id] = client
        return client

    async def call(
        self,
        provider_id: str,
        model_id: str,
        system_prompt: str,
        user_message: str,
        max_tokens: int,
    ) -> LLMResponse | None:
        try:
            client = self._client(provider_id)
            if provider_id == "anthropic":
                resp = await client.messages.create(
                    model=model_id,
                    max_tokens=max_tokens,
                    system=system_prompt,
                    messages=[{"role": "user", "content": user_message}],
                    temperature=0,
                )
                text = "".join(
                    getattr(block, "text", "")
                    for block in resp.content
                    if getattr(block, "type", "") == "text"
                )
                usage = None
                if getattr(resp, "usage", None) is not None:
                    usage = LLMUsage(
                        input_tokens=int(resp.usage.input_tokens or 0),
                        output_tokens=int(resp.usage.output_tokens or 0),
                        model=model_id,
                    )
                return LLMResponse(text=text, usage=usage)
            resp = await client.chat.completions.create(
                model=model_id,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
                temperature=0,
                max_tokens=max_tokens,
            )
            text = resp.choices[0].message.content or ""
            usage = None
            if getattr(resp, "usage", None) is not None:
                usage = LLMUsage(
                    input_tokens=int(resp.usage.prompt_tokens or 0),
                    output_tokens=int(resp.usage.completion_tokens or 0),
                    model=model_id,
                )
            return LLMResponse(text=text, usage=usage)
        except Exception as exc:
            logger.exception(
                "summary model call failed",
                extra={"provider": provider_id, "model": model_id},
                exc_info=exc,
            )
            return None

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
