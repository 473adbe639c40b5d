"""Model invokers: the single "invoke model" primitive behind the gateway.

Each invoker sends one system/user prompt pair plus a JSON Schema to a
provider and returns the raw text content. It classifies failures for the
retry loop:
  - timeout, connection error, 429, 5xx  -> TransientModelError (retried)
  - other 4xx, malformed envelope         -> PermanentModelError (not retried)

Parsing the content against the schema is the PromptGuard's job, not the
invoker's.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from psyche.core.exceptions import PermanentModelError, TransientModelError

logger = logging.getLogger(__name__)


@dataclass
class ModelReply:
    """Raw reply from a provider."""

    content: str
    model_version: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ModelInvoker(ABC):
    """Base class for all model invokers."""

    provider: str = ""

    def __init__(self, model: str):
        self.model = model

    @property
    def model_tag(self) -> str:
        """Provenance tag for indicators produced from this model's output."""
        return f"llm@{self.model}"

    @abstractmethod
    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        json_schema: dict[str, Any],
        timeout: float = 10.0,
    ) -> ModelReply:
        """Send one request and return the raw reply content."""
        ...


# ---------------------------------------------------------------------------
# OpenAI-compatible chat completions
# ---------------------------------------------------------------------------


class OpenAIModelInvoker(ModelInvoker):
    """OpenAI Chat Completions invoker with structured (JSON Schema) output."""

    provider = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        api_url: str = "https://api.openai.com/v1/chat/completions",
        temperature: float = 0.0,
        max_tokens: int = 1024,
    ):
        super().__init__(model)
        self.api_key = api_key
        self.api_url = api_url
        self.temperature = temperature
        self.max_tokens = max_tokens

    def _payload(self, system_prompt: str, user_prompt: str, json_schema: dict[str, Any]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": json_schema.get("title", "response"),
                    "schema": json_schema,
                },
            },
        }
        if system_prompt:
            payload["messages"].append({"role": "system", "content": system_prompt})
        payload["messages"].append({"role": "user", "content": user_prompt})
        return payload

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        json_schema: dict[str, Any],
        timeout: float = 10.0,
    ) -> ModelReply:
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(
                    self.api_url,
                    json=self._payload(system_prompt, user_prompt, json_schema),
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.TimeoutException as e:
            raise TransientModelError(f"Timeout after {timeout}s") from e
        except httpx.TransportError as e:
            raise TransientModelError(f"Transport error: {e}") from e

        latency_ms = int((time.monotonic() - start) * 1000)

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientModelError(f"Provider returned {resp.status_code}", status_code=resp.status_code)
        if resp.status_code >= 400:
            raise PermanentModelError(
                f"Provider rejected request: {resp.status_code} {resp.text[:200]}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
            choice = data["choices"][0]
            content = choice["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise PermanentModelError(f"Malformed provider envelope: {e}") from e

        usage = data.get("usage") or {}
        return ModelReply(
            content=content,
            model_version=data.get("model", self.model),
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            latency_ms=latency_ms,
            raw=data,
        )


def build_invoker(api_key: str, model: str, api_url: str) -> ModelInvoker:
    """Create the configured invoker."""
    if not api_key:
        logger.warning("LLM API key not configured, model calls will be rejected by the provider")
    return OpenAIModelInvoker(api_key=api_key, model=model, api_url=api_url)
