from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable

from openai import AsyncOpenAI

from .config import PilotSettings, load_settings

logger = logging.getLogger(__name__)


class ModelConfigurationError(RuntimeError):
    """Raised when a provider adapter cannot be built from the settings."""


class StructuredOutputError(RuntimeError):
    """Raised when a structured call returns something that is not a JSON object."""


@dataclass
class ModelResponse:
    content: str


@runtime_checkable
class ChatModel(Protocol):
    """
    The only capability the planning core depends on:
    - invoke: free-text completion
    - invoke_structured: completion constrained to a JSON schema, parsed
    Either call may raise; callers decide how to recover.
    """

    async def invoke(self, prompt: str) -> ModelResponse: ...

    async def invoke_structured(self, prompt: str, schema: Mapping[str, Any]) -> Any: ...


def _schema_name(schema: Mapping[str, Any]) -> str:
    props = schema.get("properties") or {}
    if "steps" in props:
        return "pilot_steps"
    if "stages" in props:
        return "progress_plan"
    return "structured_output"


def _strip_meta(schema: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in schema.items() if k != "$schema"}


class OpenAIChatModel:
    """
    ChatModel over the OpenAI chat completions API.
    - model: 使用的模型
    - system_prompt: 注入到 system role 的设定（可选）
    """

    def __init__(
        self,
        model: Optional[str] = None,
        *,
        settings: PilotSettings | None = None,
        system_prompt: str | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.model = model or self.settings.model
        self.system_prompt = system_prompt

        if client is not None:
            self.client = client
            return
        api_key = self.settings.openai_api_key
        if not api_key:
            raise ModelConfigurationError("OPENAI_API_KEY is missing; cannot build the OpenAI chat model.")
        base_url = self.settings.openai_base_url
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url) if base_url else AsyncOpenAI(api_key=api_key)

    def _messages(self, prompt: str) -> list[Dict[str, str]]:
        messages: list[Dict[str, str]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def invoke(self, prompt: str) -> ModelResponse:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=self._messages(prompt),
        )
        content = response.choices[0].message.content or ""
        return ModelResponse(content=content.strip())

    async def invoke_structured(self, prompt: str, schema: Mapping[str, Any]) -> Any:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=self._messages(prompt),
            response_format={
                "type": "json_schema",
                "json_schema": {
                    "name": _schema_name(schema),
                    "schema": _strip_meta(schema),
                    "strict": False,
                },
            },
        )
        content = response.choices[0].message.content
        if not content:
            raise StructuredOutputError("Structured call returned an empty message")
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise StructuredOutputError(f"Structured call returned invalid JSON: {exc.msg}") from exc
        if not isinstance(parsed, (dict, list)):
            raise StructuredOutputError("Structured call did not return a JSON object")
        logger.debug("[Model] structured %s call returned %d chars", _schema_name(schema), len(content))
        return parsed
