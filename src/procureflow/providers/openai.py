"""OpenAI chat client over the Responses API, with function tools."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from procureflow.errors import APIError
from procureflow.providers._errors import wrap_provider_error
from procureflow.providers._utils import (
    build_usage,
    join_text_segments,
    normalize_finish_reason,
    split_system,
)
from procureflow.providers.base import Provider
from procureflow.providers.models import AIResponse, ChatRequest, Message, ToolCall

if TYPE_CHECKING:
    from procureflow.providers.models import ToolDefinition


class OpenAIClient:
    """ChatClient for OpenAI models."""

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key
        self._client: Any = None

    @property
    def provider(self) -> Provider:
        return Provider.OPENAI

    def _sdk(self) -> Any:
        """The AsyncOpenAI client, created on first use."""
        if self._client is not None:
            return self._client
        try:
            from openai import AsyncOpenAI
        except ImportError as e:
            raise APIError("openai package not installed", hint="pip install openai") from e
        # SDK retries off; the reliability pipeline decides when to try again.
        self._client = AsyncOpenAI(api_key=self.api_key, max_retries=0)
        return self._client

    def build_request(self, request: ChatRequest) -> dict[str, Any]:
        """Keyword arguments for ``responses.create``; unset options are omitted."""
        instructions, turns = split_system(request.messages)
        kwargs: dict[str, Any] = {"model": request.model, "input": _to_input_items(turns)}
        optional = {
            "instructions": instructions,
            "temperature": request.temperature,
            "max_output_tokens": request.max_tokens,
        }
        kwargs.update({k: v for k, v in optional.items() if v is not None})
        if request.tools:
            kwargs["tools"] = [_function_tool(tool) for tool in request.tools]
            kwargs["tool_choice"] = "auto"
        return kwargs

    async def generate(self, request: ChatRequest) -> AIResponse:
        sdk = self._sdk()
        try:
            response = await sdk.responses.create(**self.build_request(request))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e, provider="openai", message="OpenAI generate failed"
            ) from e
        return self.parse_response(response, model=request.model)

    def parse_response(self, response: Any, *, model: str) -> AIResponse:
        """Normalize a Responses API result into AIResponse."""
        output = getattr(response, "output", None) or []
        text = "".join(
            join_text_segments(getattr(item, "content", None))
            for item in output
            if getattr(item, "type", None) == "message"
        )
        if not text:
            fallback = getattr(response, "output_text", None)
            text = fallback if isinstance(fallback, str) else ""

        calls = tuple(
            ToolCall(
                id=str(getattr(item, "call_id", None) or getattr(item, "id", "")),
                name=str(item.name),
                arguments=getattr(item, "arguments", None) or "{}",
            )
            for item in output
            if getattr(item, "type", None) == "function_call"
        )

        usage_raw = getattr(response, "usage", None)
        return AIResponse(
            text=text,
            tool_calls=calls,
            usage=build_usage(
                getattr(usage_raw, "input_tokens", 0),
                getattr(usage_raw, "output_tokens", 0),
                getattr(usage_raw, "total_tokens", None),
            ),
            provider=Provider.OPENAI,
            model=model,
            finish_reason=normalize_finish_reason(
                _raw_stop_reason(response), has_tool_calls=bool(calls)
            ),
        )

    async def aclose(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.close()


def _function_tool(tool: ToolDefinition) -> dict[str, Any]:
    # Non-strict: optional arguments stay optional in pydantic-derived schemas.
    return {
        "type": "function",
        "name": tool.name,
        "description": tool.description,
        "parameters": tool.parameters,
        "strict": False,
    }


def _to_input_items(turns: list[Message]) -> list[dict[str, Any]]:
    """Flatten chat turns into Responses API input items.

    Tool results become ``function_call_output`` items and an assistant
    turn's tool calls become ``function_call`` items after its text.
    """
    items: list[dict[str, Any]] = []
    for message in turns:
        if message.role == "tool":
            if message.tool_call_id:
                items.append(
                    {
                        "type": "function_call_output",
                        "call_id": message.tool_call_id,
                        "output": message.content,
                    }
                )
            continue

        if message.content:
            segment = "output_text" if message.role == "assistant" else "input_text"
            items.append(
                {"role": message.role, "content": [{"type": segment, "text": message.content}]}
            )
        if message.role == "assistant":
            items.extend(
                {
                    "type": "function_call",
                    "call_id": call.id,
                    "name": call.name,
                    "arguments": call.arguments,
                }
                for call in message.tool_calls
            )
    return items


def _raw_stop_reason(response: Any) -> str | None:
    """``incomplete_details.reason`` for incomplete responses, else ``status``."""
    status = getattr(response, "status", None)
    if not isinstance(status, str):
        return None
    if status.lower() == "incomplete":
        reason = getattr(getattr(response, "incomplete_details", None), "reason", None)
        if isinstance(reason, str) and reason:
            return reason
    return status
