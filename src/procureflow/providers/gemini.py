"""Gemini chat client over google-genai, with function declarations."""

from __future__ import annotations

import asyncio
import json
from typing import Any
import uuid

from procureflow.errors import APIError
from procureflow.providers._errors import wrap_provider_error
from procureflow.providers._utils import build_usage, normalize_finish_reason, split_system
from procureflow.providers.base import Provider
from procureflow.providers.models import AIResponse, ChatRequest, Message, ToolCall


class GeminiClient:
    """ChatClient for Google Gemini models."""

    def __init__(self, api_key: str) -> None:
        self.api_key = api_key
        self._client: Any = None

    @property
    def provider(self) -> Provider:
        return Provider.GEMINI

    def _sdk(self) -> Any:
        """The genai.Client, created on first use."""
        if self._client is not None:
            return self._client
        try:
            from google import genai
        except ImportError as e:
            raise APIError(
                "google-genai package not installed", hint="pip install google-genai"
            ) from e
        self._client = genai.Client(api_key=self.api_key)
        return self._client

    def build_request(self, request: ChatRequest) -> dict[str, Any]:
        """Keyword arguments for ``aio.models.generate_content``."""
        from google.genai import types

        system_instruction, turns = split_system(request.messages)
        config: dict[str, Any] = {
            k: v
            for k, v in (
                ("system_instruction", system_instruction),
                ("temperature", request.temperature),
                ("max_output_tokens", request.max_tokens),
            )
            if v is not None
        }
        if request.tools:
            declarations = [
                types.FunctionDeclaration(
                    name=tool.name,
                    description=tool.description,
                    parameters_json_schema=tool.parameters,
                )
                for tool in request.tools
            ]
            config["tools"] = [types.Tool(function_declarations=declarations)]
            config["tool_config"] = {"function_calling_config": {"mode": "AUTO"}}
            # The agent runs tools itself after the confirmation gate.
            config["automatic_function_calling"] = {"disable": True}

        return {
            "model": request.model,
            "contents": _to_contents(turns, types),
            "config": types.GenerateContentConfig(**config),
        }

    async def generate(self, request: ChatRequest) -> AIResponse:
        sdk = self._sdk()
        try:
            response = await sdk.aio.models.generate_content(**self.build_request(request))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e, provider="gemini", message="Gemini generate failed"
            ) from e
        if not response:
            raise APIError(
                "Gemini returned an empty response.", provider="gemini", phase="generate"
            )
        return self.parse_response(response, model=request.model)

    def parse_response(self, response: Any, *, model: str) -> AIResponse:
        """Normalize a GenerateContentResponse into AIResponse.

        Only the first candidate is read. Thought parts are dropped.
        """
        candidates = getattr(response, "candidates", None)
        if isinstance(candidates, (list, tuple)) and candidates:
            candidate = candidates[0]
            raw_reason = _enum_name(getattr(candidate, "finish_reason", None))
            parts = [
                p
                for p in getattr(getattr(candidate, "content", None), "parts", None) or []
                if not getattr(p, "thought", False)
            ]
            texts = [p.text for p in parts if isinstance(getattr(p, "text", None), str)]
            calls = [
                fc
                for fc in (getattr(p, "function_call", None) for p in parts)
                if fc is not None and getattr(fc, "name", None)
            ]
        else:
            raw_reason = None
            fallback = getattr(response, "text", None)
            texts = [fallback] if isinstance(fallback, str) else []
            calls = list(getattr(response, "function_calls", None) or [])

        tool_calls = tuple(_tool_call_from(fc) for fc in calls)
        um = getattr(response, "usage_metadata", None)
        return AIResponse(
            text="".join(texts),
            tool_calls=tool_calls,
            usage=build_usage(
                getattr(um, "prompt_token_count", 0),
                getattr(um, "candidates_token_count", 0),
                getattr(um, "total_token_count", None),
            ),
            provider=Provider.GEMINI,
            model=model,
            finish_reason=normalize_finish_reason(raw_reason, has_tool_calls=bool(tool_calls)),
        )

    async def aclose(self) -> None:
        client, self._client = self._client, None
        close = getattr(getattr(client, "aio", None), "aclose", None)
        if close is not None:
            await close()


def _tool_call_from(fc: Any) -> ToolCall:
    # Gemini may omit call ids; the agent needs one to pair results.
    call_id = getattr(fc, "id", None) or f"call_{uuid.uuid4().hex[:8]}"
    return ToolCall(
        id=str(call_id), name=str(fc.name), arguments=json.dumps(getattr(fc, "args", None) or {})
    )


def _enum_name(value: Any) -> str | None:
    if value is None:
        return None
    name = getattr(value, "name", None)
    return name if isinstance(name, str) else str(value)


def _to_contents(turns: list[Message], types: Any) -> list[Any]:
    contents: list[Any] = []
    call_id_to_name: dict[str, str] = {}

    for item in turns:
        if item.role == "tool":
            name = item.name or call_id_to_name.get(item.tool_call_id or "", "unknown_tool")
            parsed: Any = {}
            if item.content:
                try:
                    parsed = json.loads(item.content)
                except json.JSONDecodeError:
                    parsed = {"result": item.content}
                if not isinstance(parsed, dict):
                    parsed = {"result": parsed}
            part = types.Part.from_function_response(name=name, response=parsed)
            # Consecutive function responses share one user turn.
            last = contents[-1] if contents else None
            if last is not None and last.role == "user" and _is_function_response(last):
                last.parts.append(part)
            else:
                contents.append(types.Content(role="user", parts=[part]))
        elif item.role == "assistant":
            parts: list[Any] = []
            if item.content:
                parts.append(types.Part.from_text(text=item.content))
            for tc in item.tool_calls:
                call_id_to_name[tc.id] = tc.name
                try:
                    args = json.loads(tc.arguments) if tc.arguments else {}
                except json.JSONDecodeError:
                    args = {}
                parts.append(types.Part.from_function_call(name=tc.name, args=args))
            if parts:
                contents.append(types.Content(role="model", parts=parts))
        elif item.content:
            contents.append(
                types.Content(role="user", parts=[types.Part.from_text(text=item.content)])
            )
    return contents


def _is_function_response(content: Any) -> bool:
    parts = getattr(content, "parts", None) or []
    return bool(parts) and all(getattr(p, "function_response", None) for p in parts)
