"""Provider characterization tests.

These tests verify the request/response transformations for each provider
implementation. They use fake SDK clients to characterize the exact shapes
sent to provider APIs without making real network calls.
"""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from typing import Any

import httpx
import pytest

from procureflow.errors import APIError, ConfigurationError, RateLimitError
from procureflow.providers import (
    ChatRequest,
    GeminiClient,
    Message,
    OpenAIClient,
    Provider,
    ToolCall,
    ToolDefinition,
    create_provider_client,
)
from procureflow.providers._errors import extract_retry_after_s, wrap_provider_error
from procureflow.providers._utils import normalize_finish_reason
from tests.helpers import GEMINI_MODEL, OPENAI_MODEL

pytestmark = pytest.mark.contract

_ADD_TO_CART = ToolDefinition(
    name="add_to_cart",
    description="Add an item to the cart",
    parameters={
        "type": "object",
        "properties": {"item_id": {"type": "string"}, "quantity": {"type": "integer"}},
        "required": ["item_id"],
    },
    mutating=True,
)

_TOOL_HISTORY = (
    Message(role="system", content="You are a procurement assistant."),
    Message(role="user", content="Add 2 of item-1"),
    Message(
        role="assistant",
        content="",
        tool_calls=(
            ToolCall(
                id="call_abc",
                name="add_to_cart",
                arguments='{"item_id": "item-1", "quantity": 2}',
            ),
        ),
    ),
    Message(role="tool", tool_call_id="call_abc", name="add_to_cart", content='{"success": true}'),
)


# =============================================================================
# Provider Error Mapping (Contract)
# =============================================================================


def test_wrap_provider_error_extracts_status_and_retry_after_from_response_headers() -> None:
    """SDK errors map into APIError with structured retry metadata."""

    class _SdkError(Exception):
        def __init__(self) -> None:
            super().__init__("rate limited")
            self.response = SimpleNamespace(status_code=429, headers={"Retry-After": "2"})

    err = wrap_provider_error(_SdkError(), provider="openai", message="OpenAI generate failed")

    assert isinstance(err, RateLimitError)
    assert err.status_code == 429
    assert err.retry_after_s == 2.0
    assert err.retryable is True
    assert err.provider == "openai"
    assert err.phase == "generate"
    assert "429" in str(err)


def test_wrap_provider_error_enriches_existing_api_error_without_clobbering() -> None:
    base = APIError("bad request", retryable=False, status_code=400)

    wrapped = wrap_provider_error(base, provider="gemini")

    assert wrapped is base
    assert wrapped.status_code == 400
    assert wrapped.retryable is False
    assert wrapped.provider == "gemini"
    assert wrapped.phase == "generate"


def test_wrap_provider_error_marks_transport_failures_retryable() -> None:
    err = wrap_provider_error(httpx.ConnectError("connection reset"), provider="openai")

    assert err.status_code is None
    assert err.retryable is True


def test_wrap_provider_error_client_errors_are_not_retryable() -> None:
    class _SdkError(Exception):
        status_code = 422

    err = wrap_provider_error(_SdkError("unprocessable"), provider="openai")

    assert err.retryable is False
    assert err.hint is None


def test_exhausted_quota_is_terminal_despite_429() -> None:
    class _QuotaError(Exception):
        status_code = 429
        code = "insufficient_quota"

    err = wrap_provider_error(_QuotaError("You exceeded your current quota"), provider="openai")

    assert not isinstance(err, RateLimitError)
    assert err.status_code == 429
    assert err.retryable is False
    assert "billing" in err.hint


def test_context_overflow_names_the_budget_setting() -> None:
    class _TooLong(Exception):
        status_code = 400
        body = {"error": {"code": "context_length_exceeded", "message": "too long"}}

    err = wrap_provider_error(_TooLong("too long"), provider="openai")

    assert err.retryable is False
    assert "AGENT_HISTORY_TOKEN_BUDGET" in err.hint


def test_millisecond_retry_header_is_preferred() -> None:
    class _SdkError(Exception):
        response = SimpleNamespace(
            status_code=429, headers={"retry-after-ms": "1500", "Retry-After": "2"}
        )

    assert extract_retry_after_s(_SdkError("slow down")) == 1.5


def test_wrap_provider_error_reraises_cancelled_error() -> None:
    with pytest.raises(asyncio.CancelledError):
        wrap_provider_error(asyncio.CancelledError("cancelled"), provider="openai")


@pytest.mark.parametrize(("retry_delay", "expected"), [("8.352104981s", 8.352104981), ("8s", 8.0)])
def test_extract_retry_after_from_google_retry_info(retry_delay: str, expected: float) -> None:
    class _FakeError(Exception):
        def __init__(self) -> None:
            super().__init__("rate limited")
            self.details = {
                "error": {
                    "details": [
                        {
                            "@type": "type.googleapis.com/google.rpc.RetryInfo",
                            "retryDelay": retry_delay,
                        }
                    ]
                }
            }

    assert extract_retry_after_s(_FakeError()) == expected


@pytest.mark.parametrize(
    ("provider", "status", "message", "env_var"),
    [
        ("gemini", 400, "API key not valid. Please pass a valid API key.", "GEMINI_API_KEY"),
        ("openai", 401, "Incorrect API key provided", "OPENAI_API_KEY"),
    ],
)
def test_auth_failures_name_the_credential_variable(
    provider: str, status: int, message: str, env_var: str
) -> None:
    class _SdkError(Exception):
        def __init__(self) -> None:
            super().__init__(message)
            self.status_code = status

    err = wrap_provider_error(_SdkError(), provider=provider)

    assert err.hint is not None
    assert env_var in err.hint
    assert err.retryable is False


@pytest.mark.parametrize(
    ("raw", "has_tool_calls", "expected"),
    [
        ("completed", False, "stop"),
        ("completed", True, "tool_calls"),
        ("STOP", True, "tool_calls"),
        ("max_output_tokens", False, "length"),
        ("MAX_TOKENS", False, "length"),
        ("SAFETY", False, "content_filter"),
        ("MALFORMED_FUNCTION_CALL", False, "malformed_function_call"),
        (None, True, "tool_calls"),
        (None, False, None),
    ],
)
def test_finish_reasons_share_one_vocabulary(
    raw: str | None, has_tool_calls: bool, expected: str | None
) -> None:
    assert normalize_finish_reason(raw, has_tool_calls=has_tool_calls) == expected


# =============================================================================
# Factory
# =============================================================================


def test_factory_returns_lazy_clients() -> None:
    openai_client = create_provider_client(Provider.OPENAI, "sk-test")
    gemini_client = create_provider_client(Provider.GEMINI, "g-test")

    assert isinstance(openai_client, OpenAIClient)
    assert isinstance(gemini_client, GeminiClient)
    assert openai_client.provider is Provider.OPENAI
    assert gemini_client.provider is Provider.GEMINI
    # No SDK client is built until the first call.
    assert openai_client._client is None
    assert gemini_client._client is None


def test_factory_requires_a_key() -> None:
    with pytest.raises(ConfigurationError, match="API key required for gemini"):
        create_provider_client(Provider.GEMINI, None)


# =============================================================================
# OpenAI (Characterization)
# =============================================================================


class _FakeResponses:
    """Captures kwargs passed to responses.create()."""

    def __init__(self, response: Any = None, error: BaseException | None = None) -> None:
        self.last_kwargs: dict[str, Any] | None = None
        self.response = response or SimpleNamespace(output=[], output_text="ok", usage=None)
        self.error = error

    async def create(self, **kwargs: Any) -> Any:
        self.last_kwargs = kwargs
        if self.error is not None:
            raise self.error
        return self.response


def _openai_with(responses: _FakeResponses) -> OpenAIClient:
    client = OpenAIClient("test-key")
    client._client = SimpleNamespace(responses=responses)
    return client


def test_openai_build_request_maps_tool_history_to_responses_items() -> None:
    client = OpenAIClient("test-key")

    kwargs = client.build_request(
        ChatRequest(
            model=OPENAI_MODEL,
            messages=_TOOL_HISTORY,
            temperature=0.7,
            max_tokens=1000,
            tools=(_ADD_TO_CART,),
        )
    )

    assert kwargs["model"] == OPENAI_MODEL
    assert kwargs["instructions"] == "You are a procurement assistant."
    assert kwargs["temperature"] == 0.7
    assert kwargs["max_output_tokens"] == 1000
    assert kwargs["tool_choice"] == "auto"
    assert kwargs["tools"] == [
        {
            "type": "function",
            "name": "add_to_cart",
            "description": "Add an item to the cart",
            "parameters": _ADD_TO_CART.parameters,
            "strict": False,
        }
    ]
    assert kwargs["input"] == [
        {"role": "user", "content": [{"type": "input_text", "text": "Add 2 of item-1"}]},
        {
            "type": "function_call",
            "call_id": "call_abc",
            "name": "add_to_cart",
            "arguments": '{"item_id": "item-1", "quantity": 2}',
        },
        {"type": "function_call_output", "call_id": "call_abc", "output": '{"success": true}'},
    ]


def test_openai_build_request_omits_unset_options() -> None:
    kwargs = OpenAIClient("test-key").build_request(
        ChatRequest(model=OPENAI_MODEL, messages=(Message(role="user", content="hi"),))
    )

    assert set(kwargs) == {"model", "input"}


def test_openai_preserves_assistant_text_alongside_tool_calls() -> None:
    kwargs = OpenAIClient("test-key").build_request(
        ChatRequest(
            model=OPENAI_MODEL,
            messages=(
                Message(
                    role="assistant",
                    content="Let me check.",
                    tool_calls=(ToolCall(id="c1", name="get_cart", arguments="{}"),),
                ),
            ),
        )
    )

    assert kwargs["input"][0] == {
        "role": "assistant",
        "content": [{"type": "output_text", "text": "Let me check."}],
    }
    assert kwargs["input"][1]["type"] == "function_call"


@pytest.mark.asyncio
async def test_openai_generate_parses_text_tool_calls_and_usage() -> None:
    response = SimpleNamespace(
        output=[
            SimpleNamespace(
                type="message",
                content=[SimpleNamespace(type="output_text", text="Searching now.")],
            ),
            SimpleNamespace(
                type="function_call",
                call_id="call_1",
                id="fc_1",
                name="search_catalog",
                arguments='{"query": "USB-C cable"}',
            ),
        ],
        usage=SimpleNamespace(input_tokens=120, output_tokens=30, total_tokens=150),
        status="completed",
    )
    responses = _FakeResponses(response)

    result = await _openai_with(responses).generate(
        ChatRequest(model=OPENAI_MODEL, messages=(Message(role="user", content="find cables"),))
    )

    assert result.text == "Searching now."
    assert result.tool_calls == (
        ToolCall(id="call_1", name="search_catalog", arguments='{"query": "USB-C cable"}'),
    )
    assert (result.usage.input_tokens, result.usage.output_tokens, result.usage.total_tokens) == (
        120,
        30,
        150,
    )
    assert result.provider is Provider.OPENAI
    assert result.model == OPENAI_MODEL
    assert result.finish_reason == "tool_calls"


def test_openai_incomplete_response_reports_its_reason() -> None:
    response = SimpleNamespace(
        output=[],
        output_text="partial",
        usage=SimpleNamespace(input_tokens=5, output_tokens=7, total_tokens=None),
        status="incomplete",
        incomplete_details=SimpleNamespace(reason="max_output_tokens"),
    )

    result = OpenAIClient("test-key").parse_response(response, model=OPENAI_MODEL)

    assert result.text == "partial"
    assert result.finish_reason == "length"
    assert result.usage.total_tokens == 12


@pytest.mark.asyncio
async def test_openai_generate_wraps_sdk_errors() -> None:
    class _SdkError(Exception):
        status_code = 503

    client = _openai_with(_FakeResponses(error=_SdkError("overloaded")))

    with pytest.raises(APIError) as exc:
        await client.generate(
            ChatRequest(model=OPENAI_MODEL, messages=(Message(role="user", content="hi"),))
        )

    assert exc.value.status_code == 503
    assert exc.value.retryable is True
    assert exc.value.provider == "openai"
    assert isinstance(exc.value.__cause__, _SdkError)


@pytest.mark.asyncio
async def test_openai_aclose_releases_the_sdk_client() -> None:
    closed: list[bool] = []

    async def close() -> None:
        closed.append(True)

    client = OpenAIClient("test-key")
    client._client = SimpleNamespace(close=close)

    await client.aclose()
    await client.aclose()

    assert closed == [True]
    assert client._client is None


# =============================================================================
# Gemini (Characterization)
# =============================================================================


def _gemini_with(generate_content: Any) -> GeminiClient:
    client = GeminiClient("test-key")
    client._client = SimpleNamespace(
        aio=SimpleNamespace(models=SimpleNamespace(generate_content=generate_content))
    )
    return client


def test_gemini_build_request_maps_tool_history_to_contents() -> None:
    kwargs = GeminiClient("test-key").build_request(
        ChatRequest(
            model=GEMINI_MODEL,
            messages=(
                *_TOOL_HISTORY,
                Message(role="tool", tool_call_id="call_abc", content="not json"),
            ),
            temperature=0.2,
            tools=(_ADD_TO_CART,),
        )
    )

    contents = kwargs["contents"]
    assert kwargs["model"] == GEMINI_MODEL
    assert len(contents) == 3

    assert contents[0].role == "user"
    assert contents[0].parts[0].text == "Add 2 of item-1"

    assert contents[1].role == "model"
    assert contents[1].parts[0].function_call.name == "add_to_cart"
    assert contents[1].parts[0].function_call.args == {"item_id": "item-1", "quantity": 2}

    # Consecutive function responses share one user turn.
    assert contents[2].role == "user"
    assert contents[2].parts[0].function_response.name == "add_to_cart"
    assert contents[2].parts[0].function_response.response == {"success": True}
    assert contents[2].parts[1].function_response.response == {"result": "not json"}

    config = kwargs["config"]
    assert "procurement assistant" in str(config.system_instruction)
    assert config.temperature == 0.2
    assert config.automatic_function_calling.disable is True
    declaration = config.tools[0].function_declarations[0]
    assert declaration.name == "add_to_cart"
    assert declaration.parameters_json_schema == _ADD_TO_CART.parameters


def test_gemini_parse_response_extracts_text_calls_and_usage() -> None:
    response = SimpleNamespace(
        candidates=[
            SimpleNamespace(
                finish_reason=SimpleNamespace(name="STOP"),
                content=SimpleNamespace(
                    parts=[
                        SimpleNamespace(
                            thought=True, text="internal reasoning", function_call=None
                        ),
                        SimpleNamespace(thought=False, text="Let me look.", function_call=None),
                        SimpleNamespace(
                            thought=False,
                            text=None,
                            function_call=SimpleNamespace(
                                id=None, name="search_catalog", args={"query": "cables"}
                            ),
                        ),
                    ]
                ),
            )
        ],
        usage_metadata=SimpleNamespace(
            prompt_token_count=10, candidates_token_count=25, total_token_count=35
        ),
    )

    result = GeminiClient("test-key").parse_response(response, model=GEMINI_MODEL)

    assert result.text == "Let me look."
    assert len(result.tool_calls) == 1
    call = result.tool_calls[0]
    assert call.name == "search_catalog"
    assert json.loads(call.arguments) == {"query": "cables"}
    assert call.id.startswith("call_")
    assert result.finish_reason == "tool_calls"
    assert (result.usage.input_tokens, result.usage.output_tokens, result.usage.total_tokens) == (
        10,
        25,
        35,
    )
    assert result.provider is Provider.GEMINI


def test_gemini_parse_response_handles_missing_attributes() -> None:
    result = GeminiClient("test-key").parse_response(SimpleNamespace(), model=GEMINI_MODEL)

    assert result.text == ""
    assert result.tool_calls == ()
    assert result.usage.is_empty
    assert result.is_empty


@pytest.mark.asyncio
async def test_gemini_generate_passes_request_shape_to_the_sdk() -> None:
    captured: dict[str, Any] = {}

    async def fake_generate_content(*, model: str, contents: Any, config: Any) -> Any:
        captured.update(model=model, contents=contents, config=config)
        return SimpleNamespace(text="hello", usage_metadata=None)

    result = await _gemini_with(fake_generate_content).generate(
        ChatRequest(model=GEMINI_MODEL, messages=(Message(role="user", content="hi"),))
    )

    assert result.text == "hello"
    assert captured["model"] == GEMINI_MODEL
    assert captured["contents"][0].parts[0].text == "hi"
    assert captured["config"].tools is None


@pytest.mark.asyncio
async def test_gemini_empty_sdk_result_is_an_api_error() -> None:
    async def fake_generate_content(**_kwargs: Any) -> Any:
        return None

    with pytest.raises(APIError, match="empty response"):
        await _gemini_with(fake_generate_content).generate(
            ChatRequest(model=GEMINI_MODEL, messages=(Message(role="user", content="hi"),))
        )


@pytest.mark.asyncio
async def test_gemini_generate_wraps_rate_limits() -> None:
    class _ClientError(Exception):
        code = 429

    async def fake_generate_content(**_kwargs: Any) -> Any:
        raise _ClientError("resource exhausted")

    with pytest.raises(RateLimitError) as exc:
        await _gemini_with(fake_generate_content).generate(
            ChatRequest(model=GEMINI_MODEL, messages=(Message(role="user", content="hi"),))
        )

    assert exc.value.retryable is True
    assert exc.value.provider == "gemini"
