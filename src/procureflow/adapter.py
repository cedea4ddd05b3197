"""Provider Adapter: one normalized chat call over the active provider.

The adapter resolves the active provider once at construction (failing fast
on missing credentials), builds a provider request, runs it through the
reliability pipeline, and accounts for the tokens it used. Usage records and
token metrics are written by a detached task so the caller never waits on
them.
"""

from __future__ import annotations

from dataclasses import replace
import logging
from typing import TYPE_CHECKING

from procureflow._background import BackgroundTasks
from procureflow.config import ProviderConfig, resolve_provider
from procureflow.providers.factory import create_provider_client
from procureflow.providers.models import ChatRequest
from procureflow.reliability.pipeline import ReliabilityPipeline
from procureflow.tokens import TokenAccountant, default_accountant
from procureflow.usage import TokenUsageRecord

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from procureflow.config import Settings
    from procureflow.metrics import AgentMetrics
    from procureflow.providers.base import ChatClient, Provider
    from procureflow.providers.models import AIResponse, Message, ToolDefinition
    from procureflow.reliability.registry import ProviderRegistry
    from procureflow.usage import UsageStore

logger = logging.getLogger(__name__)


class ProviderAdapter:
    """Selects the provider, invokes it reliably and normalizes the result."""

    def __init__(
        self,
        settings: Settings,
        registry: ProviderRegistry,
        *,
        provider: str | Provider | None = None,
        clients: Mapping[Provider, ChatClient] | None = None,
        client_factory: Callable[[Provider, str | None], ChatClient] = create_provider_client,
        accountant: TokenAccountant | None = None,
        metrics: AgentMetrics | None = None,
        usage_store: UsageStore | None = None,
        background: BackgroundTasks | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.metrics = metrics if metrics is not None else registry.metrics
        self.pipeline = ReliabilityPipeline(registry, metrics=self.metrics)
        self.accountant = accountant or default_accountant
        self.usage_store = usage_store
        self.background = background or BackgroundTasks()
        self._client_factory = client_factory
        self._clients: dict[Provider, ChatClient] = dict(clients or {})

        self.provider = resolve_provider(settings, provider)
        self._client_for(self.provider)
        logger.info(
            "LLM provider selected",
            extra={
                "provider": self.provider.value,
                "model": settings.for_provider(self.provider).model,
            },
        )

    def _client_for(self, provider: Provider) -> ChatClient:
        client = self._clients.get(provider)
        if client is None:
            client = self._client_factory(provider, self.settings.api_key(provider))
            self._clients[provider] = client
        return client

    def default_config(self, tools: Iterable[ToolDefinition] = ()) -> ProviderConfig:
        return self.settings.provider_config(self.provider, tools=tuple(tools))

    async def invoke_chat(
        self,
        messages: Iterable[Message],
        *,
        tools: Iterable[ToolDefinition] = (),
        config: ProviderConfig | None = None,
        conversation_id: str | None = None,
        user_id: str | None = None,
        endpoint: str = "agent/chat",
    ) -> AIResponse:
        """Send *messages* to the active provider and return an AIResponse.

        Raises:
            ProviderUnavailable: the provider's breaker is open or saturated.
            ProviderCallFailed: the retry budget was spent.
        """
        tool_defs = tuple(tools)
        if config is None:
            config = self.default_config(tool_defs)
        elif tool_defs and not config.tools:
            config = replace(config, tools=tool_defs)

        client = self._client_for(config.provider)
        request = ChatRequest(
            model=config.model,
            messages=tuple(messages),
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            tools=config.tools,
        )

        response = await self.pipeline.execute(
            config.provider,
            lambda: client.generate(request),
            model=config.model,
        )

        if response.is_empty:
            logger.warning(
                "Provider returned no content and no tool calls",
                extra={
                    "provider": config.provider.value,
                    "model": config.model,
                    "finish_reason": response.finish_reason,
                },
            )

        if not response.usage.is_empty:
            cost = self._estimate_cost(config.model, response)
            response = replace(response, cost_usd=cost)
            record = TokenUsageRecord(
                provider=config.provider.value,
                model=config.model,
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
                total_tokens=response.usage.total_tokens,
                cost_usd=cost,
                tool_calls=len(response.tool_calls),
                user_id=user_id,
                conversation_id=conversation_id,
                endpoint=endpoint,
            )
            self.background.spawn(
                self._account_usage(record),
                name=f"usage:{config.provider.value}:{conversation_id or '-'}",
            )

        logger.info(
            "LLM response received",
            extra={
                "provider": config.provider.value,
                "model": config.model,
                "tool_call_count": len(response.tool_calls),
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
                "cost_usd": response.cost_usd,
                "conversation_id": conversation_id,
            },
        )
        return response

    def _estimate_cost(self, model: str, response: AIResponse) -> float:
        try:
            return self.accountant.estimate_cost(
                model, response.usage.input_tokens, response.usage.output_tokens
            )
        except Exception:
            logger.exception("Cost estimation failed; recording 0", extra={"model": model})
            return 0.0

    async def _account_usage(self, record: TokenUsageRecord) -> None:
        if self.metrics is not None:
            self.metrics.record_usage(
                provider=record.provider,
                model=record.model,
                input_tokens=record.prompt_tokens,
                output_tokens=record.completion_tokens,
                cost_usd=record.cost_usd,
            )
        if self.usage_store is None:
            return
        try:
            await self.usage_store.record(record)
        except Exception:
            logger.exception(
                "Failed to persist token usage",
                extra={
                    "provider": record.provider,
                    "model": record.model,
                    "conversation_id": record.conversation_id,
                },
            )

    async def aclose(self) -> None:
        """Flush detached work and close provider clients."""
        await self.background.drain()
        for client in self._clients.values():
            await client.aclose()
