"""Wiring helpers that build a ready-to-use chat session from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import httpx

from ..ai.client import ChatClient
from ..ai.orchestration.adapters import ChatSessionModel
from ..ai.orchestration.budget import BudgetTracker
from ..ai.orchestration.continuation import ContinuationLoop
from ..ai.orchestration.orchestrator import ContextProvider, OrchestratorConfig, TurnOrchestrator
from ..ai.tools.builtin import register_builtin_tools
from ..ai.tools.registry import ToolRegistry
from .history_store import HistoryStore
from .settings import ChatSettings, redact_secret

__all__ = ["ChatSession", "build_session", "build_budget"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ChatSession:
    """Everything a host needs to drive one conversation."""

    settings: ChatSettings
    client: ChatClient
    tools: ToolRegistry
    orchestrator: TurnOrchestrator
    model: ChatSessionModel

    def continuation(self, budget: BudgetTracker | None = None, **kwargs) -> ContinuationLoop:
        """Return an autonomous-run loop over this session's orchestrator."""

        return ContinuationLoop(self.orchestrator, budget or build_budget(self.settings), **kwargs)

    async def aclose(self) -> None:
        self.model.close()
        await self.client.aclose()


def build_budget(settings: ChatSettings) -> BudgetTracker:
    return BudgetTracker(
        settings.budget_total_tokens,
        reserve_output=settings.budget_reserve_output,
        reserve_safety=settings.budget_reserve_safety,
    )


def build_session(
    settings: ChatSettings,
    *,
    system_prompt: str | None = None,
    tools: ToolRegistry | None = None,
    include_builtin_tools: bool = True,
    history_store: HistoryStore | None = None,
    context_provider: ContextProvider | None = None,
    http_client: httpx.AsyncClient | None = None,
    tool_choice: str | None = "auto",
) -> ChatSession:
    """Create client, tool registry, orchestrator and session model from ``settings``.

    The API key is not checked here; a missing key surfaces as
    :class:`~docchat.ai.errors.ConfigError` on the first ``send``.
    """

    registry = tools if tools is not None else ToolRegistry()
    if include_builtin_tools:
        register_builtin_tools(registry)
    client = ChatClient(settings.to_client_settings(), http_client=http_client)
    config = OrchestratorConfig(
        system_prompt=system_prompt,
        max_tool_depth=settings.max_tool_depth,
        tool_choice=tool_choice,
        temperature=settings.temperature,
        response_format=settings.response_format(),
        tool_timeout=settings.tool_timeout,
    )
    orchestrator = TurnOrchestrator(
        client,
        tools=registry,
        config=config,
        context_provider=context_provider,
    )
    model = ChatSessionModel(orchestrator, history_store=history_store)
    LOGGER.debug(
        "Chat session ready (model=%s, base_url=%s, api key %s, tools=%s)",
        settings.model,
        settings.base_url,
        redact_secret(settings.api_key),
        registry.names(),
    )
    return ChatSession(settings, client, registry, orchestrator, model)
