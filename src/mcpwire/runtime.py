"""Explicit wiring of the pool, registry, bridge, model client and event bus."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Mapping

from .ai.agent import Agent
from .ai.client import AIClient, ClientSettings
from .ai.conversation import ConversationOrchestrator, OrchestratorConfig
from .ai.messages import ChatCompletionProvider
from .mcp.bridge import FunctionBridge
from .mcp.config import load_mcp_config
from .mcp.models import ServerConfig
from .mcp.process_pool import ProcessPool
from .mcp.registry import CapabilityRegistry, RefreshPolicy
from .services.events import EventBus
from .services.settings import Settings

__all__ = ["Runtime"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    """Everything one process needs to talk to tool servers and a model.

    Build it with :meth:`from_settings`, ``await start()`` and hand out
    agents with :meth:`create_agent`.  ``aclose`` tears everything down in
    reverse order.
    """

    settings: Settings
    pool: ProcessPool
    registry: CapabilityRegistry
    bridge: FunctionBridge
    events: EventBus
    provider: ChatCompletionProvider
    agents: Dict[str, Agent] = field(default_factory=dict)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        servers: Mapping[str, ServerConfig] | Iterable[ServerConfig] | None = None,
        provider: ChatCompletionProvider | None = None,
    ) -> "Runtime":
        events = EventBus()
        pool = ProcessPool()
        registry = CapabilityRegistry(
            pool,
            events=events,
            refresh_policy=RefreshPolicy(
                attempts=settings.refresh_attempts,
                initial=settings.refresh_backoff_initial,
                maximum=settings.refresh_backoff_max,
            ),
            client_name=settings.client_name,
            client_version=settings.client_version,
            request_timeout=settings.mcp_request_timeout,
        )
        if servers is None:
            servers = load_mcp_config(Path(settings.mcp_config_path))
        configs = servers.values() if isinstance(servers, Mapping) else servers
        for config in configs:
            registry.add_server(config)
        if provider is None:
            provider = AIClient(ClientSettings.from_settings(settings))
        return cls(
            settings=settings,
            pool=pool,
            registry=registry,
            bridge=FunctionBridge(),
            events=events,
            provider=provider,
        )

    async def start(self) -> Dict[str, BaseException | None]:
        """Connect every configured server; failures are logged, not raised."""

        outcome = await self.registry.connect_all()
        for name, error in outcome.items():
            if error is not None:
                LOGGER.warning("MCP server '%s' unavailable: %s", name, error)
        return outcome

    def orchestrator_config(self) -> OrchestratorConfig:
        settings = self.settings
        return OrchestratorConfig(
            model=settings.model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            max_tool_rounds=settings.max_tool_rounds,
            tool_call_max_age=settings.tool_call_max_age,
            system_prompt=settings.system_prompt,
        )

    def create_agent(self, name: str) -> Agent:
        if name in self.agents:
            raise ValueError(f"Agent '{name}' already exists")
        orchestrator = ConversationOrchestrator(
            self.provider,
            self.registry,
            bridge=self.bridge,
            events=self.events,
            config=self.orchestrator_config(),
        )
        agent = Agent(name, orchestrator, self.registry)
        self.agents[name] = agent
        LOGGER.debug("Created agent %s", name)
        return agent

    async def aclose(self) -> None:
        for agent in list(self.agents.values()):
            await agent.aclose()
        self.agents.clear()
        await self.registry.close()
        await self.pool.shutdown_all()
        close = getattr(self.provider, "aclose", None)
        if close is not None:
            await close()
        self.events.clear()

    async def __aenter__(self) -> "Runtime":
        await self.start()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()
