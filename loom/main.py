"""Loom runtime entry point.

Initializes all components and starts the server:
  Settings -> Database -> Provider -> ToolDispatcher -> ConversationLoop
  -> SessionCoordinator -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from loom.api.builtin_tools import register_builtin_tools
from loom.api.compaction import ConversationCompactor, SessionMemory
from loom.api.interaction import QuestionBroker
from loom.api.provider import AnthropicProvider
from loom.api.runner import ConversationLoop
from loom.api.sessions import SessionCoordinator
from loom.api.subagents import SubAgentSupervisor
from loom.api.tools import ToolDispatcher
from loom.config import Settings
from loom.state import RuntimeState
from loom.storage.database import Database
from loom.storage.sessions import SqlSessionStore

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.

    1. Database - engine + tables
    2. AnthropicProvider - httpx client
    3. ToolDispatcher - built-in tools, ask_user, sub-agent tools
    4. ConversationCompactor - session memory + summaries
    5. ConversationLoop - the turn engine
    6. SessionCoordinator - live sessions and persistence
    """
    database = Database(settings)
    await database.connect()
    store = SqlSessionStore(database)

    runtime = RuntimeState()

    provider = AnthropicProvider(settings)
    await provider.start()

    dispatcher = ToolDispatcher(settings, runtime)
    register_builtin_tools(dispatcher)
    QuestionBroker(settings, runtime).register(dispatcher)
    supervisor = SubAgentSupervisor(settings, runtime)
    supervisor.register(dispatcher)

    compactor = ConversationCompactor(settings, provider, SessionMemory(settings.session_memory_dir))
    loop = ConversationLoop(settings, provider, dispatcher, compactor)
    supervisor.bind(loop)

    coordinator = SessionCoordinator(settings, loop, runtime, store=store, supervisor=supervisor)

    return {
        "database": database,
        "provider": provider,
        "runtime": runtime,
        "dispatcher": dispatcher,
        "supervisor": supervisor,
        "loop": loop,
        "coordinator": coordinator,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Loom...")

    coordinator = components.get("coordinator")
    if coordinator:
        await coordinator.shutdown()

    provider = components.get("provider")
    if provider:
        await provider.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Loom shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    # Closure to share components between lifespan and app
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))

        # Store on app.state for access in tests
        app.state.components = components

        logger.info(
            "Loom started: model=%s, max_turns=%d, workspace=%s",
            settings.model,
            settings.max_turns,
            settings.workspace_dir,
        )
        yield

        await shutdown_components(components)

    # Import here to avoid circular imports at module level
    from loom.api.rest import create_app

    return create_app(
        coordinator=_lazy_component(components, "coordinator"),
        settings=settings,
        database=_lazy_component(components, "database"),
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized -- lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Loom runtime")
    logger.info("Model: %s", settings.model)
    logger.info("Database: %s", settings.database_url)
    logger.info("Permission mode: %s", settings.permission_mode)

    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "message endpoints will fail"
        )

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
