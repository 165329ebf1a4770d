"""Dependency injection container for the engine."""

from dependency_injector import containers, providers

from taskgraph.core.config import Settings
from taskgraph.core.cache import CacheService
from taskgraph.services.execution.events import ExecutionEventChannel
from taskgraph.services.execution.executor import WorkflowExecutor
from taskgraph.services.execution.recovery import RecoverySweeper
from taskgraph.services.execution.store import ExecutionStore
from taskgraph.services.handlers.registry import build_default_registry


class Container(containers.DeclarativeContainer):
    """Engine dependency injection container.

    Only wires constructors; nothing is built until a provider is called,
    so each Container instance yields an isolated engine.
    """

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Cache service (uses Redis when enabled, in-memory otherwise)
    cache = providers.Singleton(
        CacheService,
        settings=settings
    )

    # Persistence gateway
    store = providers.Singleton(
        ExecutionStore,
        cache=cache
    )

    # Outbound event channel
    events = providers.Singleton(
        ExecutionEventChannel,
    )

    # StepKind registry with the built-in handlers
    registry = providers.Singleton(
        build_default_registry,
        http_timeout=settings.provided.http_timeout
    )

    executor = providers.Singleton(
        WorkflowExecutor,
        store=store,
        registry=registry,
        settings=settings,
        events=events
    )

    recovery_sweeper = providers.Factory(
        RecoverySweeper,
        store=store
    )
