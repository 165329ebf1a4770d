"""Shared fixtures for engine tests.

Everything runs on the in-memory CacheService with near-zero backoff, and
steps call into a ``Recorder`` function table through CUSTOM_FUNCTION so
tests can script success, failure and latency per node.
"""

import asyncio
import time
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from taskgraph.core.cache import CacheService
from taskgraph.core.config import Settings
from taskgraph.services.execution import (
    ExecutionEventChannel,
    ExecutionStore,
    HandlerError,
    StepSpec,
    WorkflowDefinition,
    WorkflowExecutor,
)
from taskgraph.services.handlers import build_default_registry


class Recorder:
    """CUSTOM_FUNCTION table that records every call by label."""

    def __init__(self):
        self.calls: List[str] = []
        self.running = 0
        self.max_running = 0

    def count(self, label: str) -> int:
        return self.calls.count(label)

    def ok(self, context: Dict[str, Any], label: str = "", **extra: Any) -> Dict[str, Any]:
        self.calls.append(label)
        return {"label": label, **extra}

    def fail(self, context: Dict[str, Any], label: str = "", retryable: bool = True) -> None:
        self.calls.append(label)
        raise HandlerError(f"{label} failed", retryable=retryable)

    def flaky(self, context: Dict[str, Any], label: str = "", failures: int = 1) -> Dict[str, Any]:
        self.calls.append(label)
        if self.count(label) <= failures:
            raise HandlerError(f"{label} transient failure")
        return {"label": label}

    async def slow(self, context: Dict[str, Any], label: str = "",
                   seconds: float = 0.05) -> Dict[str, Any]:
        self.calls.append(label)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(seconds)
        finally:
            self.running -= 1
        return {"label": label}

    def block(self, context: Dict[str, Any], label: str = "",
              seconds: float = 0.5) -> Dict[str, Any]:
        self.calls.append(label)
        time.sleep(seconds)
        return {"label": label}

    def table(self) -> Dict[str, Any]:
        return {"ok": self.ok, "fail": self.fail, "flaky": self.flaky, "slow": self.slow,
                "block": self.block}


def step(step_id: str, function: str = "ok", order: int = 0, args: Dict[str, Any] = None,
         **fields: Any) -> StepSpec:
    """CUSTOM_FUNCTION step calling ``function`` with ``label=step_id``."""
    return StepSpec(
        id=step_id,
        kind="CUSTOM_FUNCTION",
        config={"function": function, "args": {"label": step_id, **(args or {})}},
        step_order=order,
        **fields,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        retry_base_delay=0.01,
        retry_max_delay=0.1,
        stop_grace_seconds=0.2,
    )


@pytest.fixture
def cache(settings: Settings) -> CacheService:
    return CacheService(settings)


@pytest.fixture
def store(cache: CacheService) -> ExecutionStore:
    return ExecutionStore(cache)


@pytest.fixture
def events() -> ExecutionEventChannel:
    return ExecutionEventChannel()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def registry(recorder: Recorder):
    return build_default_registry(functions=recorder.table())


@pytest_asyncio.fixture
async def executor(store, registry, settings, events):
    engine = WorkflowExecutor(store, registry, settings=settings, events=events)
    yield engine
    await engine.shutdown()


@pytest.fixture
def define(store: ExecutionStore):
    """Save a definition built from steps and return its id."""

    async def _define(*steps: StepSpec, name: str = "test") -> str:
        definition = WorkflowDefinition(name=name, steps=list(steps))
        await store.save_definition(definition)
        return definition.id

    return _define


def drain(queue: asyncio.Queue) -> list:
    """Everything currently buffered in an event queue."""
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items
