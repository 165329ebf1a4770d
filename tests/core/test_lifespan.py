"""Tests for the engine lifespan and logging configuration."""

import asyncio
import json
import logging
import time

import pytest
import structlog

from taskgraph.core import health
from taskgraph.core.config import Settings
from taskgraph.core.container import Container
from taskgraph.core.health import get_health_status, get_uptime
from taskgraph.core.lifespan import engine_lifespan
from taskgraph.core.logging import configure_logging, get_logger
from taskgraph.services.execution import (
    Execution,
    ExecutionStatus,
    NodeState,
    NodeStatus,
    StepResult,
    StepSpec,
    WorkflowDefinition,
)
from taskgraph.services.handlers import StepKind


@pytest.fixture
def restore_logging(monkeypatch):
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    monkeypatch.setattr(health, "_startup_time", 0.0)
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def container(tmp_path, restore_logging):
    container = Container()
    container.settings.override(Settings(
        _env_file=None,
        log_format="json",
        stop_grace_seconds=0.1,
        log_file=str(tmp_path / "logs" / "engine.log"),
    ))
    yield container
    container.settings.reset_override()


def _json_lines(path):
    return [json.loads(line) for line in path.read_text().splitlines()
            if line.startswith("{")]


class TestEngineLifespan:
    @pytest.mark.asyncio
    async def test_startup_records_uptime(self, container):
        assert get_uptime() == 0.0

        async with engine_lifespan(container) as engine:
            assert health._startup_time > 0
            report = await get_health_status(engine.cache(), engine.executor(),
                                             engine.settings())

        assert report["status"] == "healthy"
        assert report["uptime_seconds"] >= 0

    @pytest.mark.asyncio
    async def test_startup_recovers_interrupted_executions(self, container):
        store = container.store()
        execution = Execution.create("definition-1")
        execution.status = ExecutionStatus.RUNNING
        execution.started_at = time.time()
        await store.save_execution(execution)
        await store.save_node_state(execution.id, "A",
                                    NodeState(node_id="A", status=NodeStatus.RUNNING))

        async with engine_lifespan(container):
            recovered, states, _ = await store.load_execution_snapshot(execution.id)

        assert recovered.status == ExecutionStatus.FAILED
        assert [s.status for s in states] == [NodeStatus.FAILED]

    @pytest.mark.asyncio
    async def test_shutdown_stops_running_executions(self, container):
        async def hang(config, context):
            await asyncio.sleep(3600)

        container.registry().register(StepKind.NOOP, hang)
        definition = WorkflowDefinition(steps=[StepSpec(id="A", kind="NOOP")])

        async with engine_lifespan(container) as engine:
            await engine.store().save_definition(definition)
            execution_id = await engine.executor().start(definition.id)

        status = await asyncio.wait_for(container.executor().wait(execution_id), timeout=2)
        assert status.status == ExecutionStatus.STOPPED

    @pytest.mark.asyncio
    async def test_log_lines_carry_execution_and_node_ids(self, container, tmp_path):
        step_logger = get_logger("tests.step")

        async def chatty(config, context):
            step_logger.info("Inside step")
            return StepResult()

        container.registry().register(StepKind.NOOP, chatty)
        definition = WorkflowDefinition(steps=[StepSpec(id="A", kind="NOOP")])

        async with engine_lifespan(container) as engine:
            await engine.store().save_definition(definition)
            result = await engine.executor().execute(definition.id)

        lines = _json_lines(tmp_path / "logs" / "engine.log")
        events = [line["event"] for line in lines]
        assert "Engine started successfully" in events
        assert "Engine shutdown complete" in events

        inside = next(line for line in lines if line["event"] == "Inside step")
        assert inside["execution_id"] == result.execution.id
        assert inside["node_id"] == "A"
        assert inside["logger"] == "tests.step"
        assert inside["level"] == "info"


class TestConfigureLogging:
    def test_console_format_sets_root_level(self, restore_logging):
        configure_logging(Settings(_env_file=None, log_format="console",
                                   log_level="WARNING"))

        assert logging.getLogger().level == logging.WARNING
        assert structlog.is_configured()
