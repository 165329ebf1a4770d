"""Tests for the StepKind registry."""

import pytest

from taskgraph.services.execution import StepResult, UnknownStepKind
from taskgraph.services.handlers import HandlerRegistry, StepKind, build_default_registry


async def _handler(config, context):
    return StepResult(output={"ok": True})


class TestHandlerRegistry:
    def test_register_and_resolve(self):
        registry = HandlerRegistry()
        registry.register(StepKind.NOOP, _handler, side_effects=True)

        capability = registry.resolve("NOOP")

        assert capability.handler is _handler
        assert capability.side_effects is True
        assert capability.resolve_templates is True
        assert "NOOP" in registry
        assert registry.kinds() == [StepKind.NOOP]

    def test_unknown_string(self):
        with pytest.raises(UnknownStepKind) as exc_info:
            HandlerRegistry().resolve("TELEPORT")
        assert exc_info.value.step_kind == "TELEPORT"
        assert not exc_info.value.retryable
        assert "TELEPORT" not in HandlerRegistry()

    def test_known_but_unregistered_kind(self):
        with pytest.raises(UnknownStepKind):
            HandlerRegistry().resolve("API_CALL")

    def test_registries_are_isolated(self):
        first, second = HandlerRegistry(), HandlerRegistry()
        first.register(StepKind.NOOP, _handler)
        assert "NOOP" not in second


class TestDefaultRegistry:
    def test_builtin_kinds(self):
        registry = build_default_registry()

        assert set(registry.kinds()) == {
            StepKind.NOOP,
            StepKind.DATA_TRANSFORM,
            StepKind.CONDITIONAL_BRANCH,
            StepKind.PROMPT_TEMPLATE,
            StepKind.API_CALL,
            StepKind.CUSTOM_FUNCTION,
        }
        assert "AGENT_EXECUTION" not in registry

    def test_side_effect_flags(self):
        registry = build_default_registry(agent_runner=_handler)

        assert registry.resolve("API_CALL").side_effects
        assert registry.resolve("CUSTOM_FUNCTION").side_effects
        assert registry.resolve("AGENT_EXECUTION").side_effects
        assert not registry.resolve("DATA_TRANSFORM").side_effects
        assert not registry.resolve("PROMPT_TEMPLATE").resolve_templates

    @pytest.mark.asyncio
    async def test_bound_functions_table(self):
        registry = build_default_registry(functions={"double": lambda ctx, n: {"n": n * 2}})

        handler = registry.resolve("CUSTOM_FUNCTION").handler
        result = await handler({"function": "double", "args": {"n": 4}}, {})

        assert result.output == {"n": 8}
