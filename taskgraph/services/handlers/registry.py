"""Step handler registry keyed by StepKind.

Each kind maps to one Capability: an async ``handler(config, context)``
returning a StepResult, plus a flag saying whether it touches external
systems (elided in dry runs). Service dependencies are bound via partial
when the registry is built, so handlers stay plain functions.
"""

from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Optional

import httpx

from taskgraph.core.logging import get_logger
from taskgraph.services.execution.errors import UnknownStepKind
from taskgraph.services.execution.retry import StepHandler
from .agent import AgentRunner, handle_agent_execution, handle_custom_function
from .data import (
    handle_conditional_branch,
    handle_data_transform,
    handle_noop,
    handle_prompt_template,
)
from .http import handle_api_call

logger = get_logger(__name__)


class StepKind(str, Enum):
    """Closed set of step kinds the engine can dispatch."""
    AGENT_EXECUTION = "AGENT_EXECUTION"
    DATA_TRANSFORM = "DATA_TRANSFORM"
    CONDITIONAL_BRANCH = "CONDITIONAL_BRANCH"
    PROMPT_TEMPLATE = "PROMPT_TEMPLATE"
    API_CALL = "API_CALL"
    CUSTOM_FUNCTION = "CUSTOM_FUNCTION"
    NOOP = "NOOP"


@dataclass(frozen=True)
class Capability:
    handler: StepHandler
    side_effects: bool = False
    # False when the handler renders its own templates (e.g. with defaults)
    resolve_templates: bool = True


class HandlerRegistry:
    """Explicit StepKind -> Capability lookup, built once at startup."""

    def __init__(self):
        self._capabilities: Dict[StepKind, Capability] = {}

    def register(self, kind: StepKind, handler: StepHandler,
                 side_effects: bool = False, resolve_templates: bool = True) -> None:
        """Register (or replace) the capability for a kind."""
        kind = StepKind(kind)
        if kind in self._capabilities:
            logger.info("Replacing step handler", kind=kind.value)
        self._capabilities[kind] = Capability(
            handler=handler,
            side_effects=side_effects,
            resolve_templates=resolve_templates,
        )

    def resolve(self, kind: str) -> Capability:
        """Look up the capability for a step's kind string.

        Raises:
            UnknownStepKind: The string is not a StepKind, or nothing is registered
        """
        try:
            step_kind = StepKind(kind)
        except ValueError:
            raise UnknownStepKind(kind) from None

        capability = self._capabilities.get(step_kind)
        if capability is None:
            raise UnknownStepKind(kind)
        return capability

    def kinds(self) -> List[StepKind]:
        return list(self._capabilities)

    def __contains__(self, kind: str) -> bool:
        try:
            return StepKind(kind) in self._capabilities
        except ValueError:
            return False


def build_default_registry(
    http_client: Optional[httpx.AsyncClient] = None,
    http_timeout: float = 30.0,
    agent_runner: Optional[AgentRunner] = None,
    functions: Optional[Dict[str, Callable[..., Any]]] = None,
) -> HandlerRegistry:
    """Build a registry with the built-in step handlers.

    Args:
        http_client: Shared client for API_CALL steps (a new one per call if None)
        http_timeout: Default request timeout for API_CALL steps
        agent_runner: Collaborator that runs AGENT_EXECUTION steps; the kind
            stays unregistered without one
        functions: Name -> callable table for CUSTOM_FUNCTION steps

    Returns:
        Populated HandlerRegistry
    """
    registry = HandlerRegistry()

    registry.register(StepKind.NOOP, handle_noop)
    registry.register(StepKind.DATA_TRANSFORM, handle_data_transform)
    registry.register(StepKind.CONDITIONAL_BRANCH, handle_conditional_branch)
    registry.register(StepKind.PROMPT_TEMPLATE, handle_prompt_template, resolve_templates=False)
    registry.register(
        StepKind.API_CALL,
        partial(handle_api_call, client=http_client, default_timeout=http_timeout),
        side_effects=True,
    )
    registry.register(
        StepKind.CUSTOM_FUNCTION,
        partial(handle_custom_function, functions=dict(functions or {})),
        side_effects=True,
    )

    if agent_runner is not None:
        registry.register(
            StepKind.AGENT_EXECUTION,
            partial(handle_agent_execution, agent_runner=agent_runner),
            side_effects=True,
        )

    logger.debug("Built handler registry", kinds=[k.value for k in registry.kinds()])
    return registry


__all__ = [
    "StepKind",
    "Capability",
    "HandlerRegistry",
    "build_default_registry",
]
