"""Collaborator-backed step handlers - Agent Execution and Custom Function.

The engine does not know what an agent computes; it delegates to an
injected runner and records whatever dict it returns.
"""

import asyncio
import inspect
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Protocol

from taskgraph.core.logging import get_logger
from taskgraph.services.execution.errors import HandlerError
from taskgraph.services.execution.models import StepResult

logger = get_logger(__name__)


class AgentRunner(Protocol):
    """Runs one agent step: ``await runner(config, context) -> output dict``."""

    def __call__(self, config: Dict[str, Any],
                 context: Dict[str, Any]) -> Awaitable[Dict[str, Any]]:
        ...


def _as_output(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    return {"result": value}


async def handle_agent_execution(
    config: Dict[str, Any],
    context: Dict[str, Any],
    agent_runner: AgentRunner,
) -> StepResult:
    """Handle AGENT_EXECUTION step execution.

    Config:
        agent_id: identifier passed through to the runner
        output_key: context key for the agent output (default: none)
    """
    logger.info("[Agent] Executing", agent_id=config.get("agent_id"))
    output = _as_output(await agent_runner(config, context))

    output_key = config.get("output_key")
    patch = {output_key: output} if output_key else {}
    return StepResult(output=output, context_patch=patch)


async def handle_custom_function(
    config: Dict[str, Any],
    context: Dict[str, Any],
    functions: Dict[str, Callable[..., Any]],
) -> StepResult:
    """Call a named function from the registered function table.

    Config:
        function: name in the function table
        args: keyword arguments passed to the function
        target: optional context key to nest the output under

    The function may be sync or async and is called as
    ``fn(context, **args)``. Sync functions run in the default thread pool
    so they cannot block the event loop or outlive the step deadline.
    """
    name = config.get("function")
    fn = functions.get(name) if name else None
    if fn is None:
        raise HandlerError(f"Unknown custom function: {name}", retryable=False)

    call = partial(fn, context, **(config.get("args") or {}))
    if inspect.iscoroutinefunction(fn):
        result = await call()
    else:
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, call)
        if inspect.isawaitable(result):
            result = await result

    output = _as_output(result)
    target = config.get("target")
    patch = {target: output} if target else {}
    return StepResult(output=output, context_patch=patch)
