"""Pure step handlers - No-op, Data Transform, Conditional Branch, Prompt Template.

None of these touch external systems, so they also run during dry runs.
Config values arrive with ``{{path}}`` templates already resolved.
"""

from typing import Any, Dict

from taskgraph.core.logging import get_logger
from taskgraph.services.execution.conditions import evaluate_conditions, render_template
from taskgraph.services.execution.errors import HandlerError
from taskgraph.services.execution.models import StepResult

logger = get_logger(__name__)


def _patch(config: Dict[str, Any], output: Dict[str, Any]) -> Dict[str, Any]:
    """Context patch for an output: nested under ``config.target`` when set."""
    target = config.get("target")
    return {target: output} if target else dict(output)


async def handle_noop(config: Dict[str, Any], context: Dict[str, Any]) -> StepResult:
    """Placeholder step that succeeds with no output."""
    return StepResult()


async def handle_data_transform(config: Dict[str, Any], context: Dict[str, Any]) -> StepResult:
    """Copy resolved ``mapping`` values into the context.

    Config:
        mapping: dict of output key -> value (templates already resolved)
        target: optional context key to nest the output under
    """
    mapping = config.get("mapping")
    if not isinstance(mapping, dict):
        raise HandlerError("DATA_TRANSFORM requires a 'mapping' object", retryable=False)

    output = dict(mapping)
    return StepResult(output=output, context_patch=_patch(config, output))


async def handle_conditional_branch(config: Dict[str, Any],
                                    context: Dict[str, Any]) -> StepResult:
    """Evaluate conditions against the context.

    Config:
        conditions: list of {field, operator, value}
        logic: "and" (default) or "or"
        target: optional context key for {"matched": bool}
        fail_on_mismatch: raise a non-retryable error on mismatch so the
            step's failure edge is taken

    Downstream steps can gate on the patched ``matched`` flag with their
    own condition.
    """
    conditions = config.get("conditions") or []
    logic = config.get("logic", "and")
    if logic not in ("and", "or"):
        raise HandlerError(f"Unknown branch logic: {logic}", retryable=False)

    try:
        matched = evaluate_conditions(conditions, context, logic)
    except ValueError as e:
        raise HandlerError(f"Invalid branch condition: {e}", retryable=False) from e

    logger.debug("Conditional branch evaluated", matched=matched, logic=logic,
                 condition_count=len(conditions))

    if not matched and config.get("fail_on_mismatch"):
        raise HandlerError("Branch conditions not met", retryable=False)

    output = {"matched": matched}
    return StepResult(output=output, context_patch=_patch(config, output))


async def handle_prompt_template(config: Dict[str, Any],
                                 context: Dict[str, Any]) -> StepResult:
    """Render a prompt from a template and the execution context.

    Config:
        template: text with {{path}} placeholders, rendered against the context
        defaults: path -> fallback value for absent paths
        output_key: key of the rendered text (default "prompt")
    """
    template = config.get("template")
    if not isinstance(template, str):
        raise HandlerError("PROMPT_TEMPLATE requires a 'template' string", retryable=False)

    text = render_template(template, context, config.get("defaults") or {})
    output = {config.get("output_key", "prompt"): text}
    return StepResult(output=output, context_patch=dict(output))
