"""Step handlers package.

- registry.py: StepKind enum, HandlerRegistry, build_default_registry
- data.py: No-op, Data Transform, Conditional Branch, Prompt Template (pure)
- http.py: API Call (httpx)
- agent.py: Agent Execution, Custom Function (injected collaborators)
"""

from .agent import AgentRunner, handle_agent_execution, handle_custom_function
from .data import (
    handle_conditional_branch,
    handle_data_transform,
    handle_noop,
    handle_prompt_template,
)
from .http import handle_api_call
from .registry import Capability, HandlerRegistry, StepKind, build_default_registry

__all__ = [
    # Registry
    "StepKind",
    "Capability",
    "HandlerRegistry",
    "build_default_registry",
    # Handlers
    "AgentRunner",
    "handle_agent_execution",
    "handle_custom_function",
    "handle_conditional_branch",
    "handle_data_transform",
    "handle_noop",
    "handle_prompt_template",
    "handle_api_call",
]
