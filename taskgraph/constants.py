"""Centralized constants for the execution engine.

Single source of truth for defaults shared by the models, the executor
and the persistence layer.
"""

from typing import FrozenSet

# =============================================================================
# STEP DEFAULTS
# =============================================================================

DEFAULT_TIMEOUT_SECONDS: int = 300
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_PARALLELISM: int = 5

# =============================================================================
# RETRY BACKOFF (seconds)
# =============================================================================

DEFAULT_RETRY_BASE_DELAY: float = 1.0
DEFAULT_RETRY_MAX_DELAY: float = 30.0
BACKOFF_MULTIPLIER: float = 2.0

# =============================================================================
# CONDITION OPERATORS
# =============================================================================

CONDITION_OPERATORS: FrozenSet[str] = frozenset([
    'equals',
    'notEquals',
    'greaterThan',
    'lessThan',
    'contains',
])

# =============================================================================
# STORAGE KEYS
# =============================================================================

DEFINITION_KEY_PREFIX = "definition"
EXECUTION_KEY_PREFIX = "execution"
ACTIVE_EXECUTIONS_KEY = "executions:active"

# Context key under which step outputs are collected
STEP_OUTPUTS_KEY = "steps"
