"""Persistence gateway for definitions, executions, node states and attempts.

The engine depends only on ``ExecutionStoreProtocol``; ``ExecutionStore``
implements it on top of CacheService (Redis or in-memory).

Key schema:
    definition:{id}                     -> JSON WorkflowDefinition
    execution:{id}:state                -> JSON Execution
    execution:{id}:node:{node_id}       -> JSON NodeState
    execution:{id}:node_ids             -> SET {node_id}
    execution:{id}:attempts             -> LIST [Attempt JSON] (append-only)
    executions:active                   -> SET {execution_id}
"""

from typing import List, Protocol, Set, Tuple

from redis.exceptions import RedisError

from taskgraph.constants import (
    ACTIVE_EXECUTIONS_KEY,
    DEFINITION_KEY_PREFIX,
    EXECUTION_KEY_PREFIX,
)
from taskgraph.core.cache import CacheService
from taskgraph.core.logging import get_logger
from .errors import DefinitionNotFound, ExecutionNotFound, StoreError
from .models import Attempt, Execution, NodeState, WorkflowDefinition

logger = get_logger(__name__)


Snapshot = Tuple[Execution, List[NodeState], List[Attempt]]


class ExecutionStoreProtocol(Protocol):
    """Operations the engine requires from storage (read-your-writes)."""

    async def load_definition(self, definition_id: str) -> WorkflowDefinition:
        ...

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        ...

    async def save_execution(self, execution: Execution) -> None:
        ...

    async def save_node_state(self, execution_id: str, node_id: str, state: NodeState) -> None:
        ...

    async def append_attempt(self, execution_id: str, node_id: str, attempt: Attempt) -> None:
        ...

    async def load_execution_snapshot(self, execution_id: str) -> Snapshot:
        ...

    async def list_active_executions(self) -> Set[str]:
        ...


def _execution_key(execution_id: str, suffix: str) -> str:
    return f"{EXECUTION_KEY_PREFIX}:{execution_id}:{suffix}"


class ExecutionStore:
    """CacheService-backed persistence gateway."""

    def __init__(self, cache: CacheService, ttl: int = None):
        self.cache = cache
        self.ttl = ttl if ttl is not None else cache.settings.cache_ttl

    # =========================================================================
    # DEFINITIONS
    # =========================================================================

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Store a workflow definition by id."""
        key = f"{DEFINITION_KEY_PREFIX}:{definition.id}"
        await self._call("save_definition", self.cache.set(key, definition.model_dump(mode="json")))
        logger.debug("Saved definition", definition_id=definition.id,
                     steps=len(definition.steps))

    async def load_definition(self, definition_id: str) -> WorkflowDefinition:
        """Load a workflow definition.

        Raises:
            DefinitionNotFound: No definition stored under this id
        """
        data = await self._call("load_definition",
                                self.cache.get(f"{DEFINITION_KEY_PREFIX}:{definition_id}"))
        if data is None:
            raise DefinitionNotFound(definition_id)
        return WorkflowDefinition.model_validate(data)

    # =========================================================================
    # EXECUTION STATE
    # =========================================================================

    async def save_execution(self, execution: Execution) -> None:
        """Persist the execution record and maintain the active set."""
        key = _execution_key(execution.id, "state")
        await self._call("save_execution", self.cache.set(key, execution.to_dict()))

        if execution.status.is_terminal:
            await self._call("save_execution",
                             self.cache.set_remove(ACTIVE_EXECUTIONS_KEY, execution.id))
            await self._expire_execution(execution.id)
        else:
            await self._call("save_execution",
                             self.cache.set_add(ACTIVE_EXECUTIONS_KEY, execution.id))

        logger.debug("Saved execution state", execution_id=execution.id,
                     status=execution.status.value)

    async def save_node_state(self, execution_id: str, node_id: str, state: NodeState) -> None:
        """Persist one node's state."""
        await self._call("save_node_state", self.cache.set(
            _execution_key(execution_id, f"node:{node_id}"), state.to_dict()))
        await self._call("save_node_state", self.cache.set_add(
            _execution_key(execution_id, "node_ids"), node_id))

    async def append_attempt(self, execution_id: str, node_id: str, attempt: Attempt) -> None:
        """Append an attempt to the execution's audit log."""
        if attempt.node_id != node_id:
            raise StoreError(f"Attempt belongs to {attempt.node_id}, not {node_id}")
        await self._call("append_attempt", self.cache.list_append(
            _execution_key(execution_id, "attempts"), attempt.to_dict()))

    async def load_execution_snapshot(self, execution_id: str) -> Snapshot:
        """Load execution, node states (by node id) and attempts (append order).

        Raises:
            ExecutionNotFound: No execution stored under this id
        """
        data = await self._call("load_execution_snapshot",
                                self.cache.get(_execution_key(execution_id, "state")))
        if data is None:
            raise ExecutionNotFound(execution_id)
        execution = Execution.from_dict(data)

        node_ids = await self._call("load_execution_snapshot", self.cache.set_members(
            _execution_key(execution_id, "node_ids")))
        states = []
        for node_id in sorted(node_ids):
            node_data = await self._call("load_execution_snapshot", self.cache.get(
                _execution_key(execution_id, f"node:{node_id}")))
            if node_data is not None:
                states.append(NodeState.from_dict(node_data))

        raw_attempts = await self._call("load_execution_snapshot", self.cache.list_range(
            _execution_key(execution_id, "attempts")))
        attempts = [Attempt.from_dict(a) for a in raw_attempts]

        return execution, states, attempts

    async def list_active_executions(self) -> Set[str]:
        """Ids of executions not yet in a terminal state."""
        return await self._call("list_active_executions",
                                self.cache.set_members(ACTIVE_EXECUTIONS_KEY))

    async def remove_active(self, execution_id: str) -> None:
        """Drop an id from the active set without touching its keys."""
        await self._call("remove_active",
                         self.cache.set_remove(ACTIVE_EXECUTIONS_KEY, execution_id))

    async def delete_execution(self, execution_id: str) -> int:
        """Remove every key of an execution."""
        await self._call("delete_execution",
                         self.cache.set_remove(ACTIVE_EXECUTIONS_KEY, execution_id))
        return await self._call("delete_execution", self.cache.clear_pattern(
            _execution_key(execution_id, "*")))

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _expire_execution(self, execution_id: str) -> None:
        if not self.cache.is_redis_available():
            return
        node_ids = await self._call("expire", self.cache.set_members(
            _execution_key(execution_id, "node_ids")))
        keys = [_execution_key(execution_id, s) for s in ("state", "node_ids", "attempts")]
        keys += [_execution_key(execution_id, f"node:{n}") for n in node_ids]
        for key in keys:
            await self._call("expire", self.cache.expire(key, self.ttl))

    async def _call(self, operation: str, awaitable):
        """Await a cache operation, converting backend failures to StoreError."""
        try:
            return await awaitable
        except (RedisError, OSError, ValueError) as e:
            logger.error("Store operation failed", operation=operation, error=str(e))
            raise StoreError(f"{operation} failed: {e}") from e
