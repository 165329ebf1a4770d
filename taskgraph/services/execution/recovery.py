"""Recovery sweeper for crash recovery.

Runs once at startup, before any executor owns an execution, to:
- Detect executions left PENDING/RUNNING by a process that died
- Reconcile their RUNNING nodes to FAILED (Cancelled)
- Mark the executions FAILED so operators can retry the failed nodes
"""

import time
from typing import List

from taskgraph.core.logging import get_logger
from .errors import Cancelled, ExecutionNotFound
from .models import ExecutionStatus, NodeStatus
from .store import ExecutionStore

logger = get_logger(__name__)

INTERRUPTED_ERROR = "Interrupted"


class RecoverySweeper:
    """Reconciles executions abandoned by a previous process.

    The engine does not resume work on its own after a crash. Interrupted
    executions end FAILED with every in-flight node FAILED, which is a state
    ``WorkflowExecutor.retry_task`` accepts.
    """

    def __init__(self, store: ExecutionStore):
        """Initialize recovery sweeper.

        Args:
            store: Persistence gateway to scan and repair
        """
        self.store = store

    async def recover(self) -> List[str]:
        """Scan active executions and reconcile the interrupted ones.

        Returns:
            Ids of executions that were marked FAILED
        """
        active_ids = await self.store.list_active_executions()
        if not active_ids:
            logger.debug("No active executions to recover")
            return []

        logger.info("Recovering interrupted executions", count=len(active_ids))

        recovered = []
        for execution_id in sorted(active_ids):
            if await self._recover_execution(execution_id):
                recovered.append(execution_id)

        logger.info("Recovery complete", recovered=len(recovered), scanned=len(active_ids))
        return recovered

    async def _recover_execution(self, execution_id: str) -> bool:
        """Reconcile one execution.

        Args:
            execution_id: Execution to check

        Returns:
            True if the execution was marked FAILED
        """
        try:
            execution, states, _ = await self.store.load_execution_snapshot(execution_id)
        except ExecutionNotFound:
            logger.warning("Orphan execution in active set", execution_id=execution_id)
            await self.store.remove_active(execution_id)
            return False

        if execution.status.is_terminal:
            # Should not be in the active set
            await self.store.remove_active(execution_id)
            return False

        now = time.time()
        error = Cancelled("Interrupted by process restart")
        reconciled = []
        for state in states:
            if state.status != NodeStatus.RUNNING:
                continue
            state.status = NodeStatus.FAILED
            state.last_error = f"{error.kind}: {error.message}"
            state.completed_at = now
            await self.store.save_node_state(execution_id, state.node_id, state)
            reconciled.append(state.node_id)

        execution.status = ExecutionStatus.FAILED
        execution.error = INTERRUPTED_ERROR
        execution.completed_at = now
        await self.store.save_execution(execution)

        logger.warning("Recovered interrupted execution",
                       execution_id=execution_id,
                       reconciled_nodes=reconciled)
        return True
