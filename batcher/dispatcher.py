"""
Batcher — Capacity Dispatcher

Best-fit bin-packing of operations onto execution nodes.

The dispatcher exclusively owns two structures:

  blocks      — one CapacityBlock per usable node, sorted ascending by
                free capacity so the first block that fits is the
                smallest one that fits
  dispatched  — operation_id → DispatchedOperation

Every launch in a run must go through one dispatcher. Capacity is
reserved at dispatch and released exactly once at free; an operation is
never split across nodes because its timing depends on running with
exactly the requested unit count.

Both structures are guarded by one re-entrant lock. The scheduling core
is single-threaded, but the status server reads snapshots from its own
thread.
"""

from __future__ import annotations

import threading
from typing import Any, Iterable, Mapping

from batcher.errors import (
    BatcherError,
    CapacityExhausted,
    DuplicateOperation,
    InvalidUnitCount,
    LaunchFailure,
    ProvisioningFailure,
    UnknownOperation,
)
from batcher.interfaces import NodeInventory, ProcessLauncher
from batcher.types import (
    DEFAULT_UNIT_COSTS,
    CapacityBlock,
    DispatchedOperation,
    Operation,
    OperationKind,
)
from infra.logging import StructuredLogger


DEFAULT_PAYLOAD_PATHS: dict[OperationKind, str] = {
    OperationKind.EXTRACT: "/batcher/payloads/extract.py",
    OperationKind.REINFORCE: "/batcher/payloads/reinforce.py",
    OperationKind.COUNTER: "/batcher/payloads/counter.py",
}

# Channel id used for dry-run reservations; nothing ever listens on it
DRY_RUN_CHANNEL = -1


class CapacityDispatcher:
    """
    Reserves node capacity for operations and launches them.

    Usage:
        dispatcher = CapacityDispatcher(inventory, launcher)
        dispatcher.dispatch(op, completion_channel_id=channel.channel_id)
        ...
        dispatcher.free(op.operation_id)
    """

    def __init__(
        self,
        inventory: NodeInventory,
        launcher: ProcessLauncher,
        unit_costs: Mapping[OperationKind, float] | None = None,
        payload_paths: Mapping[OperationKind, str] | None = None,
        reserved_capacity: Mapping[str, float] | None = None,
        logger: StructuredLogger | None = None,
    ):
        self._launcher = launcher
        self._unit_costs = dict(unit_costs or DEFAULT_UNIT_COSTS)
        self._payload_paths = dict(payload_paths or DEFAULT_PAYLOAD_PATHS)
        self._log = logger or StructuredLogger(component="dispatcher")
        self._lock = threading.RLock()
        self._blocks: list[CapacityBlock] = []
        self._dispatched: dict[str, DispatchedOperation] = {}

        reserved = reserved_capacity or {}
        paths = sorted(set(self._payload_paths.values()))
        nodes = inventory.list_nodes()

        for node in nodes:
            if not node.has_access:
                continue
            free = max(0.0, node.free_capacity - reserved.get(node.node_id, 0.0))
            if free <= 0:
                # Plenty of nodes carry no capacity at all
                continue
            if not inventory.distribute_payload(node.node_id, paths):
                raise ProvisioningFailure(
                    f"failed to distribute payloads to {node.node_id}",
                    node_id=node.node_id, paths=paths,
                )
            self._blocks.append(CapacityBlock(node_id=node.node_id, free_capacity=free))

        self._sort_blocks()
        self._log.info(
            "dispatcher_ready",
            nodes_seen=len(nodes),
            blocks=len(self._blocks),
            total_capacity=self.total_capacity,
        )

    # ─── Accounting ─────────────────────────────────────────────────

    @property
    def total_capacity(self) -> float:
        """Sum of free capacity; an upper bound for could_fit()."""
        with self._lock:
            return sum(block.free_capacity for block in self._blocks)

    @property
    def dispatched_count(self) -> int:
        with self._lock:
            return len(self._dispatched)

    def blocks(self) -> list[CapacityBlock]:
        """Snapshot of the blocks in best-fit order."""
        with self._lock:
            return [CapacityBlock(b.node_id, b.free_capacity) for b in self._blocks]

    def get_dispatched(self, operation_id: str) -> DispatchedOperation | None:
        with self._lock:
            return self._dispatched.get(operation_id)

    def cost_of(self, operation: Operation) -> float:
        return operation.unit_count * self._unit_costs[operation.kind]

    # ─── Dispatch / Free ────────────────────────────────────────────

    def dispatch(
        self,
        operation: Operation,
        completion_channel_id: int,
        dry_run: bool = False,
    ) -> DispatchedOperation:
        """
        Reserve capacity for one operation and, unless dry_run, launch it.

        Every dispatched operation MUST eventually be freed.

        Raises:
            DuplicateOperation: the operation id is already tracked
            InvalidUnitCount: unit_count <= 0
            CapacityExhausted: no single block can hold the operation
            LaunchFailure: the launcher returned no handle
        """
        with self._lock:
            if operation.operation_id in self._dispatched:
                raise DuplicateOperation(
                    f"operation {operation.operation_id} is already dispatched",
                    operation_id=operation.operation_id,
                )
            if operation.unit_count <= 0:
                raise InvalidUnitCount(
                    f"operation {operation.operation_id} has invalid unit count "
                    f"{operation.unit_count}",
                    operation_id=operation.operation_id,
                    unit_count=operation.unit_count,
                )

            cost = self.cost_of(operation)
            block = next((b for b in self._blocks if b.free_capacity >= cost), None)
            if block is None:
                raise CapacityExhausted(
                    f"no block can hold operation {operation.operation_id} "
                    f"({operation.kind.value}, cost {cost})",
                    operation_id=operation.operation_id,
                    cost=cost,
                )

            handle: Any = None
            if not dry_run:
                handle = self._launcher.launch(
                    self._payload_paths[operation.kind],
                    block.node_id,
                    operation.unit_count,
                    operation.operation_id,
                    operation.kind,
                    operation.target,
                    operation.start_ms,
                    completion_channel_id,
                )
                if not handle:
                    raise LaunchFailure(
                        f"failed to launch operation {operation.operation_id} "
                        f"on {block.node_id}",
                        operation_id=operation.operation_id,
                        node_id=block.node_id,
                    )

            block.free_capacity -= cost
            record = DispatchedOperation(
                operation=operation,
                node_id=block.node_id,
                capacity_cost=cost,
                execution_handle=handle,
            )
            self._dispatched[operation.operation_id] = record
            self._sort_blocks()

        self._log.on_operation_dispatched(
            operation.operation_id, operation.kind.value,
            operation.unit_count, block.node_id, dry_run,
        )
        return record

    def free(self, operation_id: str) -> None:
        """
        Return an operation's capacity to its block.

        Raises:
            UnknownOperation: the id is not tracked
        """
        with self._lock:
            record = self._dispatched.pop(operation_id, None)
            if record is None:
                raise UnknownOperation(
                    f"operation {operation_id} has not been dispatched",
                    operation_id=operation_id,
                )
            for block in self._blocks:
                if block.node_id == record.node_id:
                    block.free_capacity += record.capacity_cost
                    break
            self._sort_blocks()

        self._log.on_operation_freed(operation_id, record.node_id, record.capacity_cost)

    def free_and_release_all(self) -> None:
        """Terminate every launched operation (best effort) and free all capacity."""
        with self._lock:
            records = list(self._dispatched.values())
            self._log.on_release_all(len(records))
            for record in records:
                if record.execution_handle is not None:
                    try:
                        self._launcher.terminate(record.execution_handle)
                    except Exception as e:
                        self._log.on_terminate_failed(
                            record.operation_id, record.execution_handle, str(e),
                        )
                self.free(record.operation_id)

    # ─── Feasibility Probe ──────────────────────────────────────────

    def could_fit(self, operations: Iterable[Operation]) -> bool:
        """
        Whether every operation could be placed right now.

        Dry-runs the operations largest-first so the hardest placements
        fail fast. Any batcher error from a candidate (no room, a bad unit
        count, a duplicate id) means it does not fit. State is identical
        before and after, whatever the outcome.
        """
        candidates = sorted(operations, key=lambda op: op.unit_count, reverse=True)
        reserved: list[str] = []
        with self._lock:
            try:
                for operation in candidates:
                    self.dispatch(operation, DRY_RUN_CHANNEL, dry_run=True)
                    reserved.append(operation.operation_id)
            except BatcherError:
                return False
            finally:
                for operation_id in reserved:
                    self.free(operation_id)
        return True

    def _sort_blocks(self) -> None:
        self._blocks.sort(key=lambda b: b.free_capacity)
