"""
Batcher — Type Definitions

All data structures for targets, operation templates, concrete batches,
capacity blocks and dispatch bookkeeping.
"""

from __future__ import annotations

import enum
import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping


# ─── Operations ─────────────────────────────────────────────────────

class OperationKind(str, enum.Enum):
    """
    The closed set of remote operation kinds.

    COUNTER serves both counter-effect roles in a batch: it restores the
    resistance raised by the preceding extraction or reinforcement.
    """
    EXTRACT = "extract"
    REINFORCE = "reinforce"
    COUNTER = "counter"


# Capacity consumed per unit, by kind
DEFAULT_UNIT_COSTS: dict[OperationKind, float] = {
    OperationKind.EXTRACT: 1.7,
    OperationKind.REINFORCE: 1.75,
    OperationKind.COUNTER: 1.75,
}


class DepthPolicy(str, enum.Enum):
    """How many batches of one template may be in flight at once."""
    TOTAL_DURATION = "total_duration"   # floor(total_duration / unsafe_duration)
    LAST_OPERATION = "last_operation"   # floor(last op duration / unsafe_duration)


def new_batch_id() -> str:
    return f"bat_{uuid.uuid4().hex[:12]}"


def new_operation_id() -> str:
    return f"op_{uuid.uuid4().hex[:12]}"


# ─── Target ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TargetState:
    """Live snapshot of a target. Never cached beyond one planning call."""
    max_value: float
    current_value: float
    min_resistance: float
    current_resistance: float

    @property
    def value_ratio(self) -> float:
        if self.max_value <= 0:
            return 0.0
        return self.current_value / self.max_value

    @property
    def resistance_ratio(self) -> float:
        """min / current; 1.0 means fully weakened."""
        if self.current_resistance <= 0:
            return 1.0
        return self.min_resistance / self.current_resistance


# ─── Templates ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class OperationTemplate:
    """One operation of a batch, relative to the batch's earliest start."""
    kind: OperationKind
    relative_start: float
    relative_end: float
    unit_count: int
    expected_return_value: float

    @property
    def duration(self) -> float:
        return self.relative_end - self.relative_start

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "relative_start": self.relative_start,
            "relative_end": self.relative_end,
            "unit_count": self.unit_count,
            "expected_return_value": self.expected_return_value,
        }


@dataclass(frozen=True)
class BatchTemplate:
    """
    Immutable blueprint from which concrete batches are stamped.

    Operations are stored in completion order. Derived quantities are
    computed once by BatchTemplate.build() and never change afterwards.
    """
    target: str
    operations: tuple[OperationTemplate, ...]
    spacer_ms: float
    total_duration: float
    unsafe_duration: float
    peak_capacity_usage: float
    expected_value_change: float = 0.0

    @staticmethod
    def build(
        target: str,
        operations: list[OperationTemplate],
        spacer_ms: float,
        unit_costs: Mapping[OperationKind, float],
        expected_value_change: float = 0.0,
    ) -> BatchTemplate:
        earliest = min(op.relative_start for op in operations)
        latest = max(op.relative_end for op in operations)
        return BatchTemplate(
            target=target,
            operations=tuple(operations),
            spacer_ms=spacer_ms,
            total_duration=latest - earliest,
            unsafe_duration=len(operations) * spacer_ms,
            peak_capacity_usage=sum(
                op.unit_count * unit_costs[op.kind] for op in operations
            ),
            expected_value_change=expected_value_change,
        )

    @property
    def operation_count(self) -> int:
        return len(self.operations)

    def max_concurrent_batches(
        self,
        policy: DepthPolicy | str = DepthPolicy.TOTAL_DURATION,
    ) -> int:
        """
        Batches of this template that can be in flight simultaneously.

        Never below 1: a template whose timing window is shorter than its
        unsafe duration can still run one batch at a time.
        """
        policy = DepthPolicy(policy)
        if policy == DepthPolicy.TOTAL_DURATION:
            window = self.total_duration
        else:
            window = self.operations[-1].duration
        return max(1, math.floor(window / self.unsafe_duration))

    def instantiate(self, delay_ms: float) -> Batch:
        """Stamp a concrete batch with fresh ids, shifted by delay_ms."""
        return Batch(
            batch_id=new_batch_id(),
            target=self.target,
            operations=[
                Operation(
                    operation_id=new_operation_id(),
                    kind=op.kind,
                    target=self.target,
                    start_ms=op.relative_start + delay_ms,
                    end_ms=op.relative_end + delay_ms,
                    unit_count=op.unit_count,
                    expected_return_value=op.expected_return_value,
                )
                for op in self.operations
            ],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "spacer_ms": self.spacer_ms,
            "total_duration": self.total_duration,
            "unsafe_duration": self.unsafe_duration,
            "peak_capacity_usage": self.peak_capacity_usage,
            "expected_value_change": self.expected_value_change,
            "operations": [op.to_dict() for op in self.operations],
        }


# ─── Concrete Batches ───────────────────────────────────────────────

@dataclass(frozen=True)
class Operation:
    """A concrete, dispatchable operation."""
    operation_id: str
    kind: OperationKind
    target: str
    start_ms: float
    end_ms: float
    unit_count: int
    expected_return_value: float = 0.0


@dataclass
class Batch:
    """One instantiation of a BatchTemplate."""
    batch_id: str
    target: str
    operations: list[Operation] = field(default_factory=list)


# ─── Capacity ───────────────────────────────────────────────────────

@dataclass
class CapacityBlock:
    """Free execution capacity on one node."""
    node_id: str
    free_capacity: float


@dataclass
class DispatchedOperation:
    """
    Bookkeeping for one reserved operation.

    execution_handle is None when the reservation came from a dry run.
    """
    operation: Operation
    node_id: str
    capacity_cost: float
    execution_handle: Any = None

    @property
    def operation_id(self) -> str:
        return self.operation.operation_id


@dataclass(frozen=True)
class NodeInfo:
    """One entry of the live node inventory."""
    node_id: str
    free_capacity: float
    has_access: bool = True
