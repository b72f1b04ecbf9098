"""
Batcher — External Collaborator Protocols

The scheduling core never talks to the outside world directly. Three
collaborators are injected instead:

  EffectOracle    — pure queries: durations, unit requirements, deltas
  NodeInventory   — live node list and payload distribution
  ProcessLauncher — fire-and-forget launch and best-effort terminate

In production these wrap the host environment's APIs. In dev/test the
in-memory implementations in batcher.simulation stand in for them, so
the planner, dispatcher and manager run unchanged.
"""

from __future__ import annotations

from typing import Any, Protocol, Sequence

from batcher.types import NodeInfo, OperationKind, TargetState


class EffectOracle(Protocol):
    """Query-only view of the target's response to operations."""

    @property
    def counter_unit_effect(self) -> float:
        """Resistance removed by one unit of a counter operation."""
        ...

    def operation_duration(self, kind: OperationKind, target: str) -> float:
        """Milliseconds one operation of this kind takes against target now."""
        ...

    def extraction_units_for(self, target: str, fraction: float) -> float:
        """Units needed to extract `fraction` of the target's max value."""
        ...

    def reinforcement_units_for(self, target: str, multiplier: float) -> float:
        """Units needed to multiply the target's value by `multiplier`."""
        ...

    def resistance_delta(self, units: int, kind: OperationKind) -> float:
        """Resistance added by `units` units of an extract or reinforce op."""
        ...

    def target_state(self, target: str) -> TargetState:
        ...


class NodeInventory(Protocol):
    """Live fleet of capacity-bearing execution nodes."""

    def list_nodes(self) -> list[NodeInfo]:
        ...

    def distribute_payload(self, node_id: str, paths: Sequence[str]) -> bool:
        """Copy the operation payloads onto a node. False on failure."""
        ...


class ProcessLauncher(Protocol):
    """Starts remote operations and stops them at shutdown."""

    def launch(
        self,
        path: str,
        node_id: str,
        unit_count: int,
        operation_id: str,
        kind: OperationKind,
        target: str,
        start_offset_ms: float,
        completion_channel_id: int,
    ) -> Any:
        """
        Launch one operation.

        Returns:
            An execution handle, or 0/None if the launch failed.
        """
        ...

    def terminate(self, handle: Any) -> None:
        ...
