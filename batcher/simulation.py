"""
Batcher — Simulation Backend

In-memory implementations of the external collaborators, for dev/test
and the CLI. Same process, no remote nodes:

  SimulatedTarget     — mutable value/resistance state of one target
  LinearEffectOracle  — effects linear in units, durations scaling with
                        resistance (reinforce 3.2×, counter 4× extraction)
  SimulatedInventory  — fixed node list, payload distribution with
                        injectable failures
  SimulatedLauncher   — schedules each operation on the running event
                        loop, applies its effect on completion and writes
                        an operation report to the completion channel

A time_scale below 1.0 compresses simulated milliseconds so test runs
finish quickly; relative order within a batch is preserved.
"""

from __future__ import annotations

import asyncio
import itertools
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from batcher.channels import ChannelRegistry, OperationReport
from batcher.config import BatcherConfig
from batcher.errors import InvalidParameter
from batcher.types import NodeInfo, OperationKind, TargetState

# Duration of each kind relative to an extraction
REINFORCE_TIME_FACTOR = 3.2
COUNTER_TIME_FACTOR = 4.0


# ═══════════════════════════════════════════════════════════════════
# Targets
# ═══════════════════════════════════════════════════════════════════

@dataclass
class SimulatedTarget:
    name: str
    max_value: float
    min_resistance: float
    current_value: float | None = None
    current_resistance: float | None = None
    base_extraction_ms: float = 1000.0   # extraction time at min resistance
    extraction_rate: float = 0.002       # share of max value per unit
    growth_rate: float = 0.0025          # compound growth per unit

    def __post_init__(self):
        if self.current_value is None:
            self.current_value = self.max_value
        if self.current_resistance is None:
            self.current_resistance = self.min_resistance

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> SimulatedTarget:
        try:
            return cls(name=name, **data)
        except TypeError as e:
            raise InvalidParameter(f"invalid simulated target {name}: {e}", target=name) from e

    def state(self) -> TargetState:
        return TargetState(
            max_value=self.max_value,
            current_value=self.current_value,
            min_resistance=self.min_resistance,
            current_resistance=self.current_resistance,
        )

    # ─── Effects ────────────────────────────────────────────────────

    def extract(self, units: int, resistance_per_unit: float) -> float:
        """Remove value; returns the amount removed."""
        amount = min(self.current_value, units * self.extraction_rate * self.max_value)
        self.current_value -= amount
        self.current_resistance += units * resistance_per_unit
        return amount

    def reinforce(self, units: int, resistance_per_unit: float) -> float:
        """Grow value; returns the multiplier achieved."""
        before = max(self.current_value, 1.0)
        self.current_value = min(self.max_value, before * (1 + self.growth_rate) ** units)
        self.current_resistance += units * resistance_per_unit
        return self.current_value / before

    def counter(self, units: int, unit_effect: float) -> float:
        """Lower resistance toward its minimum; returns the amount removed."""
        before = self.current_resistance
        self.current_resistance = max(self.min_resistance, before - units * unit_effect)
        return before - self.current_resistance


class LinearEffectOracle:
    """
    EffectOracle over a dict of SimulatedTargets.

    Resistance effects are linear in units and identical for every
    target, so counter units divide out exactly.
    """

    def __init__(
        self,
        targets: dict[str, SimulatedTarget],
        counter_unit_effect: float = 0.05,
        extract_resistance: float = 0.002,
        reinforce_resistance: float = 0.004,
    ):
        self.targets = targets
        self._counter_unit_effect = counter_unit_effect
        self.extract_resistance = extract_resistance
        self.reinforce_resistance = reinforce_resistance

    @property
    def counter_unit_effect(self) -> float:
        return self._counter_unit_effect

    def _target(self, target: str) -> SimulatedTarget:
        try:
            return self.targets[target]
        except KeyError:
            raise InvalidParameter(f"unknown target {target}", target=target) from None

    def operation_duration(self, kind: OperationKind, target: str) -> float:
        t = self._target(target)
        base = t.base_extraction_ms * t.current_resistance / t.min_resistance
        if kind == OperationKind.REINFORCE:
            return base * REINFORCE_TIME_FACTOR
        if kind == OperationKind.COUNTER:
            return base * COUNTER_TIME_FACTOR
        return base

    def extraction_units_for(self, target: str, fraction: float) -> float:
        return fraction / self._target(target).extraction_rate

    def reinforcement_units_for(self, target: str, multiplier: float) -> float:
        if multiplier <= 1:
            return 0.0
        return math.log(multiplier) / math.log(1 + self._target(target).growth_rate)

    def resistance_delta(self, units: int, kind: OperationKind) -> float:
        if kind == OperationKind.EXTRACT:
            return units * self.extract_resistance
        if kind == OperationKind.REINFORCE:
            return units * self.reinforce_resistance
        return -units * self._counter_unit_effect

    def target_state(self, target: str) -> TargetState:
        return self._target(target).state()

    def apply(self, kind: OperationKind, target: str, units: int) -> float:
        """Apply one completed operation to the target; returns its result."""
        t = self._target(target)
        if kind == OperationKind.EXTRACT:
            return t.extract(units, self.extract_resistance)
        if kind == OperationKind.REINFORCE:
            return t.reinforce(units, self.reinforce_resistance)
        return t.counter(units, self._counter_unit_effect)


# ═══════════════════════════════════════════════════════════════════
# Nodes
# ═══════════════════════════════════════════════════════════════════

class SimulatedInventory:
    """NodeInventory over a fixed node list."""

    def __init__(self, nodes: Iterable[NodeInfo], failing_nodes: Iterable[str] = ()):
        self._nodes = list(nodes)
        self.failing_nodes = set(failing_nodes)
        self.payloads: dict[str, list[str]] = {}

    @classmethod
    def from_config(cls, nodes: list[dict[str, Any]]) -> SimulatedInventory:
        return cls(
            NodeInfo(
                node_id=str(n["node_id"]),
                free_capacity=float(n.get("capacity", 0)),
                has_access=bool(n.get("has_access", True)),
            )
            for n in nodes
        )

    def list_nodes(self) -> list[NodeInfo]:
        return list(self._nodes)

    def distribute_payload(self, node_id: str, paths: Sequence[str]) -> bool:
        if node_id in self.failing_nodes:
            return False
        self.payloads[node_id] = list(paths)
        return True


@dataclass
class LaunchRecord:
    handle: int
    node_id: str
    operation_id: str
    kind: OperationKind
    unit_count: int
    duration_ms: float
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


class SimulatedLauncher:
    """
    ProcessLauncher that runs operations as event-loop timers.

    Must be used from inside a running event loop. Launches on nodes in
    `failing_nodes` return 0.
    """

    def __init__(
        self,
        oracle: LinearEffectOracle,
        channels: ChannelRegistry,
        time_scale: float = 1.0,
        failing_nodes: Iterable[str] = (),
    ):
        self._oracle = oracle
        self._channels = channels
        self.time_scale = time_scale
        self.failing_nodes = set(failing_nodes)
        self._handles = itertools.count(1)
        self.running: dict[int, LaunchRecord] = {}
        self.completed = 0
        self.terminated = 0

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
    ) -> int:
        if node_id in self.failing_nodes:
            return 0

        loop = asyncio.get_running_loop()
        duration = self._oracle.operation_duration(kind, target)
        record = LaunchRecord(
            handle=next(self._handles),
            node_id=node_id,
            operation_id=operation_id,
            kind=kind,
            unit_count=unit_count,
            duration_ms=duration,
        )
        delay_s = (start_offset_ms + duration) * self.time_scale / 1000
        record.timer = loop.call_later(
            delay_s, self._complete, record, target, completion_channel_id,
        )
        self.running[record.handle] = record
        return record.handle

    def _complete(self, record: LaunchRecord, target: str, channel_id: int) -> None:
        self.running.pop(record.handle, None)
        value = self._oracle.apply(record.kind, target, record.unit_count)
        self.completed += 1
        self._channels.send(channel_id, OperationReport(
            operation_id=record.operation_id,
            kind=record.kind,
            time_taken_ms=record.duration_ms,
            return_value=value,
        ))

    def terminate(self, handle: int) -> None:
        record = self.running.pop(handle, None)
        if record is None:
            return
        record.timer.cancel()
        self.terminated += 1


# ═══════════════════════════════════════════════════════════════════
# Wiring
# ═══════════════════════════════════════════════════════════════════

@dataclass
class Simulation:
    targets: dict[str, SimulatedTarget]
    oracle: LinearEffectOracle
    inventory: SimulatedInventory
    launcher: SimulatedLauncher
    channels: ChannelRegistry


def build_simulation(config: BatcherConfig, channels: ChannelRegistry | None = None) -> Simulation:
    """Wire the simulated collaborators from the `simulation:` section."""
    sim = config.simulation
    channels = channels or ChannelRegistry()
    targets = {
        name: SimulatedTarget.from_dict(name, data or {})
        for name, data in sim.targets.items()
    }
    oracle = LinearEffectOracle(
        targets,
        counter_unit_effect=sim.counter_unit_effect,
        extract_resistance=sim.extract_resistance,
        reinforce_resistance=sim.reinforce_resistance,
    )
    return Simulation(
        targets=targets,
        oracle=oracle,
        inventory=SimulatedInventory.from_config(sim.nodes),
        launcher=SimulatedLauncher(oracle, channels, time_scale=sim.time_scale),
        channels=channels,
    )
