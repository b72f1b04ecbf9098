"""
Batcher — Run Configuration

Parses the `batcher:` section of the merged YAML config (see
infra.config_loader) into a typed BatcherConfig.

    batcher:
      spacer: 5ms
      extraction_fraction: 0.5
      prep_multiplier: 1.5
      prep_tolerance: 0.05
      max_depth: 64
      depth_policy: total_duration      # or last_operation
      unit_costs: {extract: 1.7, reinforce: 1.75, counter: 1.75}
      payloads: {extract: /batcher/payloads/extract.py, ...}
      reserved_capacity: {home: 256}
      status_port: 8080
      profile_fractions: [0.1, 0.2, ...]
      simulation:
        time_scale: 1.0
        nodes: [...]
        targets: {...}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from batcher.dispatcher import DEFAULT_PAYLOAD_PATHS
from batcher.errors import InvalidParameter
from batcher.types import DEFAULT_UNIT_COSTS, DepthPolicy, OperationKind


DEFAULT_PROFILE_FRACTIONS = [0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9]


@dataclass
class SimulationConfig:
    """In-memory fleet and targets for dev/test runs."""
    time_scale: float = 1.0
    counter_unit_effect: float = 0.05
    extract_resistance: float = 0.002
    reinforce_resistance: float = 0.004
    nodes: list[dict[str, Any]] = field(default_factory=list)
    targets: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass
class BatcherConfig:
    spacer_ms: float = 5.0
    extraction_fraction: float = 0.5
    prep_multiplier: float = 1.5
    prep_tolerance: float = 0.05
    max_depth: int = 64
    depth_policy: DepthPolicy = DepthPolicy.TOTAL_DURATION
    unit_costs: dict[OperationKind, float] = field(
        default_factory=lambda: dict(DEFAULT_UNIT_COSTS)
    )
    payloads: dict[OperationKind, str] = field(
        default_factory=lambda: dict(DEFAULT_PAYLOAD_PATHS)
    )
    reserved_capacity: dict[str, float] = field(default_factory=dict)
    status_port: int | None = None
    profile_fractions: list[float] = field(
        default_factory=lambda: list(DEFAULT_PROFILE_FRACTIONS)
    )
    simulation: SimulationConfig = field(default_factory=SimulationConfig)


# ═══════════════════════════════════════════════════════════════════
# Parsing
# ═══════════════════════════════════════════════════════════════════

def _parse_ms(raw: Any, key: str) -> float:
    """Accept 5, 5.0, "5" or "5ms"."""
    if isinstance(raw, str):
        raw = raw.strip()
        if raw.endswith("ms"):
            raw = raw[:-2]
    try:
        value = float(raw)
    except (TypeError, ValueError) as e:
        raise InvalidParameter(f"{key} is not a duration: {raw!r}", key=key) from e
    if value <= 0:
        raise InvalidParameter(f"{key} must be > 0, got {value}", key=key)
    return value


def _number(section: dict[str, Any], key: str, default: float) -> float:
    raw = section.get(key, default)
    try:
        return float(raw)
    except (TypeError, ValueError) as e:
        raise InvalidParameter(f"{key} is not a number: {raw!r}", key=key) from e


def _by_kind(raw: dict[str, Any] | None, key: str, base: dict[OperationKind, Any]) -> dict:
    result = dict(base)
    for name, value in (raw or {}).items():
        try:
            result[OperationKind(name)] = value
        except ValueError as e:
            raise InvalidParameter(f"{key} has unknown operation kind {name!r}", key=key) from e
    return result


def parse_batcher_config(section: dict[str, Any] | None) -> BatcherConfig:
    """Parse the `batcher:` section. Missing keys fall back to defaults."""
    if not section:
        return BatcherConfig()

    fraction = _number(section, "extraction_fraction", 0.5)
    if not 0 < fraction <= 1:
        raise InvalidParameter(
            f"extraction_fraction must be in (0, 1], got {fraction}", key="extraction_fraction",
        )

    multiplier = _number(section, "prep_multiplier", 1.5)
    if not multiplier > 1:
        raise InvalidParameter(
            f"prep_multiplier must be > 1, got {multiplier}", key="prep_multiplier",
        )

    tolerance = _number(section, "prep_tolerance", 0.05)
    if not 0 <= tolerance < 1:
        raise InvalidParameter(
            f"prep_tolerance must be in [0, 1), got {tolerance}", key="prep_tolerance",
        )

    max_depth = section.get("max_depth", 64)
    if isinstance(max_depth, bool) or not isinstance(max_depth, int) or max_depth < 1:
        raise InvalidParameter(f"max_depth must be an integer >= 1, got {max_depth!r}",
                               key="max_depth")

    try:
        policy = DepthPolicy(section.get("depth_policy", DepthPolicy.TOTAL_DURATION.value))
    except ValueError as e:
        raise InvalidParameter(
            f"unknown depth_policy {section.get('depth_policy')!r}", key="depth_policy",
        ) from e

    unit_costs = _by_kind(section.get("unit_costs"), "unit_costs", DEFAULT_UNIT_COSTS)
    for kind, cost in unit_costs.items():
        if isinstance(cost, bool) or not isinstance(cost, (int, float)) or cost <= 0:
            raise InvalidParameter(f"unit cost for {kind.value} must be > 0, got {cost!r}",
                                   key="unit_costs")
    unit_costs = {kind: float(cost) for kind, cost in unit_costs.items()}

    status_port = section.get("status_port")
    if status_port is not None and (isinstance(status_port, bool) or not isinstance(status_port, int)):
        raise InvalidParameter(f"status_port must be an integer, got {status_port!r}",
                               key="status_port")

    fractions = [float(f) for f in section.get("profile_fractions", DEFAULT_PROFILE_FRACTIONS)]
    if not fractions or any(not 0 < f <= 1 for f in fractions):
        raise InvalidParameter("profile_fractions must be non-empty and within (0, 1]",
                               key="profile_fractions")

    sim = section.get("simulation", {}) or {}
    time_scale = _number(sim, "time_scale", 1.0)
    if time_scale <= 0:
        raise InvalidParameter(f"simulation.time_scale must be > 0, got {time_scale}",
                               key="simulation.time_scale")

    return BatcherConfig(
        spacer_ms=_parse_ms(section.get("spacer", "5ms"), "spacer"),
        extraction_fraction=fraction,
        prep_multiplier=multiplier,
        prep_tolerance=tolerance,
        max_depth=max_depth,
        depth_policy=policy,
        unit_costs=unit_costs,
        payloads=_by_kind(section.get("payloads"), "payloads", DEFAULT_PAYLOAD_PATHS),
        reserved_capacity={
            node: float(amount)
            for node, amount in (section.get("reserved_capacity") or {}).items()
        },
        status_port=status_port,
        profile_fractions=sorted(fractions),
        simulation=SimulationConfig(
            time_scale=time_scale,
            counter_unit_effect=_number(sim, "counter_unit_effect", 0.05),
            extract_resistance=_number(sim, "extract_resistance", 0.002),
            reinforce_resistance=_number(sim, "reinforce_resistance", 0.004),
            nodes=list(sim.get("nodes", [])),
            targets=dict(sim.get("targets", {})),
        ),
    )
