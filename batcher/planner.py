"""
Batcher — Timing Planner

Derives self-consistent batch templates from the effect oracle.

Assuming the target is prepped (max value, min resistance), the 4-op
extraction template is timed so that completions land one spacer apart
and the target ends the batch prepped again:

                       |= extract ==================|            (1)
      |= counter ==========================================|     (2)
                    |= reinforce ============================|   (3)
            |= counter ==========================================|  (4)

      0-------------- time --------------------------|--|----->
                                                      |-> spacer

Extraction units are floored and every other unit count is ceiled: the
target must stay prepped even at the cost of a little efficiency.

This module is pure logic. It queries the oracle once per call and never
caches the target state beyond that call.
"""

from __future__ import annotations

import math
from typing import Mapping

from batcher.errors import InvalidParameter
from batcher.interfaces import EffectOracle
from batcher.types import (
    DEFAULT_UNIT_COSTS,
    BatchTemplate,
    OperationKind,
    OperationTemplate,
)
from infra.logging import StructuredLogger


# ═══════════════════════════════════════════════════════════════════
# Parameter Validation
# ═══════════════════════════════════════════════════════════════════

def _check_spacer(spacer_ms: float) -> None:
    if not spacer_ms > 0:
        raise InvalidParameter(
            f"spacer_ms must be > 0, got {spacer_ms}", spacer_ms=spacer_ms,
        )


def _check_max_value(oracle: EffectOracle, target: str) -> float:
    state = oracle.target_state(target)
    if state.max_value <= 0:
        raise InvalidParameter(
            f"target {target} has max value {state.max_value}", target=target,
        )
    return state.max_value


def _counter_units(oracle: EffectOracle, units: int, kind: OperationKind) -> tuple[int, float]:
    """Counter units cancelling the resistance added by `units` of `kind`."""
    delta = oracle.resistance_delta(units, kind)
    return math.ceil(delta / oracle.counter_unit_effect), delta


def _normalize(
    timings: list[tuple[OperationKind, float, float, int, float]],
) -> list[OperationTemplate]:
    """Shift (kind, start, end, units, expected) rows so the earliest start is 0."""
    earliest = min(start for _, start, _, _, _ in timings)
    return [
        OperationTemplate(
            kind=kind,
            relative_start=start - earliest,
            relative_end=end - earliest,
            unit_count=units,
            expected_return_value=expected,
        )
        for kind, start, end, units, expected in timings
    ]


# ═══════════════════════════════════════════════════════════════════
# Templates
# ═══════════════════════════════════════════════════════════════════

def build_extraction_template(
    oracle: EffectOracle,
    target: str,
    extraction_fraction: float,
    spacer_ms: float,
    unit_costs: Mapping[OperationKind, float] = DEFAULT_UNIT_COSTS,
    logger: StructuredLogger | None = None,
) -> BatchTemplate:
    """
    Build the 4-op template: extract, counter, reinforce, counter.

    Args:
        oracle: Effect oracle for the target's current state
        target: Target identifier
        extraction_fraction: Share of max value removed per batch, in (0, 1]
        spacer_ms: Gap between consecutive completions, > 0
        unit_costs: Capacity cost per unit, by kind

    Raises:
        InvalidParameter: fraction or spacer out of range, the target
            reports zero maximum value, or the fraction floors to zero
            extraction units
    """
    if not 0 < extraction_fraction <= 1:
        raise InvalidParameter(
            f"extraction_fraction must be in (0, 1], got {extraction_fraction}",
            extraction_fraction=extraction_fraction,
        )
    _check_spacer(spacer_ms)
    max_value = _check_max_value(oracle, target)

    extract_time = oracle.operation_duration(OperationKind.EXTRACT, target)
    reinforce_time = oracle.operation_duration(OperationKind.REINFORCE, target)
    counter_time = oracle.operation_duration(OperationKind.COUNTER, target)

    value_removed = max_value * extraction_fraction
    # An emptied target is regrown from a single unit of value
    value_left = max(max_value - value_removed, 1.0)
    growth_multiplier = max_value / value_left

    # (1) extraction
    extract_units = math.floor(oracle.extraction_units_for(target, extraction_fraction))
    if extract_units < 1:
        raise InvalidParameter(
            f"extraction fraction {extraction_fraction} of {target} rounds down to zero units",
            target=target, extraction_fraction=extraction_fraction,
        )
    extract_end = 0.0

    # (2) counter-extraction; linear in units, so one unit's effect divides out
    counter_extract_units, extract_delta = _counter_units(
        oracle, extract_units, OperationKind.EXTRACT,
    )
    counter_extract_end = extract_end + spacer_ms

    # (3) reinforcement
    reinforce_units = math.ceil(oracle.reinforcement_units_for(target, growth_multiplier))
    reinforce_end = counter_extract_end + spacer_ms

    # (4) counter-reinforcement
    counter_reinforce_units, reinforce_delta = _counter_units(
        oracle, reinforce_units, OperationKind.REINFORCE,
    )
    counter_reinforce_end = reinforce_end + spacer_ms

    operations = _normalize([
        (OperationKind.EXTRACT, extract_end - extract_time, extract_end,
         extract_units, value_removed),
        (OperationKind.COUNTER, counter_extract_end - counter_time, counter_extract_end,
         counter_extract_units, extract_delta),
        (OperationKind.REINFORCE, reinforce_end - reinforce_time, reinforce_end,
         reinforce_units, growth_multiplier),
        (OperationKind.COUNTER, counter_reinforce_end - counter_time, counter_reinforce_end,
         counter_reinforce_units, reinforce_delta),
    ])

    template = BatchTemplate.build(
        target, operations, spacer_ms, unit_costs,
        expected_value_change=value_removed,
    )
    if logger:
        logger.on_template_built(
            target, "extraction",
            [op.to_dict() for op in template.operations],
            template.total_duration, template.peak_capacity_usage,
        )
    return template


def build_reinforcement_template(
    oracle: EffectOracle,
    target: str,
    reinforcement_multiplier: float,
    spacer_ms: float,
    unit_costs: Mapping[OperationKind, float] = DEFAULT_UNIT_COSTS,
    logger: StructuredLogger | None = None,
) -> BatchTemplate:
    """
    Build the 2-op prep template: reinforce, counter.

    The multiplier is passed to the oracle directly as the growth target.
    """
    if not reinforcement_multiplier > 1:
        raise InvalidParameter(
            f"reinforcement_multiplier must be > 1, got {reinforcement_multiplier}",
            reinforcement_multiplier=reinforcement_multiplier,
        )
    _check_spacer(spacer_ms)
    _check_max_value(oracle, target)

    reinforce_time = oracle.operation_duration(OperationKind.REINFORCE, target)
    counter_time = oracle.operation_duration(OperationKind.COUNTER, target)

    reinforce_units = math.ceil(
        oracle.reinforcement_units_for(target, reinforcement_multiplier)
    )
    reinforce_end = 0.0

    counter_units, reinforce_delta = _counter_units(
        oracle, reinforce_units, OperationKind.REINFORCE,
    )
    counter_end = reinforce_end + spacer_ms

    operations = _normalize([
        (OperationKind.REINFORCE, reinforce_end - reinforce_time, reinforce_end,
         reinforce_units, reinforcement_multiplier),
        (OperationKind.COUNTER, counter_end - counter_time, counter_end,
         counter_units, reinforce_delta),
    ])

    template = BatchTemplate.build(target, operations, spacer_ms, unit_costs)
    if logger:
        logger.on_template_built(
            target, "reinforcement",
            [op.to_dict() for op in template.operations],
            template.total_duration, template.peak_capacity_usage,
        )
    return template
