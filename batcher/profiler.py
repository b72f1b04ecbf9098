"""
Batcher — Target Profiler

Ranks targets by the value per second a full extraction pipeline would
yield on the current fleet.

For each target the extraction fraction is swept upward. Larger
fractions need more capacity, so the sweep stops at the first fraction
that cannot fit. Fractions too small to extract a single unit are
skipped rather than ending the sweep.

Stop conditions:
  1. cheap check — one batch's peak usage exceeds total free capacity
  2. real check  — the pipeline's batches fail the bin-packing check

The dispatcher is only dry-run, never mutated.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable

from batcher.config import BatcherConfig
from batcher.controller import pipeline_operations
from batcher.dispatcher import CapacityDispatcher
from batcher.interfaces import EffectOracle
from batcher.planner import build_extraction_template
from infra.logging import StructuredLogger


@dataclass
class TargetProfile:
    """Best extraction setting found for one target."""
    target: str
    fraction: float = 0.0
    batches: int = 0
    value_per_second: float = 0.0
    total_duration_ms: float = 0.0
    peak_capacity_usage: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "fraction": self.fraction,
            "batches": self.batches,
            "value_per_second": self.value_per_second,
            "total_duration_ms": self.total_duration_ms,
            "peak_capacity_usage": self.peak_capacity_usage,
        }


def profile_target(
    oracle: EffectOracle,
    dispatcher: CapacityDispatcher,
    target: str,
    config: BatcherConfig,
    logger: StructuredLogger | None = None,
) -> TargetProfile | None:
    """
    Sweep extraction fractions for one target.

    Returns None for targets with no extractable value. A profile with
    fraction 0.0 means not even the smallest fraction fits.
    """
    log = logger or StructuredLogger(component="profiler")
    if oracle.target_state(target).max_value <= 0:
        return None

    best = TargetProfile(target=target)
    for fraction in config.profile_fractions:
        if math.floor(oracle.extraction_units_for(target, fraction)) < 1:
            log.debug("profile_skip", target=target, fraction=fraction, reason="zero_units")
            continue
        template = build_extraction_template(
            oracle, target, fraction, config.spacer_ms, config.unit_costs,
        )
        if template.peak_capacity_usage > dispatcher.total_capacity:
            log.debug("profile_stop", target=target, fraction=fraction, reason="total_capacity")
            break

        batches = min(template.max_concurrent_batches(config.depth_policy), config.max_depth)
        if not dispatcher.could_fit(pipeline_operations(template, batches)):
            log.debug("profile_stop", target=target, fraction=fraction, reason="could_fit")
            break

        value_per_second = (
            batches * template.expected_value_change / (template.total_duration / 1000)
        )
        if value_per_second > best.value_per_second:
            best = TargetProfile(
                target=target,
                fraction=fraction,
                batches=batches,
                value_per_second=value_per_second,
                total_duration_ms=template.total_duration,
                peak_capacity_usage=template.peak_capacity_usage,
            )

    log.info("target_profiled", **best.to_dict())
    return best


def profile_targets(
    oracle: EffectOracle,
    dispatcher: CapacityDispatcher,
    targets: Iterable[str],
    config: BatcherConfig,
    logger: StructuredLogger | None = None,
) -> list[TargetProfile]:
    """Profile every target with nonzero max value, best first."""
    profiles = []
    for target in targets:
        profile = profile_target(oracle, dispatcher, target, config, logger)
        if profile is not None:
            profiles.append(profile)
    profiles.sort(key=lambda p: p.value_per_second, reverse=True)
    return profiles
