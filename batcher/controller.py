"""
Batcher — Controller

Runs one target end to end:

  1. Prep mode: while the target is not prepped, pipeline 2-op
     reinforcement batches and re-check after every finished batch.
     Once prepped, everything is terminated and released.
  2. Steady state: build the extraction template, size the pipeline,
     stagger the initial batches one unsafe duration apart, then keep
     consuming batch-finished events until stopped.

Pipeline depth = min(max concurrent batches, max_depth), reduced until
the fleet can actually hold that many batches plus the headroom a
replacement batch needs while the finishing batch's last operation is
still reserved.

Shutdown always releases everything, whether the run ends normally,
is stopped, or fails.
"""

from __future__ import annotations

import asyncio
import enum
import math
from typing import Any, Callable

from batcher.channels import BatchFinished, Channel, ChannelRegistry, Message
from batcher.config import BatcherConfig
from batcher.dispatcher import CapacityDispatcher
from batcher.errors import CapacityExhausted, MalformedMessage
from batcher.interfaces import EffectOracle
from batcher.manager import BatchManager
from batcher.planner import build_extraction_template, build_reinforcement_template
from batcher.types import BatchTemplate, Operation, TargetState
from infra.health import HealthChecker
from infra.logging import StructuredLogger


class Mode(str, enum.Enum):
    IDLE = "idle"
    PREP = "prep"
    STEADY = "steady"
    STOPPED = "stopped"


def is_prepped(state: TargetState, tolerance: float = 0.0) -> bool:
    """Value near max and resistance near min, within tolerance."""
    return (
        state.current_resistance <= state.min_resistance * (1 + tolerance)
        and state.current_value >= state.max_value * (1 - tolerance)
    )


def pipeline_operations(template: BatchTemplate, depth: int) -> list[Operation]:
    """
    Operations that must fit at once to run `depth` batches.

    One extra copy of the last-completing operation covers the moment a
    replacement batch is started before that operation is freed.
    """
    operations: list[Operation] = []
    for _ in range(depth):
        operations.extend(template.instantiate(0).operations)
    operations.append(template.instantiate(0).operations[-1])
    return operations


class BatcherController:
    """
    Drives prep and steady state for one target.

    Usage:
        controller = BatcherController("alpha", oracle, dispatcher, channels, config)
        await controller.run(max_batches=100)
    """

    def __init__(
        self,
        target: str,
        oracle: EffectOracle,
        dispatcher: CapacityDispatcher,
        channels: ChannelRegistry,
        config: BatcherConfig,
        logger: StructuredLogger | None = None,
        health: HealthChecker | None = None,
    ):
        self.target = target
        self._oracle = oracle
        self._dispatcher = dispatcher
        self._channels = channels
        self.config = config
        self._log = logger or StructuredLogger(component="controller", target=target)

        self.mode = Mode.IDLE
        self.depth = 0
        self.prep_batches_finished = 0
        self.batches_finished = 0
        self.last_state: TargetState | None = None

        self._manager: BatchManager | None = None
        self._manager_task: asyncio.Task | None = None
        self._inbox: Channel | None = None
        self._stop: asyncio.Event | None = None

        if health is not None:
            health.register("capacity", self._check_capacity)
            health.register("pipeline", self._check_pipeline)
            health.set_status_provider(self.status)

    # ─── Target State ───────────────────────────────────────────────

    def _observe(self) -> TargetState:
        self.last_state = self._oracle.target_state(self.target)
        return self.last_state

    def is_prepped(self) -> bool:
        return is_prepped(self._observe(), self.config.prep_tolerance)

    # ─── Depth Selection ────────────────────────────────────────────

    def select_depth(self, template: BatchTemplate) -> int:
        """
        Deepest pipeline the fleet can hold right now.

        Raises:
            CapacityExhausted: not even one batch fits
        """
        depth = min(
            template.max_concurrent_batches(self.config.depth_policy),
            self.config.max_depth,
        )
        # Cheap upper bound before the expensive bin-packing check
        if template.peak_capacity_usage > 0:
            depth = min(depth, math.floor(
                self._dispatcher.total_capacity / template.peak_capacity_usage
            ))

        while depth > 0:
            if self._dispatcher.could_fit(pipeline_operations(template, depth)):
                return depth
            depth -= 1

        raise CapacityExhausted(
            f"fleet cannot hold a single batch for {self.target}",
            target=self.target,
            peak_capacity_usage=template.peak_capacity_usage,
            total_capacity=self._dispatcher.total_capacity,
        )

    # ─── Run ────────────────────────────────────────────────────────

    def request_stop(self) -> None:
        """Ask run() to return at its next suspension point."""
        if self._stop is not None:
            self._stop.set()

    async def run(self, max_batches: int | None = None) -> None:
        """
        Prep if needed, then pipeline extraction batches.

        Returns after max_batches steady-state batches finished, or when
        request_stop() is called. Contract violations propagate.
        """
        self._stop = asyncio.Event()
        self._inbox = self._channels.create("controller")
        try:
            if not self.is_prepped():
                await self.prep()
                if self._stop.is_set():
                    return

            template = build_extraction_template(
                self._oracle, self.target,
                self.config.extraction_fraction, self.config.spacer_ms,
                self.config.unit_costs, logger=self._log,
            )
            self.depth = self.select_depth(template)
            self._set_mode(Mode.STEADY, f"depth {self.depth}")

            def on_finished(message: BatchFinished) -> bool:
                self.batches_finished += 1
                state = self._observe()
                self._log.on_pipeline_status(
                    message.batch_id, self.batches_finished,
                    state.value_ratio, state.resistance_ratio,
                )
                return max_batches is not None and self.batches_finished >= max_batches

            await self._pipeline(template, self.depth, "batch-manager", on_finished)
        finally:
            self.shutdown()

    async def prep(self) -> None:
        """Run reinforcement batches until the target is prepped."""
        template = build_reinforcement_template(
            self._oracle, self.target,
            self.config.prep_multiplier, self.config.spacer_ms,
            self.config.unit_costs, logger=self._log,
        )
        self.depth = self.select_depth(template)
        self._set_mode(Mode.PREP, f"target not prepped, depth {self.depth}")

        def on_finished(message: BatchFinished) -> bool:
            self.prep_batches_finished += 1
            return self.is_prepped()

        await self._pipeline(template, self.depth, "prep-manager", on_finished)

    async def _pipeline(
        self,
        template: BatchTemplate,
        depth: int,
        name: str,
        on_finished: Callable[[BatchFinished], bool],
    ) -> None:
        """Start `depth` staggered batches and drain events until on_finished says stop."""
        manager = BatchManager(
            self._dispatcher, self._channels,
            pipeline_spacer_ms=depth * template.unsafe_duration,
            parent_channel_id=self._inbox.channel_id,
            logger=self._log.child(name),
            name=name,
        )
        self._manager = manager
        task: asyncio.Task | None = None
        try:
            for i in range(depth):
                manager.start(template, launch_delay_ms=i * template.unsafe_duration)

            task = asyncio.create_task(manager.run(), name=name)
            self._manager_task = task
            while True:
                message = await self._next_message(task)
                if message is None:
                    return
                if not isinstance(message, BatchFinished):
                    raise MalformedMessage(
                        f"controller expected batch-finished, got {type(message).__name__}",
                    )
                if on_finished(message):
                    return
        finally:
            if task is not None:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
            manager.shutdown()
            self._manager = None
            self._manager_task = None

    async def _next_message(self, manager_task: asyncio.Task) -> Message | None:
        """Next event on the inbox; None once a stop was requested."""
        receive = asyncio.ensure_future(self._inbox.receive())
        stop = asyncio.ensure_future(self._stop.wait())
        try:
            done, _ = await asyncio.wait(
                {receive, stop, manager_task}, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for pending in (receive, stop):
                if not pending.done():
                    pending.cancel()

        if receive in done:
            return receive.result()
        if manager_task in done:
            # run() only ends by raising
            manager_task.result()
        return None

    def shutdown(self) -> None:
        """Release every reservation and close the inbox. Safe to call twice."""
        if self._manager is not None:
            self._manager.shutdown()
            self._manager = None
        elif self._dispatcher.dispatched_count:
            self._dispatcher.free_and_release_all()
        if self._inbox is not None:
            self._channels.close(self._inbox.channel_id)
            self._inbox = None
        if self.mode != Mode.STOPPED:
            self._set_mode(Mode.STOPPED, "shutdown")

    def _set_mode(self, mode: Mode, reason: str = "") -> None:
        self.mode = mode
        self._log.on_mode_change(mode.value, reason)

    # ─── Status & Health ────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        manager = self._manager
        state = self.last_state
        return {
            "mode": self.mode.value,
            "target": self.target,
            "depth": self.depth,
            "batches_finished": self.batches_finished,
            "prep_batches_finished": self.prep_batches_finished,
            "open_batches": manager.open_batches if manager else 0,
            "dispatched_operations": self._dispatcher.dispatched_count,
            "total_capacity": self._dispatcher.total_capacity,
            "value_ratio": state.value_ratio if state else None,
            "resistance_ratio": state.resistance_ratio if state else None,
            "run_id": self._log.run_id,
        }

    def _check_capacity(self) -> tuple[bool, str]:
        blocks = self._dispatcher.blocks()
        negative = [b.node_id for b in blocks if b.free_capacity < 0]
        if negative:
            return False, f"negative free capacity on {', '.join(negative)}"
        return True, f"{len(blocks)} blocks, {self._dispatcher.total_capacity:.2f} free"

    def _check_pipeline(self) -> tuple[bool, str]:
        task = self._manager_task
        if self.mode in (Mode.PREP, Mode.STEADY):
            if task is None or task.done():
                return False, "batch manager is not running"
        return True, self.mode.value
