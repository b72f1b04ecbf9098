"""
End-to-end controller tests against the simulation backend.

Simulated time runs at a tenth of wall time: a 400ms counter takes 40ms,
and completions one spacer apart are still half a millisecond apart.
"""

import asyncio
import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from batcher.channels import OperationReport
from batcher.config import parse_batcher_config
from batcher.controller import BatcherController, Mode, is_prepped, pipeline_operations
from batcher.dispatcher import CapacityDispatcher
from batcher.errors import CapacityExhausted, OrphanOperation
from batcher.planner import build_extraction_template
from batcher.simulation import build_simulation
from batcher.types import BatchTemplate, OperationKind, OperationTemplate, TargetState
from infra.health import HealthChecker


def make_config(capacities=(2048, 2048, 2048, 2048), **overrides):
    section = {
        "spacer": "5ms",
        "extraction_fraction": 0.5,
        "prep_multiplier": 1.5,
        "prep_tolerance": 0.05,
        "max_depth": 4,
        "simulation": {
            "time_scale": 0.1,
            "nodes": [{"node_id": f"n{i}", "capacity": c} for i, c in enumerate(capacities)],
            "targets": {
                "alpha": {"max_value": 1_000_000, "min_resistance": 5, "base_extraction_ms": 100},
                "beta": {"max_value": 1_000_000, "min_resistance": 5, "base_extraction_ms": 100,
                         "current_value": 100_000},
            },
        },
    }
    section.update(overrides)
    return parse_batcher_config(section)


class TestIsPrepped(unittest.TestCase):

    def test_exact(self):
        self.assertTrue(is_prepped(TargetState(100, 100, 5, 5)))
        self.assertFalse(is_prepped(TargetState(100, 99, 5, 5)))
        self.assertFalse(is_prepped(TargetState(100, 100, 5, 5.1)))

    def test_tolerance(self):
        self.assertTrue(is_prepped(TargetState(100, 96, 5, 5.2), tolerance=0.05))
        self.assertFalse(is_prepped(TargetState(100, 94, 5, 5.2), tolerance=0.05))
        self.assertFalse(is_prepped(TargetState(100, 96, 5, 5.3), tolerance=0.05))


class TestPipelineOperations(unittest.TestCase):

    def test_depth_batches_plus_last_operation(self):
        sim = build_simulation(make_config())
        template = build_extraction_template(sim.oracle, "alpha", 0.5, 5.0)
        ops = pipeline_operations(template, 3)
        self.assertEqual(len(ops), 13)
        self.assertEqual(ops[-1].kind, OperationKind.COUNTER)
        self.assertEqual(ops[-1].unit_count, template.operations[-1].unit_count)
        self.assertEqual(len({op.operation_id for op in ops}), 13)


class _ControllerCase(unittest.IsolatedAsyncioTestCase):

    def build(self, target="alpha", config=None, health=None):
        self.config = config or make_config()
        self.sim = build_simulation(self.config)
        self.dispatcher = CapacityDispatcher(
            self.sim.inventory, self.sim.launcher, unit_costs=self.config.unit_costs,
        )
        self.capacity = self.dispatcher.total_capacity
        self.controller = BatcherController(
            target, self.sim.oracle, self.dispatcher, self.sim.channels, self.config,
            health=health,
        )
        return self.controller

    def assertReleased(self):
        self.assertEqual(self.controller.mode, Mode.STOPPED)
        self.assertEqual(self.dispatcher.dispatched_count, 0)
        self.assertAlmostEqual(self.dispatcher.total_capacity, self.capacity)
        self.assertEqual(self.sim.launcher.running, {})
        self.assertEqual(len(self.sim.channels), 0)

    async def wait_for(self, predicate, timeout=5.0):
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                self.fail("condition not reached")
            await asyncio.sleep(0.005)


class TestSelectDepth(_ControllerCase):

    def test_limited_by_max_depth(self):
        controller = self.build()
        template = build_extraction_template(self.sim.oracle, "alpha", 0.5, 5.0)
        self.assertGreater(template.max_concurrent_batches(self.config.depth_policy), 4)
        self.assertEqual(controller.select_depth(template), 4)

    def test_limited_by_fleet(self):
        controller = self.build(config=make_config(capacities=(1024, 1024)))
        template = build_extraction_template(self.sim.oracle, "alpha", 0.5, 5.0)
        self.assertEqual(controller.select_depth(template), 2)
        self.assertEqual(self.dispatcher.dispatched_count, 0)

    def test_nothing_fits(self):
        controller = self.build(config=make_config(capacities=(300, 300)))
        template = build_extraction_template(self.sim.oracle, "alpha", 0.5, 5.0)
        with self.assertRaises(CapacityExhausted):
            controller.select_depth(template)

    def test_zero_unit_operation_never_fits(self):
        controller = self.build()
        template = BatchTemplate.build("alpha", [
            OperationTemplate(OperationKind.EXTRACT, 0.0, 100.0, 10, 1000.0),
            OperationTemplate(OperationKind.COUNTER, 0.0, 105.0, 0, 0.0),
        ], 5.0, self.config.unit_costs)
        with self.assertRaises(CapacityExhausted):
            controller.select_depth(template)
        self.assertEqual(self.dispatcher.dispatched_count, 0)
        self.assertAlmostEqual(self.dispatcher.total_capacity, self.capacity)


class TestSteadyState(_ControllerCase):

    async def test_runs_until_batch_limit(self):
        health = HealthChecker()
        controller = self.build(health=health)
        await asyncio.wait_for(controller.run(max_batches=6), 10)

        self.assertEqual(controller.batches_finished, 6)
        self.assertEqual(controller.prep_batches_finished, 0)
        self.assertEqual(controller.depth, 4)
        self.assertReleased()
        self.assertEqual(health.check_ready()["status"], "ok")
        self.assertEqual(health.status()["mode"], "stopped")

    async def test_target_stays_near_prepped(self):
        controller = self.build()
        await asyncio.wait_for(controller.run(max_batches=4), 10)
        state = controller.last_state
        # observed right after a batch's final counter landed
        self.assertGreater(state.resistance_ratio, 0.9)

    async def test_request_stop(self):
        health = HealthChecker()
        controller = self.build(health=health)
        task = asyncio.create_task(controller.run())
        await self.wait_for(lambda: controller.batches_finished >= 2)

        status = controller.status()
        self.assertEqual(status["mode"], "steady")
        self.assertEqual(status["open_batches"], controller.depth)
        self.assertGreater(status["dispatched_operations"], 0)
        self.assertEqual(health.check_ready()["status"], "ok")

        controller.request_stop()
        await asyncio.wait_for(task, 2)
        self.assertReleased()

    async def test_stop_before_first_batch(self):
        controller = self.build()
        task = asyncio.create_task(controller.run())
        await self.wait_for(lambda: controller.mode == Mode.STEADY)
        controller.request_stop()
        await asyncio.wait_for(task, 2)
        self.assertEqual(controller.batches_finished, 0)
        self.assertReleased()

    async def test_no_capacity_still_shuts_down(self):
        controller = self.build(config=make_config(capacities=(300, 300)))
        with self.assertRaises(CapacityExhausted):
            await controller.run(max_batches=1)
        self.assertReleased()

    async def test_manager_failure_propagates(self):
        controller = self.build()
        task = asyncio.create_task(controller.run())
        await self.wait_for(lambda: controller.mode == Mode.STEADY)
        self.sim.channels.send(
            controller._manager.channel_id,
            OperationReport("op_ghost", OperationKind.COUNTER, 1.0, 0.0),
        )
        with self.assertRaises(OrphanOperation):
            await asyncio.wait_for(task, 2)
        self.assertReleased()


class TestPrep(_ControllerCase):

    async def test_preps_then_extracts(self):
        controller = self.build(target="beta")
        self.assertFalse(controller.is_prepped())

        await asyncio.wait_for(controller.run(max_batches=3), 10)

        # 0.1 * 1.5^5 < 0.95, so at least five prep batches had to finish
        self.assertGreaterEqual(controller.prep_batches_finished, 5)
        self.assertEqual(controller.batches_finished, 3)
        self.assertReleased()

    async def test_stop_during_prep(self):
        controller = self.build(target="beta")
        task = asyncio.create_task(controller.run())
        await self.wait_for(lambda: controller.mode == Mode.PREP)
        controller.request_stop()
        await asyncio.wait_for(task, 2)
        self.assertEqual(controller.batches_finished, 0)
        self.assertReleased()


if __name__ == "__main__":
    unittest.main()
