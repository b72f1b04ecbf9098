"""Tests for best-fit capacity dispatch, release and the could_fit dry run."""

import os
import sys
import unittest
from unittest.mock import MagicMock, patch

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from batcher.dispatcher import DRY_RUN_CHANNEL, CapacityDispatcher
from batcher.errors import (
    CapacityExhausted,
    DuplicateOperation,
    InvalidUnitCount,
    LaunchFailure,
    ProvisioningFailure,
    UnknownOperation,
)
from batcher.simulation import SimulatedInventory
from batcher.types import NodeInfo, Operation, OperationKind

COUNTER = OperationKind.COUNTER
UNIFORM_COSTS = {k: 1.75 for k in OperationKind}


def op(op_id, units, kind=COUNTER, start=0.0):
    return Operation(
        operation_id=op_id, kind=kind, target="alpha",
        start_ms=start, end_ms=start + 100.0, unit_count=units,
    )


def fleet(*capacities, **kwargs):
    return SimulatedInventory(
        [NodeInfo(f"n{i}", c) for i, c in enumerate(capacities)], **kwargs,
    )


class _DispatcherCase(unittest.TestCase):

    def make(self, *capacities, **kwargs):
        self.launcher = MagicMock()
        self.launcher.launch.side_effect = range(1, 10_000)
        self.inventory = kwargs.pop("inventory", None) or fleet(*capacities)
        kwargs.setdefault("unit_costs", UNIFORM_COSTS)
        return CapacityDispatcher(self.inventory, self.launcher, **kwargs)

    def capacities(self, d):
        return [b.free_capacity for b in d.blocks()]


class TestConstruction(_DispatcherCase):

    def test_skips_locked_and_empty_nodes(self):
        inventory = SimulatedInventory([
            NodeInfo("a", 10), NodeInfo("b", 0), NodeInfo("c", 50, has_access=False),
        ])
        d = self.make(inventory=inventory)
        self.assertEqual([b.node_id for b in d.blocks()], ["a"])
        self.assertEqual(list(inventory.payloads), ["a"])

    def test_payloads_distributed_to_every_block(self):
        d = self.make(10, 5, 20)
        self.assertEqual(set(self.inventory.payloads), {"n0", "n1", "n2"})
        self.assertEqual(len(self.inventory.payloads["n0"]), 3)
        self.assertEqual(d.total_capacity, 35)

    def test_provisioning_failure(self):
        with self.assertRaises(ProvisioningFailure):
            self.make(inventory=fleet(10, 5, failing_nodes={"n1"}))

    def test_reserved_capacity_withheld(self):
        inventory = SimulatedInventory([NodeInfo("home", 300), NodeInfo("n0", 100),
                                        NodeInfo("tiny", 50)])
        d = self.make(inventory=inventory, reserved_capacity={"home": 256, "tiny": 64})
        self.assertEqual({b.node_id: b.free_capacity for b in d.blocks()},
                         {"home": 44, "n0": 100})


class TestBestFit(_DispatcherCase):

    def test_three_node_scenario(self):
        d = self.make(10, 5, 20)
        self.assertEqual(self.capacities(d), [5, 10, 20])

        big = d.dispatch(op("big", 4), completion_channel_id=1)
        self.assertEqual(big.node_id, "n0")          # 10-block: first with >= 7
        self.assertAlmostEqual(big.capacity_cost, 7.0)

        small = d.dispatch(op("small", 2), completion_channel_id=1)
        self.assertEqual(small.node_id, "n1")        # 5-block: first with >= 3.5

        d.free("big")
        d.free("small")
        self.assertEqual(self.capacities(d), [5, 10, 20])

    def test_blocks_stay_sorted(self):
        d = self.make(10, 5, 20)
        d.dispatch(op("a", 4), 1)                     # 10 → 3
        caps = self.capacities(d)
        self.assertEqual(caps, sorted(caps))
        self.assertEqual(caps, [3.0, 5, 20])

    def test_launch_arguments(self):
        d = self.make(10)
        d.dispatch(op("a", 2, start=42.0), completion_channel_id=7)
        path, node, units, op_id, kind, target, start, channel = self.launcher.launch.call_args[0]
        self.assertEqual((node, units, op_id, kind, target, start, channel),
                         ("n0", 2, "a", COUNTER, "alpha", 42.0, 7))
        self.assertTrue(path.endswith("counter.py"))
        self.assertEqual(d.get_dispatched("a").execution_handle, 1)

    def test_capacity_exhausted_mutates_nothing(self):
        d = self.make(10, 5, 20)
        before = self.capacities(d)
        with self.assertRaises(CapacityExhausted):
            d.dispatch(op("huge", 12), 1)            # cost 21 > 20
        self.assertEqual(self.capacities(d), before)
        self.assertEqual(d.dispatched_count, 0)
        self.launcher.launch.assert_not_called()

    def test_never_split_across_blocks(self):
        d = self.make(10, 10)
        with self.assertRaises(CapacityExhausted):
            d.dispatch(op("a", 8), 1)                # cost 14 fits only in 20 combined

    def test_duplicate_operation(self):
        d = self.make(10)
        d.dispatch(op("a", 1), 1)
        with self.assertRaises(DuplicateOperation):
            d.dispatch(op("a", 1), 1)

    def test_invalid_unit_count(self):
        d = self.make(10)
        for units in (0, -3):
            with self.assertRaises(InvalidUnitCount):
                d.dispatch(op("a", units), 1)

    def test_launch_failure(self):
        d = self.make(10)
        self.launcher.launch.side_effect = None
        self.launcher.launch.return_value = 0
        with self.assertRaises(LaunchFailure):
            d.dispatch(op("a", 1), 1)
        self.assertEqual(d.total_capacity, 10)
        self.assertIsNone(d.get_dispatched("a"))

    def test_dry_run_reserves_without_launch(self):
        d = self.make(10)
        record = d.dispatch(op("a", 2), DRY_RUN_CHANNEL, dry_run=True)
        self.launcher.launch.assert_not_called()
        self.assertIsNone(record.execution_handle)
        self.assertAlmostEqual(d.total_capacity, 6.5)

    def test_unknown_free(self):
        d = self.make(10)
        with self.assertRaises(UnknownOperation):
            d.free("ghost")

    def test_double_free(self):
        d = self.make(10)
        d.dispatch(op("a", 1), 1)
        d.free("a")
        with self.assertRaises(UnknownOperation):
            d.free("a")


class TestConservation(_DispatcherCase):

    def test_interleaved_dispatch_and_free(self):
        d = self.make(10, 5, 20, 7.5)
        total = d.total_capacity
        live = {}
        sequence = [("d", "a", 2), ("d", "b", 1), ("f", "a", 0), ("d", "c", 3),
                    ("d", "d", 4), ("f", "b", 0), ("d", "e", 1), ("f", "d", 0)]
        for action, op_id, units in sequence:
            if action == "d":
                live[op_id] = d.dispatch(op(op_id, units), 1).capacity_cost
            else:
                del live[op_id]
                d.free(op_id)
            self.assertAlmostEqual(d.total_capacity, total - sum(live.values()))
            self.assertTrue(all(b.free_capacity >= 0 for b in d.blocks()))

    def test_free_and_release_all(self):
        d = self.make(10, 5, 20)
        d.dispatch(op("a", 2), 1)
        d.dispatch(op("b", 1), 1)
        d.dispatch(op("dry", 1), DRY_RUN_CHANNEL, dry_run=True)
        d.free_and_release_all()
        self.assertEqual(d.dispatched_count, 0)
        self.assertEqual(d.total_capacity, 35)
        self.assertEqual(sorted(c.args[0] for c in self.launcher.terminate.call_args_list), [1, 2])

    def test_release_all_survives_terminate_errors(self):
        d = self.make(10)
        d.dispatch(op("a", 1), 1)
        d.dispatch(op("b", 1), 1)
        self.launcher.terminate.side_effect = RuntimeError("node gone")
        d.free_and_release_all()
        self.assertEqual(d.dispatched_count, 0)
        self.assertEqual(self.launcher.terminate.call_count, 2)


class TestCouldFit(_DispatcherCase):

    def test_fits_and_leaves_state_unchanged(self):
        d = self.make(10, 5, 20)
        before = self.capacities(d)
        candidates = [op("a", 2), op("b", 4), op("c", 8)]
        self.assertTrue(d.could_fit(candidates))
        self.assertTrue(d.could_fit(candidates))
        self.assertEqual(self.capacities(d), before)
        self.assertEqual(d.dispatched_count, 0)
        self.launcher.launch.assert_not_called()

    def test_does_not_fit_and_leaves_state_unchanged(self):
        d = self.make(10, 5, 20)
        before = self.capacities(d)
        # 8.75 each: the 20-block holds two, the 10-block one, the 5-block none
        candidates = [op("a", 5), op("b", 5), op("c", 5), op("d", 5)]
        self.assertFalse(d.could_fit(candidates))
        self.assertFalse(d.could_fit(candidates))
        self.assertEqual(self.capacities(d), before)
        self.assertEqual(d.dispatched_count, 0)

    def test_largest_first(self):
        d = self.make(10, 5, 20)
        with patch.object(d, "dispatch", wraps=d.dispatch) as spy:
            self.assertTrue(d.could_fit([op("s", 1), op("l", 4), op("m", 2)]))
        self.assertEqual([c.args[0].unit_count for c in spy.call_args_list], [4, 2, 1])
        self.assertTrue(all(c.kwargs["dry_run"] for c in spy.call_args_list))

    def test_stops_at_first_failure(self):
        d = self.make(10, 5)
        self.assertFalse(d.could_fit([op("s", 2), op("l", 4), op("x", 3)]))
        self.assertEqual(d.dispatched_count, 0)
        self.assertEqual(self.capacities(d), [5, 10])

    def test_candidates_not_reordered(self):
        d = self.make(10, 5, 20)
        candidates = [op("a", 1), op("b", 4), op("c", 2)]
        d.could_fit(candidates)
        self.assertEqual([o.operation_id for o in candidates], ["a", "b", "c"])

    def test_existing_reservations_respected(self):
        d = self.make(10)
        d.dispatch(op("live", 4), 1)                 # 3 left
        self.assertFalse(d.could_fit([op("a", 2)]))  # 3.5 > 3
        self.assertAlmostEqual(d.total_capacity, 3.0)
        self.assertEqual(d.dispatched_count, 1)

    def test_invalid_candidate_does_not_fit(self):
        d = self.make(10, 5)
        self.assertFalse(d.could_fit([op("a", 1), op("b", 0)]))
        self.assertEqual(self.capacities(d), [5, 10])
        self.assertEqual(d.dispatched_count, 0)

    def test_duplicate_candidate_does_not_fit(self):
        d = self.make(10)
        d.dispatch(op("live", 2), 1)
        self.assertFalse(d.could_fit([op("a", 1), op("live", 1)]))
        self.assertFalse(d.could_fit([op("b", 1), op("b", 1)]))
        self.assertAlmostEqual(d.total_capacity, 6.5)
        self.assertEqual(d.dispatched_count, 1)


if __name__ == "__main__":
    unittest.main()
