"""Tests for batch pipelining, report handling and shutdown in the BatchManager."""

import asyncio
import os
import sys
import unittest
from unittest.mock import MagicMock, patch

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from batcher.channels import BatchFinished, ChannelRegistry, OperationReport, encode_message
from batcher.dispatcher import CapacityDispatcher
from batcher.errors import CapacityExhausted, MalformedMessage, OrphanOperation
from batcher.manager import BatchManager
from batcher.simulation import SimulatedInventory
from batcher.types import (
    DEFAULT_UNIT_COSTS,
    BatchTemplate,
    NodeInfo,
    OperationKind,
    OperationTemplate,
)

REINFORCE = OperationKind.REINFORCE
COUNTER = OperationKind.COUNTER


def prep_template(units=(4, 2)):
    ops = [
        OperationTemplate(REINFORCE, 80.0, 400.0, units[0], 1.5),
        OperationTemplate(COUNTER, 0.0, 405.0, units[1], 0.2),
    ]
    return BatchTemplate.build("alpha", ops, 5.0, DEFAULT_UNIT_COSTS)


def report(operation, return_value=None):
    return OperationReport(
        operation_id=operation.operation_id,
        kind=operation.kind,
        time_taken_ms=operation.end_ms - operation.start_ms,
        return_value=return_value if return_value is not None else operation.expected_return_value,
    )


class _ManagerCase(unittest.TestCase):

    def setUp(self):
        self.launcher = MagicMock()
        self.launcher.launch.side_effect = range(1, 10_000)
        inventory = SimulatedInventory([NodeInfo("n0", 100), NodeInfo("n1", 50)])
        self.dispatcher = CapacityDispatcher(inventory, self.launcher)
        self.channels = ChannelRegistry()
        self.parent = self.channels.create("parent")
        self.manager = BatchManager(
            self.dispatcher, self.channels,
            pipeline_spacer_ms=20.0, parent_channel_id=self.parent.channel_id,
        )
        self.template = prep_template()


class TestStart(_ManagerCase):

    def test_start_dispatches_every_operation(self):
        batch = self.manager.start(self.template)
        self.assertEqual(self.dispatcher.dispatched_count, 2)
        self.assertEqual(self.manager.open_operation_count(batch.batch_id), 2)
        self.assertIs(self.manager.template_for(batch.batch_id), self.template)
        for op in batch.operations:
            self.assertEqual(self.manager.batch_of(op.operation_id), batch.batch_id)

    def test_start_applies_pipeline_spacer_and_delay(self):
        batch = self.manager.start(self.template, launch_delay_ms=10.0)
        self.assertEqual([op.start_ms for op in batch.operations], [110.0, 30.0])
        channels = {c.args[7] for c in self.launcher.launch.call_args_list}
        self.assertEqual(channels, {self.manager.channel_id})

    def test_start_without_capacity_raises(self):
        big = prep_template(units=(40, 2))          # 70 only fits the 100-block
        self.manager.start(big)
        with self.assertRaises(CapacityExhausted):
            self.manager.start(big)                 # 26.5 and 50 left


class TestReports(_ManagerCase):

    def test_partial_batch_keeps_draining(self):
        batch = self.manager.start(self.template)
        first, second = batch.operations
        self.manager.handle_report(report(first))
        self.assertEqual(self.manager.open_operation_count(batch.batch_id), 1)
        self.assertIsNone(self.dispatcher.get_dispatched(first.operation_id))
        self.assertIsNone(self.manager.batch_of(first.operation_id))
        self.assertTrue(self.parent.empty())

    def test_last_report_relaunches_then_notifies(self):
        batch = self.manager.start(self.template)
        first, last = batch.operations
        self.manager.handle_report(report(first))

        events = []
        original_start = self.manager.start

        def recording_start(template, launch_delay_ms=0):
            # the finished batch is still tracked while its replacement starts
            events.append(("start", self.manager.template_for(batch.batch_id) is template))
            return original_start(template, launch_delay_ms)

        original_send = self.channels.send

        def recording_send(channel_id, message):
            events.append(("send", self.manager.open_operation_count(batch.batch_id)))
            return original_send(channel_id, message)

        with patch.object(self.manager, "start", side_effect=recording_start), \
             patch.object(self.channels, "send", side_effect=recording_send):
            self.manager.handle_report(report(last))

        self.assertEqual(events, [("start", True), ("send", 0)])
        self.assertIsNone(self.manager.open_operation_count(batch.batch_id))
        self.assertIsNone(self.manager.template_for(batch.batch_id))
        self.assertEqual(self.manager.open_batches, 1)
        self.assertEqual(self.manager.batches_finished, 1)
        self.assertEqual(self.manager.batches_started, 2)
        self.assertEqual(self.dispatcher.dispatched_count, 2)    # replacement only
        self.assertEqual(self.parent.pending, 1)

    def test_interleaved_batches(self):
        a = self.manager.start(self.template)
        b = self.manager.start(self.template, launch_delay_ms=10.0)
        self.manager.handle_report(report(b.operations[0]))
        self.manager.handle_report(report(a.operations[0]))
        self.manager.handle_report(report(b.operations[1]))
        self.assertIsNone(self.manager.open_operation_count(b.batch_id))
        self.assertEqual(self.manager.open_operation_count(a.batch_id), 1)
        self.assertEqual(self.manager.open_batches, 2)

    def test_orphan_operation(self):
        self.manager.start(self.template)
        ghost = OperationReport("op_ghost", COUNTER, 1.0, 0.1)
        with self.assertRaises(OrphanOperation):
            self.manager.handle_report(ghost)
        self.assertEqual(self.dispatcher.dispatched_count, 2)

    def test_duplicate_report_is_orphan(self):
        batch = self.manager.start(self.template)
        self.manager.handle_report(report(batch.operations[0]))
        with self.assertRaises(OrphanOperation):
            self.manager.handle_report(report(batch.operations[0]))

    def test_handle_message_rejects_batch_events(self):
        with self.assertRaises(MalformedMessage):
            self.manager.handle_message(encode_message(BatchFinished("bat_x")))

    def test_shutdown_releases_everything(self):
        self.manager.start(self.template)
        self.manager.start(self.template)
        self.manager.shutdown()
        self.assertEqual(self.dispatcher.dispatched_count, 0)
        self.assertEqual(self.dispatcher.total_capacity, 150)
        self.assertEqual(self.launcher.terminate.call_count, 4)
        self.assertEqual(self.manager.open_batches, 0)
        self.assertNotIn(self.manager.channel_id, self.channels)


class TestRunLoop(_ManagerCase, unittest.IsolatedAsyncioTestCase):

    async def test_run_consumes_reports(self):
        batch = self.manager.start(self.template)
        task = asyncio.create_task(self.manager.run())
        for op in batch.operations:
            self.channels.send(self.manager.channel_id, report(op))

        finished = await asyncio.wait_for(self.parent.receive(), 1)
        self.assertEqual(finished, BatchFinished(batch.batch_id))
        self.assertEqual(self.manager.batches_finished, 1)

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def test_run_raises_on_orphan(self):
        task = asyncio.create_task(self.manager.run())
        self.channels.send(self.manager.channel_id, OperationReport("op_x", COUNTER, 1, 1))
        with self.assertRaises(OrphanOperation):
            await asyncio.wait_for(task, 1)


if __name__ == "__main__":
    unittest.main()
