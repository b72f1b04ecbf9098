"""
Batcher — Batch Manager

Stamps batches from a template, dispatches them, and keeps the pipeline
full: when the last operation of a batch reports, a replacement batch of
the same template is started before the finished batch's bookkeeping is
deleted, so capacity accounting never has a gap.

Batch lifecycle:

  Pending ──start()──→ Dispatched ──first report──→ Draining ──last report──→ Finished
                                                                              │
                                         (replacement batch) ←── start() ─────┘

Reports from different batches interleave freely; batch membership is
resolved only through the operation_id → batch_id map.

A worker that dies without reporting leaves its batch in Draining for
the rest of the run. There is no timeout.
"""

from __future__ import annotations

from batcher.channels import (
    ChannelRegistry,
    BatchFinished,
    OperationReport,
    decode_message,
)
from batcher.dispatcher import CapacityDispatcher
from batcher.errors import MalformedMessage, OrphanOperation
from batcher.types import Batch, BatchTemplate
from infra.logging import StructuredLogger


class BatchManager:
    """
    Pipelines batches of one or more templates through a dispatcher.

    Usage:
        manager = BatchManager(dispatcher, channels, pipeline_spacer_ms=40,
                               parent_channel_id=inbox.channel_id)
        for i in range(depth):
            manager.start(template, launch_delay_ms=i * template.unsafe_duration)
        task = asyncio.create_task(manager.run())
    """

    def __init__(
        self,
        dispatcher: CapacityDispatcher,
        channels: ChannelRegistry,
        pipeline_spacer_ms: float,
        parent_channel_id: int,
        logger: StructuredLogger | None = None,
        name: str = "batch-manager",
    ):
        self._dispatcher = dispatcher
        self._channels = channels
        self.pipeline_spacer_ms = pipeline_spacer_ms
        self.parent_channel_id = parent_channel_id
        self._log = logger or StructuredLogger(component=name)
        self.channel = channels.create(name)

        self._open_count: dict[str, int] = {}
        self._templates: dict[str, BatchTemplate] = {}
        self._operation_batch: dict[str, str] = {}

        self.batches_started = 0
        self.batches_finished = 0

    # ─── Accessors ──────────────────────────────────────────────────

    @property
    def channel_id(self) -> int:
        return self.channel.channel_id

    @property
    def open_batches(self) -> int:
        return len(self._open_count)

    def open_operation_count(self, batch_id: str) -> int | None:
        return self._open_count.get(batch_id)

    def template_for(self, batch_id: str) -> BatchTemplate | None:
        return self._templates.get(batch_id)

    def batch_of(self, operation_id: str) -> str | None:
        return self._operation_batch.get(operation_id)

    # ─── Lifecycle ──────────────────────────────────────────────────

    def start(self, template: BatchTemplate, launch_delay_ms: float = 0) -> Batch:
        """
        Instantiate and dispatch one batch.

        Every operation is shifted by the pipeline spacer plus
        launch_delay_ms. Dispatch errors propagate: capacity must have
        been checked before the pipeline was sized.
        """
        batch = template.instantiate(self.pipeline_spacer_ms + launch_delay_ms)

        self._open_count[batch.batch_id] = len(batch.operations)
        self._templates[batch.batch_id] = template

        for operation in batch.operations:
            self._dispatcher.dispatch(operation, self.channel_id)
            self._operation_batch[operation.operation_id] = batch.batch_id

        self.batches_started += 1
        self._log.on_batch_started(
            batch.batch_id, len(batch.operations),
            self.pipeline_spacer_ms + launch_delay_ms,
        )
        return batch

    def handle_report(self, report: OperationReport) -> None:
        """
        Account for one completed operation.

        Raises:
            OrphanOperation: the operation belongs to no open batch
        """
        batch_id = self._operation_batch.get(report.operation_id)
        if batch_id is None:
            raise OrphanOperation(
                f"no batch for operation {report.operation_id}",
                operation_id=report.operation_id,
                open_batches=list(self._open_count),
            )

        remaining = self._open_count[batch_id] - 1

        efficacy = None
        record = self._dispatcher.get_dispatched(report.operation_id)
        if record and record.operation.expected_return_value:
            efficacy = report.return_value / record.operation.expected_return_value
        self._log.on_operation_report(
            report.operation_id, report.kind.value, batch_id,
            remaining, efficacy, report.time_taken_ms,
        )

        self._open_count[batch_id] = remaining
        if remaining == 0:
            # Replacement first, while the finished batch is still accounted for
            template = self._templates[batch_id]
            self.start(template)

            self._channels.send(self.parent_channel_id, BatchFinished(batch_id=batch_id))
            self._log.on_batch_finished(batch_id)

            del self._open_count[batch_id]
            del self._templates[batch_id]
            self.batches_finished += 1

        del self._operation_batch[report.operation_id]
        self._dispatcher.free(report.operation_id)

    def handle_message(self, raw: str) -> None:
        message = decode_message(raw)
        if not isinstance(message, OperationReport):
            raise MalformedMessage(
                f"batch manager expected an operation report, got {type(message).__name__}",
                raw=raw,
            )
        self.handle_report(message)

    async def run(self) -> None:
        """Consume completion reports until cancelled."""
        while True:
            raw = await self.channel.receive_raw()
            self.handle_message(raw)

    def shutdown(self) -> None:
        """Terminate and free everything, then forget all batches."""
        self._dispatcher.free_and_release_all()
        self._open_count.clear()
        self._templates.clear()
        self._operation_batch.clear()
        self._channels.close(self.channel_id)
