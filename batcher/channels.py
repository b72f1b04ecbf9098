"""
Batcher — Completion Channels

Typed message exchange between workers, batch managers and controllers.

A Channel is owned by its receiver. Senders never hold the channel
object, only its numeric id, and address it through the registry:

    registry = ChannelRegistry()
    inbox = registry.create("manager")
    launcher.launch(..., completion_channel_id=inbox.channel_id)

    # worker side
    registry.send(inbox.channel_id, OperationReport(...))

    # receiver side
    message = await inbox.receive()

Messages cross the channel as JSON strings, the same wire format remote
workers write. Decoding is the single validation step: anything that is
not exactly one of the known variants raises MalformedMessage.

Wire format:
  {"type": "operation-report", "operationId", "kind", "timeTakenMs", "returnValue"}
  {"type": "batch-finished", "batchId"}
"""

from __future__ import annotations

import asyncio
import itertools
import json
from dataclasses import dataclass
from typing import Any, Union

from batcher.errors import MalformedMessage, UnknownChannel
from batcher.types import OperationKind


# ═══════════════════════════════════════════════════════════════════
# Message Variants
# ═══════════════════════════════════════════════════════════════════

OPERATION_REPORT = "operation-report"
BATCH_FINISHED = "batch-finished"


@dataclass(frozen=True)
class OperationReport:
    """A worker finished one operation."""
    operation_id: str
    kind: OperationKind
    time_taken_ms: float
    return_value: float

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": OPERATION_REPORT,
            "operationId": self.operation_id,
            "kind": self.kind.value,
            "timeTakenMs": self.time_taken_ms,
            "returnValue": self.return_value,
        }


@dataclass(frozen=True)
class BatchFinished:
    """A batch manager finished one batch."""
    batch_id: str

    def to_wire(self) -> dict[str, Any]:
        return {"type": BATCH_FINISHED, "batchId": self.batch_id}


Message = Union[OperationReport, BatchFinished]


# ═══════════════════════════════════════════════════════════════════
# Codec
# ═══════════════════════════════════════════════════════════════════

def encode_message(message: Message) -> str:
    return json.dumps(message.to_wire())


def _field(payload: dict[str, Any], key: str, types: tuple[type, ...]) -> Any:
    value = payload.get(key)
    # bool is an int subclass but never a valid number on the wire
    if value is None or isinstance(value, bool) or not isinstance(value, types):
        raise MalformedMessage(
            f"field {key!r} missing or not {'/'.join(t.__name__ for t in types)}",
            key=key, payload=payload,
        )
    return value


def decode_message(raw: str) -> Message:
    """
    Decode one wire message into its variant.

    Raises:
        MalformedMessage: invalid JSON, unknown type tag, or a missing or
            mistyped field
    """
    try:
        payload = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise MalformedMessage(f"message is not valid JSON: {e}", raw=raw) from e

    if not isinstance(payload, dict):
        raise MalformedMessage("message is not a JSON object", raw=raw)

    tag = payload.get("type")
    if tag == OPERATION_REPORT:
        kind = _field(payload, "kind", (str,))
        try:
            kind = OperationKind(kind)
        except ValueError as e:
            raise MalformedMessage(f"unknown operation kind {kind!r}", raw=raw) from e
        return OperationReport(
            operation_id=_field(payload, "operationId", (str,)),
            kind=kind,
            time_taken_ms=float(_field(payload, "timeTakenMs", (int, float))),
            return_value=float(_field(payload, "returnValue", (int, float))),
        )
    if tag == BATCH_FINISHED:
        return BatchFinished(batch_id=_field(payload, "batchId", (str,)))

    raise MalformedMessage(f"unknown message type {tag!r}", raw=raw)


# ═══════════════════════════════════════════════════════════════════
# Channels
# ═══════════════════════════════════════════════════════════════════

class Channel:
    """Receiving end of a FIFO message queue."""

    def __init__(self, channel_id: int, name: str = ""):
        self.channel_id = channel_id
        self.name = name
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self.closed = False

    def _put(self, raw: str) -> None:
        self._queue.put_nowait(raw)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()

    async def receive_raw(self) -> str:
        """Wait for the next wire message, undecoded."""
        return await self._queue.get()

    async def receive(self) -> Message:
        return decode_message(await self.receive_raw())

    def __repr__(self) -> str:
        return f"Channel({self.channel_id}, {self.name!r}, pending={self.pending})"


class ChannelRegistry:
    """Numeric-id address book for channels in one process."""

    def __init__(self):
        self._channels: dict[int, Channel] = {}
        self._ids = itertools.count(1)

    def create(self, name: str = "") -> Channel:
        channel = Channel(next(self._ids), name)
        self._channels[channel.channel_id] = channel
        return channel

    def get(self, channel_id: int) -> Channel:
        channel = self._channels.get(channel_id)
        if channel is None:
            raise UnknownChannel(f"no channel with id {channel_id}", channel_id=channel_id)
        return channel

    def send(self, channel_id: int, message: Message) -> None:
        self.send_raw(channel_id, encode_message(message))

    def send_raw(self, channel_id: int, raw: str) -> None:
        """Deliver an already encoded message; used by remote-worker bridges."""
        self.get(channel_id)._put(raw)

    def close(self, channel_id: int) -> None:
        channel = self._channels.pop(channel_id, None)
        if channel is not None:
            channel.closed = True

    def __contains__(self, channel_id: int) -> bool:
        return channel_id in self._channels

    def __len__(self) -> int:
        return len(self._channels)
