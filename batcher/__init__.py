"""
Batcher — Batch Scheduling & Capacity Dispatch

Keeps a stateful target near maximum value and minimum resistance while
extracting from it every pipeline cycle. Timed batches of dependent
operations are bin-packed onto a fleet of capacity-bearing nodes and
pipelined so a replacement batch launches the moment one completes.

Usage:
    from batcher import BatcherController, CapacityDispatcher, ChannelRegistry

    channels = ChannelRegistry()
    dispatcher = CapacityDispatcher(inventory, launcher)
    controller = BatcherController("alpha", oracle, dispatcher, channels, config)
    await controller.run()
"""

from batcher.types import (
    OperationKind,
    DepthPolicy,
    DEFAULT_UNIT_COSTS,
    TargetState,
    OperationTemplate,
    BatchTemplate,
    Operation,
    Batch,
    CapacityBlock,
    DispatchedOperation,
    NodeInfo,
)
from batcher.errors import (
    BatcherError,
    ConfigurationError,
    InvalidParameter,
    ProvisioningFailure,
    ContractViolation,
    DuplicateOperation,
    UnknownOperation,
    InvalidUnitCount,
    CapacityExhausted,
    LaunchFailure,
    OrphanOperation,
    UnknownChannel,
    ProtocolError,
    MalformedMessage,
)
from batcher.channels import (
    Channel,
    ChannelRegistry,
    OperationReport,
    BatchFinished,
    encode_message,
    decode_message,
)
from batcher.planner import build_extraction_template, build_reinforcement_template
from batcher.dispatcher import CapacityDispatcher
from batcher.manager import BatchManager
from batcher.config import BatcherConfig, parse_batcher_config
from batcher.controller import BatcherController, Mode
from batcher.profiler import TargetProfile, profile_target, profile_targets

__all__ = [
    "OperationKind",
    "DepthPolicy",
    "DEFAULT_UNIT_COSTS",
    "TargetState",
    "OperationTemplate",
    "BatchTemplate",
    "Operation",
    "Batch",
    "CapacityBlock",
    "DispatchedOperation",
    "NodeInfo",
    "BatcherError",
    "ConfigurationError",
    "InvalidParameter",
    "ProvisioningFailure",
    "ContractViolation",
    "DuplicateOperation",
    "UnknownOperation",
    "InvalidUnitCount",
    "CapacityExhausted",
    "LaunchFailure",
    "OrphanOperation",
    "UnknownChannel",
    "ProtocolError",
    "MalformedMessage",
    "Channel",
    "ChannelRegistry",
    "OperationReport",
    "BatchFinished",
    "encode_message",
    "decode_message",
    "build_extraction_template",
    "build_reinforcement_template",
    "CapacityDispatcher",
    "BatchManager",
    "BatcherConfig",
    "parse_batcher_config",
    "BatcherController",
    "Mode",
    "TargetProfile",
    "profile_target",
    "profile_targets",
]
