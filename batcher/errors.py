"""
Batcher — Structured Exception Hierarchy

Typed errors so callers can distinguish between:
- Configuration failures → the request itself is unschedulable, fail fast
- Contract violations    → an invariant was broken by the caller, never retry
- Protocol failures      → a message on a channel did not match its schema

Each error carries: severity, retryable flag, and free-form detail.
None of the errors here are retryable: retrying a contract violation
would hide the scheduling bug that caused it.
"""

from __future__ import annotations
from enum import Enum


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ═══════════════════════════════════════════════════════════════
# Base
# ═══════════════════════════════════════════════════════════════

class BatcherError(Exception):
    """Base exception for all Batcher errors."""
    severity: Severity = Severity.MEDIUM
    retryable: bool = False

    def __init__(self, message: str = "", **kwargs):
        self.detail = kwargs
        super().__init__(message)


# ═══════════════════════════════════════════════════════════════
# Configuration Errors — fatal at template/dispatcher construction
# ═══════════════════════════════════════════════════════════════

class ConfigurationError(BatcherError):
    """The caller supplied an unschedulable request."""
    severity = Severity.HIGH


class InvalidParameter(ConfigurationError):
    """Fraction, multiplier, spacer or config value out of range."""
    pass


class ProvisioningFailure(ConfigurationError):
    """Payload distribution to an execution node failed."""
    pass


# ═══════════════════════════════════════════════════════════════
# Contract Violations — an invariant was broken
# ═══════════════════════════════════════════════════════════════

class ContractViolation(BatcherError):
    """Unique ids, reserve-before-use or pre-checked capacity violated."""
    severity = Severity.CRITICAL


class DuplicateOperation(ContractViolation):
    """Operation id is already tracked by the dispatcher."""
    pass


class UnknownOperation(ContractViolation):
    """Free of an operation id the dispatcher does not track."""
    pass


class InvalidUnitCount(ContractViolation):
    """Operation requests zero or negative units."""
    pass


class CapacityExhausted(ContractViolation):
    """No single capacity block can hold the operation."""
    pass


class LaunchFailure(ContractViolation):
    """The process launcher returned no execution handle."""
    pass


class OrphanOperation(ContractViolation):
    """Completion report for an operation that belongs to no batch."""
    pass


class UnknownChannel(ContractViolation):
    """Message addressed to a channel id nobody registered."""
    pass


# ═══════════════════════════════════════════════════════════════
# Protocol Errors — channel boundary
# ═══════════════════════════════════════════════════════════════

class ProtocolError(BatcherError):
    """Message exchange failures."""
    severity = Severity.HIGH


class MalformedMessage(ProtocolError):
    """Message does not decode into a known variant."""
    pass
