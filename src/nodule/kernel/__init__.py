# Kernel package: node capability model, action tags and the topology registry.

from nodule.kernel.actions import CAPTURE, DRAIN, IGNORE, ReaderAction, Ref, WriterAction
from nodule.kernel.backoff import TIMED_OUT, wait_with_backoff
from nodule.kernel.errors import (
    CaptureNotEnabledError,
    HarnessTimeoutError,
    InvalidActionError,
    NoduleError,
    NotReadyError,
    ProcessAlreadyRunningError,
    ProcessNotRunningError,
    ProcessStillRunningError,
    ResourceStateError,
    StuckResourceError,
    TopologyIntegrationRequiredError,
    TopologyStillRunningError,
    UnresolvedSymbolError,
)
from nodule.kernel.node import Node
from nodule.kernel.sequence import SequenceGenerator, default_sequence
from nodule.kernel.topology import Topology

__all__ = [
    "CAPTURE",
    "DRAIN",
    "IGNORE",
    "TIMED_OUT",
    "CaptureNotEnabledError",
    "HarnessTimeoutError",
    "InvalidActionError",
    "Node",
    "NoduleError",
    "NotReadyError",
    "ProcessAlreadyRunningError",
    "ProcessNotRunningError",
    "ProcessStillRunningError",
    "ReaderAction",
    "Ref",
    "ResourceStateError",
    "SequenceGenerator",
    "StuckResourceError",
    "Topology",
    "TopologyIntegrationRequiredError",
    "TopologyStillRunningError",
    "UnresolvedSymbolError",
    "WriterAction",
    "default_sequence",
    "wait_with_backoff",
]
