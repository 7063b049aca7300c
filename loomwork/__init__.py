"""loomwork: durable execution of call graphs on local and cluster backends."""

from .backends import get_backend
from .config import LoomworkConfig, load_config
from .contracts import (
    CallKey,
    CallStatus,
    FailureMode,
    StdoutStderr,
    WorkflowDescriptor,
    WorkflowId,
    WorkflowSourceFiles,
    WorkflowState,
)
from .manager import WorkflowManager
from .parser import parse
from .persistence import get_store
from .supervisor import WorkflowExecutionSupervisor

__version__ = "0.1.0"
__all__ = [
    "CallKey",
    "CallStatus",
    "FailureMode",
    "LoomworkConfig",
    "StdoutStderr",
    "WorkflowDescriptor",
    "WorkflowExecutionSupervisor",
    "WorkflowId",
    "WorkflowManager",
    "WorkflowSourceFiles",
    "WorkflowState",
    "get_backend",
    "get_store",
    "load_config",
    "parse",
]
