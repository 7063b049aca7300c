"""Messages exchanged between the manager, supervisors and call actors."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .contracts import CallKey, StdoutStderr
from .errors import CallExecutionError


# manager -> supervisor
@dataclass(frozen=True)
class StartWorkflow:
    pass


@dataclass(frozen=True)
class AbortWorkflow:
    """Resolves ``acknowledged`` with the workflow state once handled."""

    acknowledged: Optional[asyncio.Future] = None


# supervisor -> call actor
@dataclass(frozen=True)
class StartCall:
    pass


@dataclass(frozen=True)
class CancelCall:
    pass


# call actor -> itself
@dataclass(frozen=True)
class PollJob:
    pass


# call actor -> supervisor
@dataclass(frozen=True)
class CallStarting:
    key: CallKey


@dataclass(frozen=True)
class CallRunning:
    key: CallKey
    job_id: str


@dataclass(frozen=True)
class CallSucceeded:
    key: CallKey
    outputs: Dict[str, Any] = field(default_factory=dict)
    return_code: Optional[int] = None
    streams: Optional[StdoutStderr] = None


@dataclass(frozen=True)
class CallFailed:
    """A call attempt ended in failure; ``retry`` asks for a new attempt."""

    key: CallKey
    error: CallExecutionError
    retry: bool = False
    streams: Optional[StdoutStderr] = None


@dataclass(frozen=True)
class CallAborted:
    key: CallKey
