"""Exception taxonomy for the loomwork engine."""

from __future__ import annotations

from typing import Optional


class LoomworkError(Exception):
    """Base class for every error raised by loomwork."""


class ParseError(LoomworkError):
    """The workflow source or its inputs could not be turned into a graph."""


class MalformedWorkflowError(LoomworkError):
    """A submission was rejected because its sources are not parseable."""


class NotFoundError(LoomworkError):
    """The requested workflow, call or output does not exist (yet)."""


class IllegalTransitionError(LoomworkError):
    """A state machine was asked to perform a transition it does not allow."""


class ConstraintViolationError(LoomworkError):
    """A store write violated an integrity constraint; nothing was committed."""


class BackendTransportError(LoomworkError):
    """Raised by backend adapters when the backend cannot be reached."""


class CallExecutionError(LoomworkError):
    """Base class for errors scoped to one call attempt.

    ``retryable`` tells the call actor whether another attempt may fix it.
    """

    kind = "CallExecutionError"
    retryable = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SubmissionError(CallExecutionError):
    kind = "SubmissionError"


class BackendUnavailableError(CallExecutionError):
    kind = "BackendUnavailableError"


class NonZeroExitError(CallExecutionError):
    kind = "NonZeroExitError"

    def __init__(self, return_code: Optional[int], message: Optional[str] = None) -> None:
        super().__init__(message or f"Job exited with return code {return_code}")
        self.return_code = return_code


class InputEvaluationError(CallExecutionError):
    """Call inputs or a scatter collection could not be resolved at run time."""

    kind = "InputEvaluationError"
    retryable = False


class OutputEvaluationError(CallExecutionError):
    """A task output could not be evaluated although the job succeeded."""

    kind = "OutputEvaluationError"
    retryable = False


class OutputLookupError(CallExecutionError):
    """A declared workflow output is missing from a completed call's outputs."""

    kind = "OutputLookupError"
    retryable = False


__all__ = [
    "LoomworkError",
    "ParseError",
    "MalformedWorkflowError",
    "NotFoundError",
    "IllegalTransitionError",
    "ConstraintViolationError",
    "BackendTransportError",
    "CallExecutionError",
    "SubmissionError",
    "BackendUnavailableError",
    "NonZeroExitError",
    "InputEvaluationError",
    "OutputEvaluationError",
    "OutputLookupError",
]
