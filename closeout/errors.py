"""
Field Closeout — Error Taxonomy

Typed errors so the pipeline can tell apart:
- Validation failures → nothing was sent; show the messages
- Recoverable remote failures → logged, default substituted, keep going
- Blocking remote failures → abort now, keep the draft
- Overridable remote failures → ask the operator; refusal aborts
- Submission failures → the final commit itself failed

Each error carries the step it came from and whether the operator can
override it.
"""

from __future__ import annotations

from enum import Enum


class FailureClass(str, Enum):
    VALIDATION = "validation"
    RECOVERABLE = "recoverable"
    BLOCKING = "blocking"
    OVERRIDABLE = "overridable"
    SUBMISSION = "submission"


class CloseoutError(Exception):
    """Base exception for all completion-orchestrator errors."""
    failure_class: FailureClass = FailureClass.BLOCKING
    overridable: bool = False

    def __init__(self, message: str = "", *, step: str = "", **detail):
        self.step = step
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "class": self.failure_class.value,
            "step": self.step,
            "message": str(self),
            "detail": self.detail,
        }


class ValidationError(CloseoutError):
    """The validation gate failed; no remote call was issued."""
    failure_class = FailureClass.VALIDATION

    def __init__(self, messages: list[str], *, step: str = "validate"):
        self.messages = list(messages)
        super().__init__("; ".join(self.messages), step=step)


class RecoverableRemoteError(CloseoutError):
    """A read failed; the caller substitutes a default and continues."""
    failure_class = FailureClass.RECOVERABLE


class BlockingRemoteError(CloseoutError):
    """The pipeline must stop before any further side effect."""
    failure_class = FailureClass.BLOCKING


class OverridableRemoteError(CloseoutError):
    """The pipeline may continue only with explicit operator confirmation."""
    failure_class = FailureClass.OVERRIDABLE
    overridable = True


class OperatorDeclined(BlockingRemoteError):
    """The operator refused to continue past an overridable failure."""


class SubmissionError(CloseoutError):
    """The final completion commit failed."""
    failure_class = FailureClass.SUBMISSION
