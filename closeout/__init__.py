"""
Field Closeout — Completion Orchestrator

Usage:
    from closeout.pipeline import CompletionPipeline, CompletionInput

    pipeline = CompletionPipeline(backend, equipment_store, draft_store,
                                  codes=codes, reference=reference,
                                  confirm=ask_operator, worker_id="W0001")
    result = pipeline.run(CompletionInput(work_order, form, hotbill, removal_tree))
"""

from closeout.errors import (
    CloseoutError, ValidationError, RecoverableRemoteError,
    BlockingRemoteError, OverridableRemoteError, OperatorDeclined, SubmissionError,
)
from closeout.models import (
    CompletionForm, CompletionKind, CompletionResult, CompletionStatus, WorkOrder,
)
from closeout.pipeline import CompletionInput, CompletionPipeline
