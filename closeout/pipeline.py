"""
Field Closeout — Completion Submission Pipeline

Sequences everything a work order needs before and after the single
completion commit:

    0. validation gate            local only; nothing is sent on failure
    1. removal line (complete)    register, REMOVE_GB = 4
    2. staged suspension edit     save the new period
    3. certification              CL-08 query, CL-06 register when required
    4. signal                     transmit, classify, maybe ask the operator
    5. submit                     one CompletionRequest
    6. on success                 clear draft, mark completed, deferred AS

Steps 1-4 are recorded in the applied-steps ledger as they take effect,
so re-running after a failed commit skips what already went through
with an identical payload. Nothing is rolled back.

Every run returns a CompletionResult; only programming errors escape.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from closeout.certification import CertificationHandshake, CertificationState
from closeout.errors import (
    BlockingRemoteError, CloseoutError, OperatorDeclined, OverridableRemoteError,
    SubmissionError, ValidationError,
)
from closeout.ledger import InMemoryStepLedger, StepLedger
from closeout.models import (
    INSTALL_INFO_FIELDS, CompletionForm, CompletionRequest, CompletionResult,
    CompletionStatus, WorkOrder,
)
from closeout.remote import LegacyBackend, first_row, is_success
from closeout.signal import SignalOutcome, SignalTransmitter
from closeout.suspension import StagedSuspensionEdit, commit_suspension_edit
from closeout.validation import GateReport, ValidationGate
from fieldengine.codes import CodeBook, ReferenceData
from fieldengine.drafts import DraftStore
from fieldengine.equipment import (
    LOSS_FLAGS, EquipmentDispositionStore, EquipmentItem, SignalStatus, WorkEquipmentState,
)
from fieldengine.hotbill import HotbillEngine, HotbillSnapshot
from fieldengine.logging import PipelineLogger
from fieldengine.removal_line import RemovalLineState, RemovalLineTree

logger = logging.getLogger("fieldops.pipeline")

STEP_VALIDATE = "validate"
STEP_REMOVAL_LINE = "removal_line"
STEP_SUSPENSION = "suspension"
STEP_CERT_QUERY = "certification_query"
STEP_CERT_REGISTER = "certification_register"
STEP_SIGNAL = "signal"
STEP_SUBMIT = "submit"
STEP_AS_REMOVAL_LINE = "as_removal_line"
STEP_AS_TICKET = "as_ticket"

DEFAULT_MEMO = "work complete"

# (step, message) -> True to continue past an overridable failure
ConfirmCallback = Callable[[str, str], bool]


@dataclass
class CompletionInput:
    """What the technician settled on before pressing complete."""
    work_order: WorkOrder
    form: CompletionForm
    hotbill: HotbillEngine | HotbillSnapshot | None = None
    removal_line: RemovalLineTree | None = None
    suspension_edit: StagedSuspensionEdit | None = None


class CompletionPipeline:

    def __init__(
        self,
        backend: LegacyBackend,
        equipment: EquipmentDispositionStore,
        drafts: DraftStore,
        *,
        codes: CodeBook | None = None,
        reference: ReferenceData | None = None,
        ledger: StepLedger | None = None,
        confirm: ConfirmCallback | None = None,
        worker_id: str = "",
        carrier_id: str = "01",
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.equipment = equipment
        self.drafts = drafts
        self.codes = codes or CodeBook()
        self.reference = reference or ReferenceData()
        self.ledger = ledger or InMemoryStepLedger()
        self.confirm = confirm
        self.worker_id = worker_id
        self.carrier_id = carrier_id
        self.clock = clock
        self.gate = ValidationGate(self.codes)
        self.certification = CertificationHandshake(backend, self.reference, self.codes, worker_id)
        self.signal = SignalTransmitter(backend, self.reference, self.codes, worker_id)

    # ─── Entry point ────────────────────────────────────────────

    def run(self, inp: CompletionInput) -> CompletionResult:
        wo = inp.work_order
        plog = PipelineLogger(work_id=wo.work_id, kind=wo.kind.value)
        result = CompletionResult(work_id=wo.work_id, status=CompletionStatus.COMPLETED,
                                  trace_id=plog.trace_id)
        started = self.clock()
        plog.on_run_start()

        # The form survives any failure below
        self.drafts.save(wo.work_id, inp.form.to_draft())

        try:
            equipment = self.equipment.snapshot(wo.work_id)
            report = self._validate(inp, equipment, plog)
            result.warnings = list(report.warnings)

            self._register_removal_line(inp, result, plog)
            self._commit_suspension(inp, result, plog)
            cert = self._certify(wo, result, plog)
            try:
                self._send_signal(wo, equipment, cert, result, plog)
            except OverridableRemoteError as e:
                self._ask_operator(e, result, plog)

            request = self.build_request(wo, inp.form, equipment, report.reuse)
            result.response = self._submit(wo, request, plog)
        except ValidationError as e:
            plog.on_validation_failed(e.messages)
            self._fail(result, CompletionStatus.VALIDATION_FAILED, e, e.messages)
        except OperatorDeclined as e:
            self._fail(result, CompletionStatus.DECLINED, e)
        except BlockingRemoteError as e:
            self._fail(result, CompletionStatus.BLOCKED, e)
        except SubmissionError as e:
            self._fail(result, CompletionStatus.SUBMISSION_FAILED, e)
        else:
            self._finish(inp, result, plog)

        plog.on_run_end(result.status.value, self.clock() - started, len(result.applied_steps))
        return result

    @staticmethod
    def _fail(result: CompletionResult, status: CompletionStatus, error: CloseoutError,
              messages: list[str] | None = None) -> None:
        result.status = status
        result.failed_step = error.step
        result.messages = list(messages) if messages is not None else [str(error)]
        logger.warning("Completion stopped: work=%s status=%s step=%s error=%s",
                       result.work_id, status.value, error.step, error)

    # ─── 0. Gate ────────────────────────────────────────────────

    def hotbill_ready(self, wo: WorkOrder, hotbill: HotbillEngine | HotbillSnapshot | None) -> bool:
        if hotbill is None:
            # Without an engine only a work order hotbill never applies to passes
            return not (wo.wrk_cd == self.codes.hotbill_work_code
                        and wo.wrk_stat_cd != self.codes.hotbill_excluded_status)
        if isinstance(hotbill, HotbillSnapshot):
            return hotbill.ready
        return hotbill.is_ready

    def _validate(self, inp: CompletionInput, equipment: WorkEquipmentState,
                  plog: PipelineLogger) -> GateReport:
        plog.on_step_start(STEP_VALIDATE)
        try:
            report = self.gate.enforce(
                inp.work_order, inp.form,
                hotbill_ready=self.hotbill_ready(inp.work_order, inp.hotbill),
                removal_resolved=bool(inp.removal_line and inp.removal_line.resolved),
                equipment=equipment,
            )
        except CloseoutError:
            plog.on_step_end(STEP_VALIDATE, "failed")
            raise
        plog.on_step_end(STEP_VALIDATE, "passed", warnings=len(report.warnings))
        return report

    # ─── Ledger-guarded side effects ────────────────────────────

    def _already_applied(self, work_id: str, step: str, payload: dict[str, Any],
                         plog: PipelineLogger) -> bool:
        if self.ledger.is_applied(work_id, step, payload):
            logger.info("Step already applied, skipping: work=%s step=%s", work_id, step)
            plog.on_step_end(step, "skipped", reason="already applied")
            return True
        return False

    def _applied(self, work_id: str, step: str, payload: dict[str, Any],
                 result: CompletionResult, plog: PipelineLogger) -> None:
        self.ledger.record(work_id, step, payload)
        result.applied_steps.append(step)
        plog.on_step_end(step, "applied")

    # ─── 1. Removal line ────────────────────────────────────────

    def _register_removal_line(self, inp: CompletionInput, result: CompletionResult,
                               plog: PipelineLogger) -> None:
        tree = inp.removal_line
        if tree is None or tree.state != RemovalLineState.RESOLVED_COMPLETE:
            return
        wo = inp.work_order
        payload = tree.decision.to_payload(wo.work_id, self.worker_id)
        plog.on_step_start(STEP_REMOVAL_LINE)
        if self._already_applied(wo.work_id, STEP_REMOVAL_LINE, payload, plog):
            return

        plog.on_remote_call("register_removal_line", payload)
        try:
            response = self.backend.register_removal_line(payload)
        except Exception as e:
            plog.on_step_end(STEP_REMOVAL_LINE, "failed", error=str(e))
            raise BlockingRemoteError(f"removal line registration failed: {e}",
                                      step=STEP_REMOVAL_LINE) from e
        response = first_row(response)
        if not is_success(response):
            message = response.get("message") or "removal line registration failed"
            plog.on_step_end(STEP_REMOVAL_LINE, "failed", error=message)
            raise BlockingRemoteError(message, step=STEP_REMOVAL_LINE)
        self._applied(wo.work_id, STEP_REMOVAL_LINE, payload, result, plog)

    # ─── 2. Deferred edits ──────────────────────────────────────

    def _commit_suspension(self, inp: CompletionInput, result: CompletionResult,
                           plog: PipelineLogger) -> None:
        edit = inp.suspension_edit
        if edit is None:
            return
        wo = inp.work_order
        params = edit.to_params(self.worker_id)
        plog.on_step_start(STEP_SUSPENSION)
        if self._already_applied(wo.work_id, STEP_SUSPENSION, params, plog):
            return
        plog.on_remote_call("save_suspension_period", params)
        try:
            commit_suspension_edit(self.backend, edit, self.worker_id)
        except BlockingRemoteError as e:
            plog.on_step_end(STEP_SUSPENSION, "failed", error=str(e))
            raise
        self._applied(wo.work_id, STEP_SUSPENSION, params, result, plog)

    # ─── 3. Certification ───────────────────────────────────────

    def _certify(self, wo: WorkOrder, result: CompletionResult,
                 plog: PipelineLogger) -> CertificationState:
        plog.on_step_start(STEP_CERT_QUERY)
        state = self.certification.evaluate(wo)
        if not state.applicable:
            plog.on_step_end(STEP_CERT_QUERY, "skipped", reason="not applicable")
            return state
        plog.on_step_end(STEP_CERT_QUERY, "done", **state.to_dict())

        if not state.register_required:
            return state

        params = self.certification.register_params(wo)
        plog.on_step_start(STEP_CERT_REGISTER)
        if self._already_applied(wo.work_id, STEP_CERT_REGISTER, params, plog):
            state.registered = True
            return state
        plog.on_remote_call("register_certification_termination", params)
        try:
            self.certification.run(wo, state)
        except BlockingRemoteError as e:
            plog.on_step_end(STEP_CERT_REGISTER, "failed", error=str(e))
            raise
        self._applied(wo.work_id, STEP_CERT_REGISTER, params, result, plog)
        return state

    # ─── 4. Signal ──────────────────────────────────────────────

    def _send_signal(self, wo: WorkOrder, equipment: WorkEquipmentState, cert: CertificationState,
                     result: CompletionResult, plog: PipelineLogger) -> None:
        plan = self.signal.plan(
            wo, equipment,
            handled_closure=cert.handled_closure,
            already_sent=equipment.signal_status == SignalStatus.SUCCESS,
        )
        plog.on_step_start(STEP_SIGNAL)
        if not plan.send:
            if plan.mark_sent:
                self.equipment.set_signal_status(wo.work_id, SignalStatus.SUCCESS)
            plog.on_step_end(STEP_SIGNAL, "skipped", reason=plan.skip_reason)
            return
        if self._already_applied(wo.work_id, STEP_SIGNAL, plan.params, plog):
            return

        self.equipment.set_signal_status(wo.work_id, SignalStatus.PROCESSING)
        plog.on_remote_call("send_signal", plan.params)
        attempt = self.signal.transmit(wo, plan)

        if attempt.result == SignalOutcome.SUCCESS:
            self.equipment.set_signal_status(wo.work_id, SignalStatus.SUCCESS, attempt.to_dict())
            self._applied(wo.work_id, STEP_SIGNAL, plan.params, result, plog)
            return

        self.equipment.set_signal_status(wo.work_id, SignalStatus.FAIL, attempt.to_dict())
        plog.on_classification(STEP_SIGNAL, attempt.result.value, attempt.error_message)

        if attempt.result == SignalOutcome.BLOCKING:
            plog.on_step_end(STEP_SIGNAL, "blocked", reason=attempt.reason)
            raise BlockingRemoteError(
                f"signal failed: {attempt.error_message}",
                step=STEP_SIGNAL, reason=attempt.reason,
            )

        raise OverridableRemoteError(attempt.error_message, step=STEP_SIGNAL, reason=attempt.reason)

    def _ask_operator(self, error: OverridableRemoteError, result: CompletionResult,
                      plog: PipelineLogger) -> None:
        """Continue past an overridable failure only on explicit confirmation."""
        confirmed = bool(self.confirm and self.confirm(error.step, str(error)))
        plog.on_operator_decision(error.step, confirmed)
        if not confirmed:
            plog.on_step_end(error.step, "failed", reason="operator declined")
            raise OperatorDeclined(
                f"{error.step} failed and the operator declined to continue: {error}",
                step=error.step,
            ) from error
        result.partial_failures.append(f"{error.step}: {error}")
        plog.on_step_end(error.step, "overridden")

    # ─── 5. Request assembly and submit ─────────────────────────

    def work_info(self, wo: WorkOrder, form: CompletionForm) -> dict[str, Any]:
        info = {key: str(form.install_info.get(key) or "") for key in INSTALL_INFO_FIELDS}
        info["INSTL_TP"] = info["INSTL_TP"] or self.codes.removal_install_type
        return {
            "WRK_ID": wo.work_id,
            "WRK_CD": wo.wrk_cd,
            "WRK_DTL_TCD": wo.wrk_dtl_tcd,
            "CUST_ID": wo.cust_id,
            "CTRT_ID": wo.ctrt_id,
            "RCPT_ID": wo.rcpt_id,
            "CRR_ID": wo.crr_id or self.carrier_id,
            "WRKR_ID": self.worker_id,
            "WRKR_CMPL_DT": form.completion_yyyymmdd,
            "MEMO": form.memo or DEFAULT_MEMO,
            "STTL_YN": "Y",
            "REG_UID": self.worker_id,
            "CUST_REL": form.cust_rel,
            "CNFM_CUST_NM": form.cnfm_cust_nm,
            "CNFM_CUST_TELNO": form.cnfm_cust_telno,
            "REQ_CUST_TEL_NO": form.cnfm_cust_telno,
            "WRK_ACT_CL": "20",
            "NET_CL_NM": form.network_type_name,
            **info,
        }

    def _equipment_row(self, wo: WorkOrder, item: EquipmentItem) -> dict[str, Any]:
        return {
            "EQT_NO": item.equipment_id,
            "EQT_SERNO": item.serial,
            "ITEM_MID_CD": item.item_mid_cd,
            "EQT_CL_CD": item.eqt_cl_cd,
            "MAC_ADDRESS": item.mac,
            "SVC_CMPS_ID": item.svc_cmps_id,
            "PROD_CD": item.prod_cd,
            "WRK_ID": wo.work_id,
            "CUST_ID": wo.cust_id,
            "CTRT_ID": item.contract_id or wo.ctrt_id,
            "WRK_CD": wo.wrk_cd,
            "REG_UID": self.worker_id,
        }

    def removed_equipment_row(self, wo: WorkOrder, item: EquipmentItem, reuse: bool) -> dict[str, Any]:
        row = self._equipment_row(wo, item)
        row.update({api: "1" if item.flags.get(name) else "0" for name, api in LOSS_FLAGS.items()})
        row.update({
            "CRR_TSK_CL": "02",
            "RCPT_ID": wo.rcpt_id,
            "CRR_ID": wo.crr_id or self.carrier_id,
            "WRKR_ID": self.worker_id,
            "REUSE_YN": "1" if reuse else "0",
            "LENT": "10",
            "ITLLMT_PRD": "00",
            "EQT_USE_STAT_CD": "1",
            "EQT_CHG_GB": "1",
            "OLD_LENT_YN": "N",
            "EQT_PROD_CMPS_ID": item.prod_cmps_id,
        })
        return row

    def build_request(self, wo: WorkOrder, form: CompletionForm,
                      equipment: WorkEquipmentState, reuse: bool) -> CompletionRequest:
        return CompletionRequest(
            work_info=self.work_info(wo, form),
            remove_equipment_list=[
                self.removed_equipment_row(wo, item, reuse) for item in equipment.removed_items()
            ],
            equipment_list=[self._equipment_row(wo, item) for item in equipment.installed_items()],
            reuse=reuse,
        )

    def _submit(self, wo: WorkOrder, request: CompletionRequest,
                plog: PipelineLogger) -> dict[str, Any]:
        payload = request.to_payload()
        plog.on_step_start(STEP_SUBMIT)
        plog.on_remote_call("submit_completion", payload)
        try:
            response = self.backend.submit_completion(payload)
        except Exception as e:
            logger.error("Completion submit raised: work=%s error=%s", wo.work_id, e, exc_info=True)
            plog.on_step_end(STEP_SUBMIT, "failed", error=str(e))
            raise SubmissionError(str(e) or "completion submit failed", step=STEP_SUBMIT) from e
        response = first_row(response)
        if not is_success(response):
            message = response.get("message") or "completion submit failed"
            plog.on_step_end(STEP_SUBMIT, "failed", error=message)
            raise SubmissionError(message, step=STEP_SUBMIT, code=response.get("code"))
        plog.on_step_end(STEP_SUBMIT, "applied")
        return dict(response)

    # ─── 6. After commit ────────────────────────────────────────

    def _finish(self, inp: CompletionInput, result: CompletionResult, plog: PipelineLogger) -> None:
        wo = inp.work_order
        result.applied_steps.append(STEP_SUBMIT)
        self.drafts.clear(wo.work_id)
        wo.wrk_stat_cd = self.codes.completed_status
        self.ledger.clear(wo.work_id)
        self.equipment.clear(wo.work_id)
        logger.info("Work order completed: work=%s", wo.work_id)

        tree = inp.removal_line
        if tree is not None and tree.state == RemovalLineState.RESOLVED_AS and tree.as_ticket:
            self._create_deferred_as(wo, tree, result, plog)

    def _create_deferred_as(self, wo: WorkOrder, tree: RemovalLineTree,
                            result: CompletionResult, plog: PipelineLogger) -> None:
        """
        Register the incomplete removal line, then open the AS ticket.
        A failed registration stops here; no ticket is opened without it.
        Never raises.
        """
        calls = (
            (STEP_AS_REMOVAL_LINE, self.backend.register_removal_line,
             tree.decision.to_payload(wo.work_id, self.worker_id)),
            (STEP_AS_TICKET, self.backend.create_as_ticket, tree.as_ticket.to_payload()),
        )
        for step, call, payload in calls:
            plog.on_step_start(step)
            plog.on_remote_call(step, payload)
            try:
                response = first_row(call(payload))
            except Exception as e:
                logger.error("Deferred step raised: work=%s step=%s error=%s",
                             wo.work_id, step, e, exc_info=True)
                response = {"message": str(e)}
            if not is_success(response):
                message = response.get("message") or f"{step} failed"
                result.deferred_errors.append(f"{step}: {message}")
                plog.on_step_end(step, "failed", error=message)
                return
            result.applied_steps.append(step)
            plog.on_step_end(step, "applied")
