"""
Field Closeout — Signal Transmission & Failure Classifier

Tells the head-end that service/equipment at the premises is gone.

Skip rules (checked in order):
    already sent in this session
    certification handshake already closed the service
    contract already closed (CTRT_STAT 20)
    nothing implicated: no removed/customer/installed equipment, no ISP product

Message variant: SMR05, or STB_DEL for LGHV set-top-box products. An
LGHV→LGHV relocation on the same contract sends nothing at all.

Failure classification, first match wins:
    VoIP product group and error not allow-listed  → BLOCKING
    upstream aggregator outage (MSO_OUT_YN = Y)    → BLOCKING
    anything else                                  → OVERRIDABLE
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from closeout.models import WorkOrder
from closeout.remote import LegacyBackend
from fieldengine.codes import SUCCESS_CODES, CodeBook, ReferenceData
from fieldengine.equipment import WorkEquipmentState

logger = logging.getLogger("fieldops.signal")


class SignalOutcome(str, Enum):
    SUCCESS = "success"
    BLOCKING = "blocking"
    OVERRIDABLE = "overridable"
    SKIPPED = "skipped"


@dataclass
class SignalPlan:
    """What transmit() will do. send=False means the step is a no-op."""
    send: bool
    skip_reason: str = ""
    mark_sent: bool = False
    message_id: str = ""
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class SignalAttempt:
    sent: bool
    result: SignalOutcome
    message_id: str = ""
    error_message: str = ""
    reason: str = ""
    response: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sent": self.sent,
            "result": self.result.value,
            "message_id": self.message_id,
            "error_message": self.error_message,
            "reason": self.reason,
        }


def is_signal_success(response: dict[str, Any] | None) -> bool:
    if not response:
        return False
    if response.get("code") in SUCCESS_CODES:
        return True
    message = str(response.get("message") or "")
    return "TRUE" in message and "000000" in message


def classify_signal_failure(
    wo: WorkOrder,
    error_message: str,
    codes: CodeBook | None = None,
) -> tuple[SignalOutcome, str]:
    """Returns (BLOCKING | OVERRIDABLE, reason)."""
    codes = codes or CodeBook()
    if wo.prod_grp == codes.voip_prod_grp:
        if not any(allowed in error_message for allowed in codes.voip_allowed_errors):
            return SignalOutcome.BLOCKING, "voip product with a disallowed error"
    if wo.mso_out_yn == "Y":
        return SignalOutcome.BLOCKING, "upstream aggregator outage"
    return SignalOutcome.OVERRIDABLE, "signal failed; operator may continue"


class SignalTransmitter:

    def __init__(
        self,
        backend: LegacyBackend,
        reference: ReferenceData | None = None,
        codes: CodeBook | None = None,
        worker_id: str = "",
    ):
        self.backend = backend
        self.reference = reference or ReferenceData()
        self.codes = codes or CodeBook()
        self.worker_id = worker_id

    def plan(
        self,
        wo: WorkOrder,
        equipment: WorkEquipmentState,
        handled_closure: bool = False,
        already_sent: bool = False,
    ) -> SignalPlan:
        if already_sent:
            return SignalPlan(send=False, skip_reason="already sent")
        if handled_closure:
            return SignalPlan(send=False, skip_reason="closure handled by certification")
        if wo.ctrt_stat == self.codes.closed_contract_status:
            return SignalPlan(send=False, skip_reason="contract already closed")
        if not equipment.has_implicated_equipment and not wo.isp_prod_cd:
            return SignalPlan(send=False, skip_reason="no equipment or ISP product implicated")

        removed = equipment.removed_items()
        message_id = self.codes.signal_default_message
        etc_1 = ""

        if wo.prod_cd in self.reference.lghv_products:
            move = wo.move_info
            new_prod = move.new_prod_cd if move else ""
            old_prod = move.old_prod_cd if move else ""
            ctrt_id = (move.ctrt_id if move else "") or wo.ctrt_id
            old_ctrt_id = move.old_ctrt_id if move else ""
            lghv = self.reference.lghv_products
            if new_prod in lghv and old_prod in lghv:
                if ctrt_id == old_ctrt_id:
                    return SignalPlan(send=False, mark_sent=True,
                                      skip_reason="LGHV to LGHV on the same contract")
            else:
                stb = next((i for i in removed if i.item_mid_cd == self.codes.stb_item_mid_cd), None)
                etc_1 = stb.equipment_id if stb else ""
            message_id = self.codes.signal_stb_message

        broadcast = next(
            (i for i in removed if i.prod_cmps_cl == self.codes.broadcast_prod_cmps_cl), None,
        )
        params = {
            "MSG_ID": message_id,
            "CUST_ID": wo.cust_id,
            "CTRT_ID": wo.ctrt_id,
            "SO_ID": wo.so_id,
            "EQT_NO": "",
            "EQT_PROD_CMPS_ID": broadcast.prod_cmps_id if broadcast else "",
            "PROD_CD": "",
            "WRK_ID": wo.work_id,
            "REG_UID": self.worker_id,
            "ETC_1": etc_1,
            "ETC_2": "",
            "ETC_3": "",
            "ETC_4": "",
            "VOIP_JOIN_CTRT_ID": wo.ctrt_id if wo.voip_prod_cd else "",
            "WTIME": self.codes.signal_wait_time,
        }
        return SignalPlan(send=True, message_id=message_id, params=params)

    def transmit(self, wo: WorkOrder, plan: SignalPlan) -> SignalAttempt:
        """Send per the plan and classify a failure. Never raises."""
        if not plan.send:
            return SignalAttempt(sent=plan.mark_sent, result=SignalOutcome.SKIPPED,
                                 message_id=plan.message_id, reason=plan.skip_reason)

        try:
            response = self.backend.send_signal(plan.params)
        except Exception as e:
            logger.warning("Signal transport failed: work=%s msg=%s error=%s",
                           wo.work_id, plan.message_id, e, exc_info=True)
            response = None
            error_message = str(e) or "signal transport failed"
        else:
            if is_signal_success(response):
                logger.info("Signal sent: work=%s msg=%s", wo.work_id, plan.message_id)
                return SignalAttempt(sent=True, result=SignalOutcome.SUCCESS,
                                     message_id=plan.message_id, response=response)
            error_message = str((response or {}).get("message") or "signal failed")

        outcome, reason = classify_signal_failure(wo, error_message, self.codes)
        logger.warning("Signal failed: work=%s msg=%s class=%s error=%s",
                       wo.work_id, plan.message_id, outcome.value, error_message)
        return SignalAttempt(
            sent=False,
            result=outcome,
            message_id=plan.message_id,
            error_message=error_message,
            reason=reason,
            response=response,
        )
