"""
Field Closeout — Validation Gate

Everything checked here is local: the gate runs before the first remote
call and a failure means nothing was sent. Broadcast-locked products
are refused outright (BlockingRemoteError); everything else is
collected into one list of messages (ValidationError).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from closeout.errors import BlockingRemoteError, ValidationError
from closeout.models import CompletionForm, CompletionKind, WorkOrder
from fieldengine.codes import CodeBook
from fieldengine.equipment import WorkEquipmentState
from fieldengine.removal_line import removal_line_applies

logger = logging.getLogger("fieldops.validation")

# install_info key → label used in messages
INSTALL_FIELD_LABELS = {
    "NET_CL": "network class",
    "WRNG_TP": "wiring type",
    "INSTL_TP": "install type",
}

# Plain termination only needs the network class; install type then
# defaults to the removal sentinel when the request is assembled.
REQUIRED_INSTALL_FIELDS = {
    CompletionKind.TERMINATE: ("NET_CL",),
    CompletionKind.REMOVAL_TERMINATE: ("NET_CL", "WRNG_TP", "INSTL_TP"),
    CompletionKind.RELOCATE_TERMINATE: ("NET_CL", "WRNG_TP", "INSTL_TP"),
}


@dataclass
class GateReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    reuse: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors


def effective_reuse(wo: WorkOrder, form: CompletionForm,
                    equipment: WorkEquipmentState | None = None) -> bool:
    """
    Reuse requested on the form or through the equipment store's
    reuse-all switch. Only honoured once the move work itself has
    reached status 2.
    """
    if wo.move_info is not None and wo.move_info.wrk_stat_cd != "2":
        return False
    return form.reuse_yn or bool(equipment is not None and equipment.reuse_all)


def check_broadcast_lock(wo: WorkOrder, equipment: WorkEquipmentState, codes: CodeBook | None = None) -> None:
    codes = codes or CodeBook()
    for item in equipment.removed_items():
        if item.prod_cmps_cl == codes.broadcast_prod_cmps_cl:
            raise BlockingRemoteError(
                "broadcast products cannot be completed here",
                step="validate", equipment_id=item.equipment_id,
            )
    if wo.kind == CompletionKind.TERMINATE and wo.kpi_prod_grp_cd in codes.broadcast_locked_kpi_groups:
        raise BlockingRemoteError(
            "broadcast products cannot be completed here",
            step="validate", kpi_prod_grp_cd=wo.kpi_prod_grp_cd,
        )


class ValidationGate:

    def __init__(self, codes: CodeBook | None = None):
        self.codes = codes or CodeBook()

    def check(
        self,
        wo: WorkOrder,
        form: CompletionForm,
        *,
        hotbill_ready: bool,
        removal_resolved: bool,
        equipment: WorkEquipmentState,
    ) -> GateReport:
        """Collect every error and warning; raises nothing."""
        report = GateReport(reuse=effective_reuse(wo, form, equipment))
        errors = report.errors
        info = form.install_info

        if wo.is_completed(self.codes):
            errors.append("work order is already completed")

        if not form.cust_rel or form.cust_rel == "[]":
            errors.append("customer relation is required")
        for key in REQUIRED_INSTALL_FIELDS.get(wo.kind, tuple(INSTALL_FIELD_LABELS)):
            if not info.get(key):
                errors.append(f"{INSTALL_FIELD_LABELS[key]} is required")
        if not form.completion_yyyymmdd:
            errors.append("completion date is required")

        if (wo.kind == CompletionKind.RELOCATE_TERMINATE and info.get("INSTL_TP")
                and info.get("INSTL_TP") != self.codes.removal_install_type):
            errors.append(f"install type must be {self.codes.removal_install_type} (removal)")

        if wo.kind == CompletionKind.REMOVAL_TERMINATE:
            if not form.cnfm_cust_nm:
                errors.append("confirming customer name is required")
            if not form.cnfm_cust_telno:
                errors.append("confirming customer phone is required")

        if not hotbill_ready:
            errors.append("billing recalculation must be confirmed or skipped")

        if removal_line_applies(wo.kpi_prod_grp_cd, wo.voip_ctx, self.codes) and not removal_resolved:
            errors.append("removal line decision is required")

        if wo.prod_grp not in self.codes.equipment_exempt_prod_grps and not equipment.has_any_disposition:
            errors.append("equipment disposition is required")

        hope = (wo.term_hope_dt or wo.hope_dt).replace("-", "")[:8]
        if hope and form.completion_yyyymmdd and form.completion_yyyymmdd < hope:
            report.warnings.append(f"completion date {form.completion_yyyymmdd} is before the hope date {hope}")

        return report

    def enforce(
        self,
        wo: WorkOrder,
        form: CompletionForm,
        *,
        hotbill_ready: bool,
        removal_resolved: bool,
        equipment: WorkEquipmentState,
    ) -> GateReport:
        """Raise BlockingRemoteError or ValidationError; return the report on pass."""
        check_broadcast_lock(wo, equipment, self.codes)
        report = self.check(wo, form, hotbill_ready=hotbill_ready,
                            removal_resolved=removal_resolved, equipment=equipment)
        if not report.ok:
            logger.info("Validation failed: work=%s errors=%d", wo.work_id, len(report.errors))
            raise ValidationError(report.errors)
        return report
