"""
Field Closeout — Data Types

Work order (read-mostly input), the technician's completion form, the
single CompletionRequest sent on commit, and the CompletionResult the
pipeline hands back to the host.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from fieldengine.codes import CodeBook
from fieldengine.drafts import DRAFT_FIELDS
from fieldengine.hotbill import HotbillContext, normalize_date


class CompletionKind(str, Enum):
    """Which completion screen the work order closes through."""
    TERMINATE = "terminate"
    REMOVAL_TERMINATE = "removal_terminate"
    RELOCATE_TERMINATE = "relocate_terminate"


# ═══════════════════════════════════════════════════════════════════
# Work Order
# ═══════════════════════════════════════════════════════════════════

@dataclass
class MoveInfo:
    """Relocation context: where the service is moving to."""
    new_prod_cd: str = ""
    old_prod_cd: str = ""
    new_so_id: str = ""
    ctrt_id: str = ""
    old_ctrt_id: str = ""
    wrk_stat_cd: str = ""

    @staticmethod
    def from_api(row: dict[str, Any]) -> MoveInfo:
        return MoveInfo(
            new_prod_cd=str(row.get("NEW_PROD_CD") or ""),
            old_prod_cd=str(row.get("OLD_PROD_CD") or ""),
            new_so_id=str(row.get("SO_ID") or row.get("NEW_SO_ID") or ""),
            ctrt_id=str(row.get("CTRT_ID") or ""),
            old_ctrt_id=str(row.get("OLD_CTRT_ID") or ""),
            wrk_stat_cd=str(row.get("WRK_STAT_CD") or ""),
        )


# Legacy field → WorkOrder attribute
_WORK_ORDER_FIELDS: dict[str, str] = {
    "WRK_ID": "work_id",
    "CUST_ID": "cust_id",
    "CTRT_ID": "ctrt_id",
    "DTL_CTRT_ID": "dtl_ctrt_id",
    "SO_ID": "so_id",
    "RCPT_ID": "rcpt_id",
    "WRK_CD": "wrk_cd",
    "WRK_STAT_CD": "wrk_stat_cd",
    "WRK_DTL_TCD": "wrk_dtl_tcd",
    "PROD_CD": "prod_cd",
    "PROD_GRP": "prod_grp",
    "KPI_PROD_GRP_CD": "kpi_prod_grp_cd",
    "VOIP_CTX": "voip_ctx",
    "VOIP_PROD_CD": "voip_prod_cd",
    "ISP_PROD_CD": "isp_prod_cd",
    "CTRT_STAT": "ctrt_stat",
    "OP_LNKD_CD": "op_lnkd_cd",
    "CERTIFY_TG": "certify_tg",
    "MSO_OUT_YN": "mso_out_yn",
    "TERM_HOPE_DT": "term_hope_dt",
    "HOPE_DT": "hope_dt",
    "CRR_ID": "crr_id",
}


@dataclass
class WorkOrder:
    """
    A work order as handed over by the host. The orchestrator only reads
    it, except for stamping the completed status after a successful
    commit.
    """
    work_id: str
    cust_id: str = ""
    ctrt_id: str = ""
    dtl_ctrt_id: str = ""
    so_id: str = ""
    rcpt_id: str = ""
    wrk_cd: str = ""
    wrk_stat_cd: str = ""
    wrk_dtl_tcd: str = ""
    prod_cd: str = ""
    prod_grp: str = ""
    kpi_prod_grp_cd: str = ""
    voip_ctx: str = ""
    voip_prod_cd: str = ""
    isp_prod_cd: str = ""
    ctrt_stat: str = ""
    op_lnkd_cd: str = ""
    certify_tg: str = ""
    certify_mode: bool = False
    mso_out_yn: str = ""
    term_hope_dt: str = ""
    hope_dt: str = ""
    crr_id: str = ""
    kind: CompletionKind = CompletionKind.TERMINATE
    move_info: MoveInfo | None = None
    address: dict[str, str] = field(default_factory=dict)

    @staticmethod
    def from_api(row: dict[str, Any], kind: CompletionKind | str | None = None) -> WorkOrder:
        kwargs: dict[str, Any] = {
            attr: str(row.get(key) or "") for key, attr in _WORK_ORDER_FIELDS.items()
        }
        kwargs["work_id"] = kwargs["work_id"] or str(row.get("id") or "")
        kwargs["certify_mode"] = str(row.get("IS_CERTIFY_PROD", "")) == "1" or bool(row.get("certify_mode"))
        kwargs["kind"] = CompletionKind(kind or row.get("kind") or CompletionKind.TERMINATE)
        move = row.get("move_info") or row.get("MOVE_INFO")
        kwargs["move_info"] = MoveInfo.from_api(move) if move else None
        kwargs["address"] = {k: str(v) for k, v in (row.get("address") or {}).items()}
        return WorkOrder(**kwargs)

    def is_completed(self, codes: CodeBook) -> bool:
        return self.wrk_stat_cd in codes.completed_statuses

    @property
    def hotbill_target_date(self) -> str:
        return normalize_date(self.term_hope_dt or self.hope_dt)

    def hotbill_context(self) -> HotbillContext:
        return HotbillContext(
            work_id=self.work_id,
            cust_id=self.cust_id,
            ctrt_id=self.ctrt_id,
            so_id=self.so_id,
            rcpt_id=self.rcpt_id,
            wrk_cd=self.wrk_cd,
            wrk_stat_cd=self.wrk_stat_cd,
            target_date=self.hotbill_target_date,
        )


# ═══════════════════════════════════════════════════════════════════
# Completion Form
# ═══════════════════════════════════════════════════════════════════

INSTALL_INFO_FIELDS = (
    "NET_CL", "WRNG_TP", "INSTL_TP", "CB_WRNG_TP", "CB_INSTL_TP",
    "INOUT_LINE_TP", "INOUT_LEN", "DVDR_YN", "BFR_LINE_YN", "CUT_YN",
    "TERM_NO", "RCV_STS", "SUBTAP_ID", "PORT_NUM", "EXTN_TP",
    "TAB_LBL", "CVT_LBL", "STB_LBL",
)


@dataclass
class CompletionForm:
    """Fields the technician fills in on the completion screen."""
    cust_rel: str = ""
    memo: str = ""
    completion_date: str = ""
    network_type: str = ""
    network_type_name: str = ""
    install_info: dict[str, str] = field(default_factory=dict)
    cnfm_cust_nm: str = ""
    cnfm_cust_telno: str = ""
    reuse_yn: bool = False

    @property
    def completion_yyyymmdd(self) -> str:
        return normalize_date(self.completion_date)

    def to_draft(self) -> dict[str, Any]:
        data = asdict(self)
        return {k: data[k] for k in DRAFT_FIELDS}

    @staticmethod
    def from_draft(draft: dict[str, Any], completion_date: str = "") -> CompletionForm:
        known = {k: draft[k] for k in DRAFT_FIELDS if k in draft}
        known["install_info"] = dict(known.get("install_info") or {})
        known["reuse_yn"] = bool(known.get("reuse_yn", False))
        return CompletionForm(completion_date=completion_date, **known)


# ═══════════════════════════════════════════════════════════════════
# Request / Result
# ═══════════════════════════════════════════════════════════════════

@dataclass
class CompletionRequest:
    """The single payload sent on commit."""
    work_info: dict[str, Any]
    remove_equipment_list: list[dict[str, Any]] = field(default_factory=list)
    equipment_list: list[dict[str, Any]] = field(default_factory=list)
    reuse: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "workInfo": dict(self.work_info),
            "equipmentList": list(self.equipment_list),
            "removeEquipmentList": list(self.remove_equipment_list),
        }


class CompletionStatus(str, Enum):
    COMPLETED = "completed"
    VALIDATION_FAILED = "validation_failed"
    BLOCKED = "blocked"
    DECLINED = "declined"
    SUBMISSION_FAILED = "submission_failed"


@dataclass
class CompletionResult:
    work_id: str
    status: CompletionStatus
    failed_step: str = ""
    messages: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    partial_failures: list[str] = field(default_factory=list)
    applied_steps: list[str] = field(default_factory=list)
    deferred_errors: list[str] = field(default_factory=list)
    response: dict[str, Any] = field(default_factory=dict)
    trace_id: str = ""

    @property
    def ok(self) -> bool:
        return self.status == CompletionStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d
