"""
Field Closeout — Removal-Line Decision Tree

Captures how the drop line was left at the premises when service is
terminated: wiring type → removal outcome → (if incomplete) reason.

    EDITING ──complete──→ RESOLVED_COMPLETE
       │
       └──assign_as──→ AS_CAPTURE ──save_as_ticket──→ RESOLVED_AS
                          └──cancel_as──→ EDITING

    RESOLVED_* ──edit──→ EDITING

An incomplete removal produces an after-service (AS) ticket. The ticket
is only staged here; the completion pipeline creates it after the final
commit, since some of its fields are settled at submission time.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from fieldengine.codes import CodeBook
from fieldengine.transitions import (
    ActionUnavailable, TransitionRecord, check_transition,
)

logger = logging.getLogger("fieldops.removal_line")


class WiringType(str, Enum):
    SHARED_TRUNK = "1"
    ONE_TO_ONE = "2"
    SHARED_DROP = "3"
    DEDICATED_DROP = "4"


class RemovalOutcome(str, Enum):
    COMPLETE = "4"
    INCOMPLETE = "1"


class IncompleteReason(str, Enum):
    ACCESS_DENIED = "5"
    TWO_STORY_SINGLE_WORKER = "6"
    SPECIAL_AREA = "7"


class RemovalLineState(str, Enum):
    EDITING = "editing"
    AS_CAPTURE = "as_capture"
    RESOLVED_COMPLETE = "resolved_complete"
    RESOLVED_AS = "resolved_as"


REMOVAL_LINE_TRANSITIONS: dict[RemovalLineState, frozenset[RemovalLineState]] = {
    RemovalLineState.EDITING: frozenset({
        RemovalLineState.RESOLVED_COMPLETE,
        RemovalLineState.AS_CAPTURE,
    }),
    RemovalLineState.AS_CAPTURE: frozenset({
        RemovalLineState.RESOLVED_AS,
        RemovalLineState.EDITING,
    }),
    RemovalLineState.RESOLVED_COMPLETE: frozenset({RemovalLineState.EDITING}),
    RemovalLineState.RESOLVED_AS: frozenset({RemovalLineState.EDITING}),
}

# Incomplete reason → AS receipt detail code
AS_DETAIL_CODES: dict[IncompleteReason, str] = {
    IncompleteReason.ACCESS_DENIED: "JHA",
    IncompleteReason.TWO_STORY_SINGLE_WORKER: "JHB",
    IncompleteReason.SPECIAL_AREA: "JHC",
}

AS_HOURS = tuple(f"{h:02d}" for h in range(9, 22))
AS_MINUTES = ("00", "10", "20", "30", "40", "50")

ADDRESS_FIELDS = (
    "POST_ID", "BLD_ID", "BLD_CL", "BLD_NM", "BUN_CL", "BUN_NO",
    "HO_NM", "APT_DONG_NO", "APT_HO_CNT", "ADDR", "ADDR_DTL",
)


def removal_line_applies(kpi_prod_grp_cd: str, voip_ctx: str, codes: CodeBook | None = None) -> bool:
    """Line-removal management applies to cable/data groups outside VoIP trunk contexts."""
    codes = codes or CodeBook()
    return (kpi_prod_grp_cd in codes.removal_line_kpi_groups
            and voip_ctx not in codes.removal_line_excluded_voip_ctx)


def default_hope_date(today: date) -> str:
    """Last day of this month; last day of next month during the month's final week."""
    last_day = calendar.monthrange(today.year, today.month)[1]
    year, month = today.year, today.month
    if today.day > last_day - 7:
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return f"{year:04d}{month:02d}{calendar.monthrange(year, month)[1]:02d}"


# ═══════════════════════════════════════════════════════════════════
# AS Ticket
# ═══════════════════════════════════════════════════════════════════

@dataclass
class ASTicket:
    """Follow-up field-service ticket for an incomplete line removal."""
    cust_id: str
    reason: IncompleteReason
    wiring_type: WiringType
    hope_date: str
    hope_hour: str = "10"
    hope_minute: str = "00"
    memo: str = ""
    crr_id: str = "01"
    worker_id: str = ""
    address: dict[str, str] = field(default_factory=dict)
    wrk_dtl_tcd: str = "0380"
    wrk_rcpt_cl: str = "JH"
    emrg_yn: str = "N"
    holy_yn: str = "N"

    @staticmethod
    def create(
        cust_id: str,
        reason: IncompleteReason,
        wiring_type: WiringType,
        today: date | None = None,
        address: dict[str, Any] | None = None,
        memo: str = "",
        crr_id: str = "01",
        worker_id: str = "",
    ) -> ASTicket:
        today = today or date.today()
        address = address or {}
        return ASTicket(
            cust_id=cust_id,
            reason=IncompleteReason(reason),
            wiring_type=WiringType(wiring_type),
            hope_date=default_hope_date(today),
            memo=memo,
            crr_id=crr_id or "01",
            worker_id=worker_id,
            address={k: str(address.get(k) or "") for k in ADDRESS_FIELDS},
        )

    @property
    def detail_code(self) -> str:
        return AS_DETAIL_CODES[self.reason]

    @property
    def hope_dttm(self) -> str:
        return f"{self.hope_date.replace('-', '')}{self.hope_hour}{self.hope_minute}"

    def validate(self, now: datetime | None = None) -> list[str]:
        """Returns list of errors. Empty = valid."""
        errors = []
        now = now or datetime.now()
        if not self.cust_id:
            errors.append("cust_id is required")
        if not self.hope_date:
            errors.append("hope date is required")
        if self.hope_hour not in AS_HOURS:
            errors.append(f"hope hour must be one of {AS_HOURS[0]}..{AS_HOURS[-1]}")
        if self.hope_minute not in AS_MINUTES:
            errors.append("hope minute must be a multiple of 10")
        if not errors and self.hope_dttm < now.strftime("%Y%m%d%H%M"):
            errors.append("hope date/time must not be in the past")
        return errors

    def to_payload(self) -> dict[str, Any]:
        return {
            "CUST_ID": self.cust_id,
            "RCPT_ID": "",
            "WRK_DTL_TCD": self.wrk_dtl_tcd,
            "WRK_RCPT_CL": self.wrk_rcpt_cl,
            "WRK_RCPT_CL_DTL": self.detail_code,
            "WRK_HOPE_DTTM": self.hope_dttm,
            "HOPE_DTTM": self.hope_dttm,
            "MEMO": self.memo,
            "EMRG_YN": self.emrg_yn,
            "HOLY_YN": self.holy_yn,
            "CRR_ID": self.crr_id,
            "WRKR_ID": self.worker_id,
            "REG_UID": self.worker_id,
            "REMOVE_LINE_TP": self.wiring_type.value,
            "REMOVE_GB": RemovalOutcome.INCOMPLETE.value,
            "REMOVE_STAT": self.reason.value,
            **self.address,
        }


# ═══════════════════════════════════════════════════════════════════
# Decision
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RemovalLineDecision:
    wiring_type: WiringType | None = None
    outcome: RemovalOutcome = RemovalOutcome.COMPLETE
    reason: IncompleteReason | None = None
    resolved: bool = False
    as_ticket: ASTicket | None = None

    def to_payload(self, work_id: str, worker_id: str = "") -> dict[str, Any]:
        return {
            "WRK_ID": work_id,
            "REMOVE_LINE_TP": self.wiring_type.value if self.wiring_type else "",
            "REMOVE_GB": self.outcome.value,
            "REMOVE_STAT": self.reason.value if self.reason else "",
            "REG_UID": worker_id,
        }


class RemovalLineTree:
    """Decision tree for one work order."""

    def __init__(self, work_id: str):
        self.work_id = work_id
        self.state = RemovalLineState.EDITING
        self.wiring_type: WiringType | None = None
        self.outcome = RemovalOutcome.COMPLETE
        self.reason: IncompleteReason | None = None
        self.as_ticket: ASTicket | None = None
        self.history: list[TransitionRecord] = []

    def transition(self, target: RemovalLineState, action: str, **metadata) -> None:
        check_transition("removal_line", REMOVAL_LINE_TRANSITIONS, self.state, target)
        self.history.append(TransitionRecord(self.state, target, action, metadata=metadata))
        logger.info("Removal-line transition: work=%s %s → %s (%s)",
                    self.work_id, self.state.value, target.value, action)
        self.state = target

    def _require_editing(self, action: str) -> None:
        if self.state != RemovalLineState.EDITING:
            raise ActionUnavailable(action, f"decision is {self.state.value}; call edit() first")

    # ─── Field entry ────────────────────────────────────────────

    def select_wiring_type(self, wiring_type: WiringType | str) -> None:
        """Picking a wiring type restarts the branch: complete, no reason."""
        self._require_editing("select_wiring_type")
        self.wiring_type = WiringType(wiring_type)
        self.outcome = RemovalOutcome.COMPLETE
        self.reason = None

    def select_outcome(self, outcome: RemovalOutcome | str) -> None:
        self._require_editing("select_outcome")
        self.outcome = RemovalOutcome(outcome)
        if self.outcome == RemovalOutcome.COMPLETE:
            self.reason = None

    def select_reason(self, reason: IncompleteReason | str) -> None:
        self._require_editing("select_reason")
        if self.outcome != RemovalOutcome.INCOMPLETE:
            raise ActionUnavailable("select_reason", "a reason only applies to an incomplete removal")
        self.reason = IncompleteReason(reason)

    # ─── Exit actions ───────────────────────────────────────────

    @property
    def can_complete(self) -> bool:
        return (self.state == RemovalLineState.EDITING
                and self.wiring_type is not None
                and self.outcome == RemovalOutcome.COMPLETE)

    @property
    def can_assign_as(self) -> bool:
        return (self.state == RemovalLineState.EDITING
                and self.wiring_type is not None
                and self.outcome == RemovalOutcome.INCOMPLETE
                and self.reason is not None)

    def complete(self) -> RemovalLineDecision:
        if not self.can_complete:
            raise ActionUnavailable("complete", "wiring type must be set and outcome must be complete")
        self.as_ticket = None
        self.transition(RemovalLineState.RESOLVED_COMPLETE, "complete",
                        wiring_type=self.wiring_type.value)
        return self.decision

    def assign_as(self) -> None:
        if not self.can_assign_as:
            raise ActionUnavailable("assign_as", "outcome must be incomplete with a reason")
        self.transition(RemovalLineState.AS_CAPTURE, "assign_as", reason=self.reason.value)

    def new_as_ticket(self, cust_id: str, today: date | None = None, **kwargs) -> ASTicket:
        """Ticket pre-filled from the current decision, for the capture step."""
        if self.state != RemovalLineState.AS_CAPTURE:
            raise ActionUnavailable("new_as_ticket", f"decision is {self.state.value}")
        return ASTicket.create(cust_id, self.reason, self.wiring_type, today=today, **kwargs)

    def save_as_ticket(self, ticket: ASTicket, now: datetime | None = None) -> RemovalLineDecision:
        """Validate and stage the ticket; the decision becomes resolved."""
        if self.state != RemovalLineState.AS_CAPTURE:
            raise ActionUnavailable("save_as_ticket", f"decision is {self.state.value}")
        errors = ticket.validate(now)
        if errors:
            raise ActionUnavailable("save_as_ticket", "; ".join(errors))
        self.as_ticket = ticket
        self.transition(RemovalLineState.RESOLVED_AS, "save_as_ticket",
                        hope_dttm=ticket.hope_dttm, detail_code=ticket.detail_code)
        return self.decision

    def cancel_as(self) -> None:
        self.transition(RemovalLineState.EDITING, "cancel_as")

    def edit(self) -> None:
        """Re-open a resolved decision; the next exit action overwrites it."""
        self.transition(RemovalLineState.EDITING, "edit")
        self.as_ticket = None

    # ─── Read ───────────────────────────────────────────────────

    @property
    def resolved(self) -> bool:
        return self.state in (RemovalLineState.RESOLVED_COMPLETE, RemovalLineState.RESOLVED_AS)

    @property
    def decision(self) -> RemovalLineDecision:
        return RemovalLineDecision(
            wiring_type=self.wiring_type,
            outcome=self.outcome,
            reason=self.reason,
            resolved=self.resolved,
            as_ticket=self.as_ticket,
        )
