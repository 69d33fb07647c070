"""
Field Closeout — Billing Recalculation Engine ("Hotbill")

Decides whether an early-termination bill can be taken as-is or must be
recalculated, drives the confirmation sub-flow, and derives the charge
breakdown shown to the technician.

State machine (initial LOADING):

    LOADING            → NORMAL_PENDING       history exists, target <= today
    LOADING            → RECALC_NEEDED        no history, or target > today
    LOADING            → NOT_APPLICABLE       work is not a live termination
    NORMAL_PENDING     → NORMAL_CONFIRMED     confirm
    RECALC_NEEDED      → RECALC_IN_PROGRESS   recalculate
    RECALC_NEEDED      → RECALC_SKIPPED       skip
    RECALC_IN_PROGRESS → RECALC_DONE_PENDING  simulation succeeded
    RECALC_IN_PROGRESS → ERROR                simulation failed
    ERROR              → RECALC_IN_PROGRESS   retry
    ERROR              → RECALC_SKIPPED       skip
    RECALC_DONE_PENDING → RECALC_CONFIRMED    confirm

When target > today, recalculate also needs intend_recalculate set.

Ready (the pipeline gate) holds in NORMAL_CONFIRMED, RECALC_CONFIRMED,
RECALC_SKIPPED and NOT_APPLICABLE.

Dates are fixed-width YYYYMMDD strings, so string comparison orders them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Protocol

from fieldengine.codes import SUCCESS_CODES, CodeBook
from fieldengine.transitions import (
    ActionUnavailable, TransitionRecord, check_transition,
)

logger = logging.getLogger("fieldops.hotbill")


class HotbillState(str, Enum):
    LOADING = "loading"
    NOT_APPLICABLE = "not_applicable"
    NORMAL_PENDING = "normal_pending"
    NORMAL_CONFIRMED = "normal_confirmed"
    RECALC_NEEDED = "recalc_needed"
    RECALC_IN_PROGRESS = "recalc_in_progress"
    RECALC_DONE_PENDING = "recalc_done_pending"
    RECALC_CONFIRMED = "recalc_confirmed"
    RECALC_SKIPPED = "recalc_skipped"
    ERROR = "error"


HOTBILL_TRANSITIONS: dict[HotbillState, frozenset[HotbillState]] = {
    HotbillState.LOADING: frozenset({
        HotbillState.NORMAL_PENDING,
        HotbillState.RECALC_NEEDED,
        HotbillState.NOT_APPLICABLE,
    }),
    HotbillState.NORMAL_PENDING: frozenset({HotbillState.NORMAL_CONFIRMED}),
    HotbillState.RECALC_NEEDED: frozenset({
        HotbillState.RECALC_IN_PROGRESS,
        HotbillState.RECALC_SKIPPED,
    }),
    HotbillState.RECALC_IN_PROGRESS: frozenset({
        HotbillState.RECALC_DONE_PENDING,
        HotbillState.ERROR,
    }),
    HotbillState.ERROR: frozenset({
        HotbillState.RECALC_IN_PROGRESS,
        HotbillState.RECALC_SKIPPED,
    }),
    HotbillState.RECALC_DONE_PENDING: frozenset({HotbillState.RECALC_CONFIRMED}),
    HotbillState.NORMAL_CONFIRMED: frozenset(),
    HotbillState.RECALC_CONFIRMED: frozenset(),
    HotbillState.RECALC_SKIPPED: frozenset(),
    HotbillState.NOT_APPLICABLE: frozenset(),
}

READY_STATES = frozenset({
    HotbillState.NORMAL_CONFIRMED,
    HotbillState.RECALC_CONFIRMED,
    HotbillState.RECALC_SKIPPED,
    HotbillState.NOT_APPLICABLE,
})


# ═══════════════════════════════════════════════════════════════════
# Charge lines
# ═══════════════════════════════════════════════════════════════════

def _to_int(value: Any) -> int:
    if value in (None, ""):
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


@dataclass
class ChargeLine:
    name: str
    amount: int
    required: bool = False
    sort_key: int = 0

    @staticmethod
    def from_api(row: dict[str, Any]) -> ChargeLine:
        return ChargeLine(
            name=str(row.get("CHRG_ITEM_NM") or row.get("CHRG_ITM_NM") or row.get("CHG_NM") or ""),
            amount=_to_int(row.get("BILL_AMT")),
            required=str(row.get("REQ_YN", "")).upper() == "Y",
            sort_key=_to_int(row.get("SORT_SEQ")),
        )


def select_charge_lines(rows: list[dict[str, Any] | ChargeLine]) -> list[ChargeLine]:
    """Keep lines with a positive amount or a required flag, in sort-key order."""
    lines = [r if isinstance(r, ChargeLine) else ChargeLine.from_api(r) for r in rows]
    kept = [line for line in lines if line.amount > 0 or line.required]
    return sorted(kept, key=lambda line: line.sort_key)


def charge_total(lines: list[ChargeLine]) -> int:
    return sum(line.amount for line in lines)


def normalize_date(value: str | None) -> str:
    """'2024-01-15' / '20240115' → '20240115'; empty stays empty."""
    return (value or "").replace("-", "")[:8]


def today_yyyymmdd() -> str:
    return date.today().strftime("%Y%m%d")


# ═══════════════════════════════════════════════════════════════════
# Engine
# ═══════════════════════════════════════════════════════════════════

class BillingSource(Protocol):
    """The slice of the legacy backend the hotbill engine reads from."""
    def fetch_billing_summary(self, cust_id: str, rcpt_id: str) -> dict[str, Any]: ...
    def fetch_billing_by_contract(self, bill_seq_no: str, prod_grp: str, so_id: str,
                                  calc_work_class: str, rcpt_id: str) -> list[dict[str, Any]]: ...
    def fetch_billing_by_charge(self, bill_seq_no: str, calc_work_no: str,
                                ctrt_id: str) -> list[dict[str, Any]]: ...
    def run_billing_simulation(self, params: dict[str, Any]) -> dict[str, Any]: ...


@dataclass
class HotbillContext:
    """The work order fields the hotbill engine needs."""
    work_id: str
    cust_id: str
    ctrt_id: str
    so_id: str
    rcpt_id: str
    wrk_cd: str
    wrk_stat_cd: str
    target_date: str = ""


@dataclass
class HotbillSnapshot:
    state: HotbillState
    has_history: bool
    target_date: str
    today: str
    needs_recalculation: bool
    intend_recalculate: bool
    charge_lines: list[ChargeLine] = field(default_factory=list)
    charge_total: int = 0
    confirmed: bool = False
    ready: bool = False
    error: str = ""


class HotbillEngine:
    """
    One hotbill flow for one work order.

    Remote reads go through a BillingSource. The engine never retries on
    its own; after a failed recalculation the caller may call
    recalculate() again from ERROR.
    """

    def __init__(
        self,
        ctx: HotbillContext,
        source: BillingSource,
        codes: CodeBook | None = None,
        today: Callable[[], str] = today_yyyymmdd,
    ):
        self.ctx = ctx
        self.source = source
        self.codes = codes or CodeBook()
        self._today = today
        self.state = HotbillState.LOADING
        self.has_history = False
        self.summary: dict[str, Any] = {}
        self.charge_lines: list[ChargeLine] = []
        self.intend_recalculate = False
        self.last_error = ""
        self.rcpt_id = ctx.rcpt_id
        self.history: list[TransitionRecord] = []

    # ─── Derived ────────────────────────────────────────────────

    @property
    def target_date(self) -> str:
        return normalize_date(self.ctx.target_date)

    @property
    def today(self) -> str:
        return self._today()

    @property
    def is_future_date(self) -> bool:
        return self.target_date > self.today

    @property
    def needs_recalculation(self) -> bool:
        return (not self.has_history) or self.is_future_date

    @property
    def applicable(self) -> bool:
        return (self.ctx.wrk_cd == self.codes.hotbill_work_code
                and self.ctx.wrk_stat_cd != self.codes.hotbill_excluded_status)

    @property
    def is_ready(self) -> bool:
        return self.state in READY_STATES

    @property
    def confirmed(self) -> bool:
        return self.state in (HotbillState.NORMAL_CONFIRMED, HotbillState.RECALC_CONFIRMED)

    @property
    def charge_total(self) -> int:
        return charge_total(self.charge_lines)

    @property
    def can_recalculate(self) -> bool:
        if self.state not in (HotbillState.RECALC_NEEDED, HotbillState.ERROR):
            return False
        return self.intend_recalculate or not self.is_future_date

    @property
    def can_skip(self) -> bool:
        return self.state in (HotbillState.RECALC_NEEDED, HotbillState.ERROR)

    @property
    def can_confirm(self) -> bool:
        return self.state in (HotbillState.NORMAL_PENDING, HotbillState.RECALC_DONE_PENDING)

    # ─── Transitions ────────────────────────────────────────────

    def transition(self, target: HotbillState, action: str, **metadata) -> None:
        check_transition("hotbill", HOTBILL_TRANSITIONS, self.state, target)
        record = TransitionRecord(self.state, target, action, metadata=metadata)
        self.history.append(record)
        logger.info(
            "Hotbill transition: work=%s %s → %s (%s)",
            self.ctx.work_id, self.state.value, target.value, action,
        )
        self.state = target

    # ─── Actions ────────────────────────────────────────────────

    def load(self) -> HotbillState:
        """Fetch billing history and settle on the initial branch."""
        if not self.applicable:
            self.transition(HotbillState.NOT_APPLICABLE, "load",
                            wrk_cd=self.ctx.wrk_cd, wrk_stat_cd=self.ctx.wrk_stat_cd)
            return self.state

        try:
            self.has_history = self._fetch_chain(self.rcpt_id, self.codes.hotbill_calc_work_class)
        except Exception as e:
            logger.warning("Hotbill summary fetch failed: work=%s error=%s",
                           self.ctx.work_id, e, exc_info=True)
            self.has_history = False
            self.last_error = str(e)

        if self.needs_recalculation:
            self.transition(HotbillState.RECALC_NEEDED, "load",
                            has_history=self.has_history, target_date=self.target_date,
                            today=self.today)
        else:
            self.transition(HotbillState.NORMAL_PENDING, "load",
                            has_history=True, target_date=self.target_date, today=self.today)
        return self.state

    def confirm(self) -> HotbillState:
        if self.state == HotbillState.NORMAL_PENDING:
            self.transition(HotbillState.NORMAL_CONFIRMED, "confirm")
        else:
            self.transition(HotbillState.RECALC_CONFIRMED, "confirm")
        return self.state

    def set_intend_recalculate(self, value: bool) -> None:
        """Future-date branch: the technician states they intend to recalculate."""
        if value and self.state not in (HotbillState.RECALC_NEEDED, HotbillState.ERROR):
            raise ActionUnavailable("intend_recalculate", f"state is {self.state.value}")
        self.intend_recalculate = bool(value)

    def skip(self) -> HotbillState:
        self.transition(HotbillState.RECALC_SKIPPED, "skip")
        return self.state

    def recalculate(self) -> HotbillState:
        """Run the billing simulation and re-fetch the breakdown."""
        if self.state in (HotbillState.RECALC_NEEDED, HotbillState.ERROR) and not self.can_recalculate:
            raise ActionUnavailable(
                "recalculate",
                "target date is in the future; set intend_recalculate first",
            )
        if not (self.ctx.cust_id and self.ctx.ctrt_id and self.ctx.so_id):
            raise ActionUnavailable("recalculate", "customer, contract and SO are required")

        self.transition(HotbillState.RECALC_IN_PROGRESS, "recalculate")
        params = {
            "CUST_ID": self.ctx.cust_id,
            "CTRT_ID": self.ctx.ctrt_id,
            "SO_ID": self.ctx.so_id,
            "HOPE_DT": self.today,
            "CLC_WRK_CL": self.codes.hotbill_simulation_work_class,
            "PNTY_EXMP_YN": "N",
        }
        try:
            result = self.source.run_billing_simulation(params)
        except Exception as e:
            logger.error("Hotbill simulation raised: work=%s error=%s",
                         self.ctx.work_id, e, exc_info=True)
            self.last_error = str(e) or "simulation failed"
            self.transition(HotbillState.ERROR, "simulation_failed", error=self.last_error)
            return self.state

        if (result or {}).get("code") not in SUCCESS_CODES:
            self.last_error = (result or {}).get("message") or "simulation failed"
            self.transition(HotbillState.ERROR, "simulation_failed", error=self.last_error)
            return self.state

        self.last_error = ""
        self.rcpt_id = result.get("RCPT_ID") or self.rcpt_id
        try:
            self.has_history = self._fetch_chain(self.rcpt_id, self.codes.hotbill_calc_work_class)
        except Exception as e:
            logger.warning("Hotbill re-fetch after simulation failed: work=%s error=%s",
                           self.ctx.work_id, e)
        self.transition(HotbillState.RECALC_DONE_PENDING, "simulation_succeeded",
                        rcpt_id=self.rcpt_id, charge_total=self.charge_total)
        return self.state

    # ─── Fetch chain ────────────────────────────────────────────

    def _fetch_chain(self, rcpt_id: str, calc_work_class: str) -> bool:
        """
        summary → contract (for the calc work number) → charge lines.

        Returns whether history exists. Only the summary fetch may raise;
        contract/charge failures keep whatever lines were already shown.
        """
        if not (self.ctx.cust_id and rcpt_id):
            return False

        self.summary = self.source.fetch_billing_summary(self.ctx.cust_id, rcpt_id) or {}
        details = self.summary.get("details") or []
        if not details:
            return False

        detail = details[0]
        bill_seq_no = detail.get("BILL_SEQ_NO", "")
        prod_grp = detail.get("PROD_GRP", "")
        so_id = detail.get("SO_ID") or self.ctx.so_id
        ctrt_id = detail.get("CTRT_ID") or self.ctx.ctrt_id
        work_class = detail.get("CLC_WRK_CL") or calc_work_class

        if not (bill_seq_no and prod_grp and so_id and rcpt_id):
            return True

        try:
            contracts = self.source.fetch_billing_by_contract(
                bill_seq_no, prod_grp, so_id, work_class, rcpt_id,
            ) or []
            calc_work_no = ""
            target_ctrt = ctrt_id
            if contracts:
                match = next((c for c in contracts if c.get("CTRT_ID") == ctrt_id), contracts[0])
                calc_work_no = match.get("CLC_WRK_NO", "")
                target_ctrt = match.get("CTRT_ID") or ctrt_id

            if bill_seq_no and calc_work_no and target_ctrt:
                rows = self.source.fetch_billing_by_charge(bill_seq_no, calc_work_no, target_ctrt) or []
                self.charge_lines = select_charge_lines(rows)
                logger.debug("Hotbill charges: work=%s lines=%d total=%d",
                             self.ctx.work_id, len(self.charge_lines), self.charge_total)
        except Exception as e:
            logger.warning("Hotbill charge lookup failed (ignored): work=%s error=%s",
                           self.ctx.work_id, e)
        return True

    # ─── Export ─────────────────────────────────────────────────

    def snapshot(self) -> HotbillSnapshot:
        return HotbillSnapshot(
            state=self.state,
            has_history=self.has_history,
            target_date=self.target_date,
            today=self.today,
            needs_recalculation=self.needs_recalculation,
            intend_recalculate=self.intend_recalculate,
            charge_lines=list(self.charge_lines),
            charge_total=self.charge_total,
            confirmed=self.confirmed,
            ready=self.is_ready,
            error=self.last_error,
        )
