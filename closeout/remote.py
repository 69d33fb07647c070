"""
Field Closeout — Legacy Backend Port

The orchestrator's only view of the legacy backend. The host supplies an
object with these methods; the wire format behind them belongs to the
backend. Transport retry/backoff lives beneath this interface.

Responses are plain dicts. Mutating calls answer with at least
``{"code": ..., "message": ...}``; a code of SUCCESS or OK means the
call took effect.

Implementations:
  - fixtures.backend.FixtureBackend: in-memory, scenario-driven, records calls
  - production: thin adapter over the legacy HTTP endpoints (host-owned)
"""

from __future__ import annotations

from typing import Any, Protocol

from fieldengine.codes import SUCCESS_CODES


class LegacyBackend(Protocol):
    # ─── Equipment ──────────────────────────────────────────────
    def lookup_equipment_history(self, serial: str = "", mac: str = "") -> dict[str, Any] | None: ...

    # ─── Billing (hotbill) ──────────────────────────────────────
    def fetch_billing_summary(self, cust_id: str, rcpt_id: str) -> dict[str, Any]: ...
    def fetch_billing_by_contract(self, bill_seq_no: str, prod_grp: str, so_id: str,
                                  calc_work_class: str, rcpt_id: str) -> list[dict[str, Any]]: ...
    def fetch_billing_by_charge(self, bill_seq_no: str, calc_work_no: str,
                                ctrt_id: str) -> list[dict[str, Any]]: ...
    def run_billing_simulation(self, params: dict[str, Any]) -> dict[str, Any]: ...

    # ─── Removal line / AS ──────────────────────────────────────
    def register_removal_line(self, payload: dict[str, Any]) -> dict[str, Any]: ...
    def create_as_ticket(self, payload: dict[str, Any]) -> dict[str, Any]: ...

    # ─── Certification (CL-08 query, CL-06 register) ────────────
    def query_certification(self, params: dict[str, Any]) -> dict[str, Any] | list[dict[str, Any]]: ...
    def register_certification_termination(self, params: dict[str, Any]) -> dict[str, Any]: ...

    # ─── Signal ─────────────────────────────────────────────────
    def send_signal(self, params: dict[str, Any]) -> dict[str, Any]: ...

    # ─── Suspension period ──────────────────────────────────────
    def fetch_suspension_info(self, ctrt_id: str, rcpt_id: str) -> dict[str, Any] | None: ...
    def save_suspension_period(self, params: dict[str, Any]) -> dict[str, Any]: ...

    # ─── Commit ─────────────────────────────────────────────────
    def submit_completion(self, payload: dict[str, Any]) -> dict[str, Any]: ...


def is_success(result: dict[str, Any] | None) -> bool:
    return bool(result) and result.get("code") in SUCCESS_CODES


def first_row(result: Any) -> dict[str, Any]:
    """Some endpoints answer with a one-element list instead of an object."""
    if isinstance(result, list):
        return result[0] if result else {}
    return result or {}
