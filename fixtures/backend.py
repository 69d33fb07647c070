"""
Field Closeout — Fixture Backend

In-memory LegacyBackend with the same method signatures the production
adapter exposes. Answers come from a per-operation response table
(usually the ``backend`` section of a scenario YAML); every call is
recorded so tests can assert on what was sent and in which order.

    backend = FixtureBackend({"send_signal": {"code": "FAIL", "message": "E-1"}})
    backend.queue("submit_completion", {"code": "FAIL"}, {"code": "SUCCESS"})
    backend.fail("query_certification", "timeout")

A response value of ``{"raise": "text"}`` makes the call raise
RuntimeError(text), the way a transport failure surfaces.
"""

from __future__ import annotations

import copy
from collections import deque
from typing import Any

DEFAULT_RESPONSES: dict[str, Any] = {
    "lookup_equipment_history": None,
    "fetch_billing_summary": {"details": []},
    "fetch_billing_by_contract": [],
    "fetch_billing_by_charge": [],
    "run_billing_simulation": {"code": "SUCCESS"},
    "register_removal_line": {"code": "SUCCESS", "message": "OK"},
    "create_as_ticket": {"code": "SUCCESS", "message": "OK"},
    "query_certification": {},
    "register_certification_termination": {"code": "SUCCESS"},
    "send_signal": {"code": "SUCCESS", "message": "TRUE 000000"},
    "fetch_suspension_info": None,
    "save_suspension_period": {"code": "SUCCESS"},
    "submit_completion": {"code": "SUCCESS", "message": "completed"},
}


class FixtureBackend:
    """Scenario-driven LegacyBackend. Not thread-safe; one per test."""

    def __init__(self, responses: dict[str, Any] | None = None):
        unknown = set(responses or {}) - set(DEFAULT_RESPONSES)
        if unknown:
            raise ValueError(f"Unknown backend operations: {sorted(unknown)}")
        self.responses: dict[str, Any] = {**DEFAULT_RESPONSES, **(responses or {})}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._queued: dict[str, deque] = {}

    # ─── Scripting ──────────────────────────────────────────────

    def respond(self, operation: str, response: Any) -> None:
        self._check(operation)
        self.responses[operation] = response

    def queue(self, operation: str, *responses: Any) -> None:
        """One-shot answers consumed before the standing response."""
        self._check(operation)
        self._queued.setdefault(operation, deque()).extend(responses)

    def fail(self, operation: str, message: str = "transport error") -> None:
        self.respond(operation, {"raise": message})

    @staticmethod
    def _check(operation: str) -> None:
        if operation not in DEFAULT_RESPONSES:
            raise ValueError(f"Unknown backend operation '{operation}'")

    # ─── Inspection ─────────────────────────────────────────────

    def operations(self) -> list[str]:
        return [op for op, _ in self.calls]

    def calls_to(self, operation: str) -> list[dict[str, Any]]:
        return [payload for op, payload in self.calls if op == operation]

    def reset_calls(self) -> None:
        self.calls.clear()

    def _answer(self, operation: str, payload: dict[str, Any]) -> Any:
        self.calls.append((operation, copy.deepcopy(payload)))
        queued = self._queued.get(operation)
        value = queued.popleft() if queued else self.responses[operation]
        if isinstance(value, dict) and "raise" in value:
            raise RuntimeError(value["raise"])
        return copy.deepcopy(value)

    # ─── LegacyBackend ──────────────────────────────────────────

    def lookup_equipment_history(self, serial: str = "", mac: str = "") -> dict[str, Any] | None:
        return self._answer("lookup_equipment_history", {"serial": serial, "mac": mac})

    def fetch_billing_summary(self, cust_id: str, rcpt_id: str) -> dict[str, Any]:
        return self._answer("fetch_billing_summary", {"CUST_ID": cust_id, "RCPT_ID": rcpt_id})

    def fetch_billing_by_contract(self, bill_seq_no: str, prod_grp: str, so_id: str,
                                  calc_work_class: str, rcpt_id: str) -> list[dict[str, Any]]:
        return self._answer("fetch_billing_by_contract", {
            "BILL_SEQ_NO": bill_seq_no, "PROD_GRP": prod_grp, "SO_ID": so_id,
            "CLC_WRK_CL": calc_work_class, "RCPT_ID": rcpt_id,
        })

    def fetch_billing_by_charge(self, bill_seq_no: str, calc_work_no: str,
                                ctrt_id: str) -> list[dict[str, Any]]:
        return self._answer("fetch_billing_by_charge", {
            "BILL_SEQ_NO": bill_seq_no, "CLC_WRK_NO": calc_work_no, "CTRT_ID": ctrt_id,
        })

    def run_billing_simulation(self, params: dict[str, Any]) -> dict[str, Any]:
        return self._answer("run_billing_simulation", params)

    def register_removal_line(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._answer("register_removal_line", payload)

    def create_as_ticket(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._answer("create_as_ticket", payload)

    def query_certification(self, params: dict[str, Any]) -> dict[str, Any] | list[dict[str, Any]]:
        return self._answer("query_certification", params)

    def register_certification_termination(self, params: dict[str, Any]) -> dict[str, Any]:
        return self._answer("register_certification_termination", params)

    def send_signal(self, params: dict[str, Any]) -> dict[str, Any]:
        return self._answer("send_signal", params)

    def fetch_suspension_info(self, ctrt_id: str, rcpt_id: str) -> dict[str, Any] | None:
        return self._answer("fetch_suspension_info", {"CTRT_ID": ctrt_id, "RCPT_ID": rcpt_id})

    def save_suspension_period(self, params: dict[str, Any]) -> dict[str, Any]:
        return self._answer("save_suspension_period", params)

    def submit_completion(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._answer("submit_completion", payload)
