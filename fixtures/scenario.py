"""
Field Closeout — Scenario Loader

A scenario YAML describes one work order end to end: the order itself,
the technician's form, what happened to the equipment, how the hotbill
and removal-line flows were driven, the backend's answers, and what the
run is expected to produce. See fixtures/scenarios/*.yaml.

    scenario = Scenario.load("fixtures/scenarios/wo_1001_hotbill_normal.yaml")
    backend = scenario.backend()
    inp = scenario.prepare(backend, EquipmentDispositionStore())
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

from closeout.models import CompletionForm, WorkOrder
from closeout.pipeline import CompletionInput
from closeout.suspension import fetch_suspension_info, stage_suspension_edit
from fieldengine.codes import CodeBook, ReferenceData
from fieldengine.equipment import EquipmentDispositionStore, EquipmentItem
from fieldengine.hotbill import HotbillEngine, today_yyyymmdd
from fieldengine.removal_line import RemovalLineTree
from fixtures.backend import FixtureBackend

SCENARIO_DIR = Path(__file__).parent / "scenarios"

_TICKET_OVERRIDES = ("hope_date", "hope_hour", "hope_minute", "memo")


def _str_dict(raw: dict[str, Any] | None) -> dict[str, str]:
    return {str(k): "" if v is None else str(v) for k, v in (raw or {}).items()}


@dataclass
class Scenario:
    name: str
    data: dict[str, Any] = field(default_factory=dict)
    path: Path | None = None

    @staticmethod
    def load(path: str | Path) -> Scenario:
        path = Path(path)
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return Scenario(name=str(data.get("name") or path.stem), data=data, path=path)

    @staticmethod
    def named(stem: str) -> Scenario:
        return Scenario.load(SCENARIO_DIR / f"{stem}.yaml")

    # ─── Plain sections ─────────────────────────────────────────

    @property
    def today(self) -> str:
        return str(self.data.get("today") or today_yyyymmdd())

    @property
    def now(self) -> datetime:
        """Scenario clock: 08:00 on the scenario's today."""
        return datetime.strptime(self.today, "%Y%m%d").replace(hour=8)

    @property
    def reference(self) -> ReferenceData:
        return ReferenceData.from_dict(self.data.get("reference") or {})

    @property
    def operator_confirms(self) -> bool:
        return bool(self.data.get("operator_confirms", False))

    @property
    def expect(self) -> dict[str, Any]:
        return self.data.get("expect") or {}

    def backend(self) -> FixtureBackend:
        """Standing answers from ``backend``, one-shot answers from ``queued``."""
        backend = FixtureBackend(self.data.get("backend") or {})
        for operation, answers in (self.data.get("queued") or {}).items():
            backend.queue(operation, *answers)
        return backend

    def work_order(self) -> WorkOrder:
        return WorkOrder.from_api(self.data["work_order"])

    def form(self) -> CompletionForm:
        raw = dict(self.data.get("form") or {})
        install_info = _str_dict(raw.pop("install_info", None))
        reuse = bool(raw.pop("reuse_yn", False))
        return CompletionForm(install_info=install_info, reuse_yn=reuse, **_str_dict(raw))

    # ─── Host-side preparation ──────────────────────────────────

    def seed_equipment(self, store: EquipmentDispositionStore, work_id: str) -> None:
        eq = self.data.get("equipment") or {}
        store.set_api_data(
            work_id,
            contract=eq.get("contract") or [],
            technician=eq.get("technician") or [],
            customer=eq.get("customer") or [],
            removal_candidates=eq.get("removal_candidates") or [],
        )
        for row in eq.get("removed") or []:
            store.mark_for_removal(work_id, EquipmentItem.from_api(row))
        for equipment_id in eq.get("confirmed") or []:
            store.confirm_removed(work_id, str(equipment_id))
        for slot in eq.get("installed") or []:
            store.add_installed(work_id, EquipmentItem.from_api(slot["item"]), str(slot["slot"]))
        for equipment_id, flags in (eq.get("loss") or {}).items():
            for flag in flags:
                store.set_loss_flag(work_id, str(equipment_id), flag, True)
        if eq.get("reuse_all"):
            store.set_reuse_all(work_id, True)

    def drive_hotbill(self, wo: WorkOrder, backend: FixtureBackend,
                      codes: CodeBook | None = None) -> HotbillEngine | None:
        section = self.data.get("hotbill")
        if section is None:
            return None
        engine = HotbillEngine(wo.hotbill_context(), backend, codes, today=lambda: self.today)
        actions = {
            "load": engine.load,
            "confirm": engine.confirm,
            "recalculate": engine.recalculate,
            "skip": engine.skip,
            "intend": lambda: engine.set_intend_recalculate(True),
        }
        for action in section.get("actions") or ["load"]:
            actions[action]()
        return engine

    def drive_removal_line(self, wo: WorkOrder, worker_id: str = "") -> RemovalLineTree | None:
        section = self.data.get("removal_line")
        if section is None:
            return None
        tree = RemovalLineTree(wo.work_id)
        tree.select_wiring_type(str(section["wiring_type"]))
        if section.get("outcome"):
            tree.select_outcome(str(section["outcome"]))
        if section.get("reason"):
            tree.select_reason(str(section["reason"]))

        if section.get("action", "complete") == "complete":
            tree.complete()
            return tree

        tree.assign_as()
        ticket = tree.new_as_ticket(
            wo.cust_id,
            today=datetime.strptime(self.today, "%Y%m%d").date(),
            address=wo.address,
            crr_id=wo.crr_id or "01",
            worker_id=worker_id,
        )
        for key, value in (section.get("as_ticket") or {}).items():
            if key in _TICKET_OVERRIDES:
                setattr(ticket, key, str(value))
        tree.save_as_ticket(ticket, now=self.now)
        return tree

    def prepare(
        self,
        backend: FixtureBackend,
        store: EquipmentDispositionStore,
        codes: CodeBook | None = None,
        worker_id: str = "",
    ) -> CompletionInput:
        """Replay the host-side interaction and return the pipeline input."""
        codes = codes or CodeBook()
        wo = self.work_order()
        self.seed_equipment(store, wo.work_id)

        edit = None
        suspension = self.data.get("suspension")
        if suspension:
            info = fetch_suspension_info(backend, wo.ctrt_id, wo.rcpt_id)
            if info is None:
                raise ValueError(f"scenario {self.name}: no suspension info for {wo.ctrt_id}")
            edit = stage_suspension_edit(info, str(suspension["new_end"]), self.today, codes)

        return CompletionInput(
            work_order=wo,
            form=self.form(),
            hotbill=self.drive_hotbill(wo, backend, codes),
            removal_line=self.drive_removal_line(wo, worker_id),
            suspension_edit=edit,
        )


def list_scenarios() -> list[Path]:
    return sorted(SCENARIO_DIR.glob("*.yaml"))
