"""
Field Closeout — Equipment Disposition Store

Per-work-order aggregate of the equipment a technician is handling:
server-sourced lists (contract equipment, technician stock, customer
equipment, removal candidates) plus local changes (installed items,
items marked for removal, per-item loss/damage flags, reuse flag).

Every work order id owns an isolated aggregate guarded by its own lock.
The registry lock is only held while a key is created or dropped, so
operations on different work orders never wait on each other.

Field updates are last-write-wins, applied through the small merge
functions below so each field's rule is stated in one place.

Usage:
    store = EquipmentDispositionStore()
    store.set_api_data("WO-1", contract=[...], customer=[...])
    store.mark_for_removal("WO-1", item)
    store.toggle_loss_flag("WO-1", item.equipment_id, "lost")
    snap = store.snapshot("WO-1")
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator

logger = logging.getLogger("fieldops.equipment")


class Disposition(str, Enum):
    CONTRACT_ONLY = "contract_only"
    INSTALLED = "installed"
    MARKED_FOR_REMOVAL = "marked_for_removal"
    REMOVED_CONFIRMED = "removed_confirmed"


class SignalStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAIL = "fail"


# Local flag name → legacy payload field
LOSS_FLAGS: dict[str, str] = {
    "lost": "EQT_LOSS_YN",
    "part_loss_or_broken": "PART_LOSS_BRK_YN",
    "broken": "EQT_BRK_YN",
    "cable_lost": "EQT_CABL_LOSS_YN",
    "cradle_lost": "EQT_CRDL_LOSS_YN",
}


def yn_flag(value: Any) -> bool:
    """Legacy truthy flag: '1', 'Y', True."""
    return value is True or str(value).upper() in ("1", "Y")


@dataclass
class EquipmentItem:
    """One piece of customer-premises equipment."""
    equipment_id: str
    serial: str = ""
    mac: str = ""
    item_mid_cd: str = ""
    eqt_cl_cd: str = ""
    contract_id: str = ""
    prod_cd: str = ""
    prod_cmps_cl: str = ""
    prod_cmps_id: str = ""
    svc_cmps_id: str = ""
    disposition: Disposition = Disposition.CONTRACT_ONLY
    flags: dict[str, bool] = field(default_factory=lambda: {k: False for k in LOSS_FLAGS})
    reuse: bool = False
    raw: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_api(row: dict[str, Any], disposition: Disposition = Disposition.CONTRACT_ONLY) -> EquipmentItem:
        """Build from a legacy API row; accepts both legacy and camelCase keys."""
        def pick(*keys: str) -> str:
            for k in keys:
                v = row.get(k)
                if v not in (None, ""):
                    return str(v)
            return ""

        return EquipmentItem(
            equipment_id=pick("EQT_NO", "id"),
            serial=pick("EQT_SERNO", "serialNumber"),
            mac=pick("MAC_ADDRESS", "macAddress"),
            item_mid_cd=pick("ITEM_MID_CD", "itemMidCd"),
            eqt_cl_cd=pick("EQT_CL_CD", "eqtClCd"),
            contract_id=pick("CTRT_ID"),
            prod_cd=pick("PROD_CD"),
            prod_cmps_cl=pick("PROD_CMPS_CL"),
            prod_cmps_id=pick("PROD_CMPS_ID", "EQT_PROD_CMPS_ID"),
            svc_cmps_id=pick("SVC_CMPS_ID"),
            disposition=disposition,
            flags={name: yn_flag(row.get(api)) for name, api in LOSS_FLAGS.items()},
            raw=dict(row),
        )


@dataclass
class WorkEquipmentState:
    """Isolated aggregate for one work order."""
    work_id: str
    contract_equipment: list[EquipmentItem] = field(default_factory=list)
    technician_equipment: list[EquipmentItem] = field(default_factory=list)
    customer_equipment: list[EquipmentItem] = field(default_factory=list)
    removal_candidates: list[EquipmentItem] = field(default_factory=list)
    # contract equipment id → item installed into that slot
    installed: dict[str, EquipmentItem] = field(default_factory=dict)
    # equipment id → item (insertion order kept)
    marked_for_removal: dict[str, EquipmentItem] = field(default_factory=dict)
    removed_confirmed: dict[str, EquipmentItem] = field(default_factory=dict)
    # equipment id → {flag: bool}; overrides the item's API flags once set
    loss_status: dict[str, dict[str, bool]] = field(default_factory=dict)
    reuse_all: bool = False
    signal_status: SignalStatus = SignalStatus.IDLE
    signal_result: dict[str, Any] | None = None
    data_loaded: bool = False
    last_updated: float = 0.0

    # ─── Derived views ──────────────────────────────────────────

    def disposition_of(self, equipment_id: str) -> Disposition:
        if equipment_id in self.removed_confirmed:
            return Disposition.REMOVED_CONFIRMED
        if equipment_id in self.marked_for_removal:
            return Disposition.MARKED_FOR_REMOVAL
        if any(i.equipment_id == equipment_id for i in self.installed.values()):
            return Disposition.INSTALLED
        return Disposition.CONTRACT_ONLY

    def effective_flags(self, item: EquipmentItem) -> dict[str, bool]:
        flags = dict(item.flags)
        flags.update(self.loss_status.get(item.equipment_id, {}))
        return flags

    def removed_items(self) -> list[EquipmentItem]:
        """Items leaving the premises: marked plus confirmed, with flags applied."""
        result = []
        for item in [*self.marked_for_removal.values(), *self.removed_confirmed.values()]:
            out = copy.deepcopy(item)
            out.flags = self.effective_flags(item)
            out.reuse = self.reuse_all
            result.append(out)
        return result

    def installed_items(self) -> list[EquipmentItem]:
        return list(self.installed.values())

    @property
    def has_implicated_equipment(self) -> bool:
        return bool(self.marked_for_removal or self.removed_confirmed
                    or self.installed or self.customer_equipment)

    @property
    def has_any_disposition(self) -> bool:
        return bool(self.marked_for_removal or self.removed_confirmed or self.installed)


# ═══════════════════════════════════════════════════════════════════
# Field merge functions (last write wins)
# ═══════════════════════════════════════════════════════════════════

def _merge_list(current: list[EquipmentItem], incoming: list | None) -> list[EquipmentItem]:
    """Bulk replace when a list is supplied; keep current otherwise."""
    if incoming is None:
        return current
    return [
        i if isinstance(i, EquipmentItem) else EquipmentItem.from_api(i)
        for i in incoming
    ]


def _merge_flag(current: dict[str, bool], name: str, value: bool) -> dict[str, bool]:
    if name not in LOSS_FLAGS:
        raise ValueError(f"Unknown loss flag '{name}'. Valid: {sorted(LOSS_FLAGS)}")
    merged = dict(current)
    merged[name] = value
    return merged


def _merge_keyed(current: dict[str, EquipmentItem], key: str, item: EquipmentItem | None) -> dict[str, EquipmentItem]:
    merged = dict(current)
    if item is None:
        merged.pop(key, None)
    else:
        merged[key] = item
    return merged


# ═══════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════

class EquipmentDispositionStore:
    """
    Concurrent map of work order id → WorkEquipmentState.

    Each key has its own RLock. Readers get deep copies, so a snapshot
    never shows a half-applied mutation.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._states: dict[str, WorkEquipmentState] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()
        self._clock = clock

    @contextmanager
    def _locked(self, work_id: str) -> Iterator[WorkEquipmentState]:
        with self._registry_lock:
            lock = self._locks.setdefault(work_id, threading.RLock())
        with lock:
            # clear() may have dropped the state while we waited on the lock
            with self._registry_lock:
                state = self._states.get(work_id)
                if state is None:
                    state = self._states[work_id] = WorkEquipmentState(work_id=work_id)
            yield state

    def _touch(self, state: WorkEquipmentState) -> None:
        state.last_updated = self._clock()

    # ─── Server data ────────────────────────────────────────────

    def set_api_data(
        self,
        work_id: str,
        contract: list | None = None,
        technician: list | None = None,
        customer: list | None = None,
        removal_candidates: list | None = None,
    ) -> None:
        """Replace only the lists that were supplied."""
        with self._locked(work_id) as state:
            state.contract_equipment = _merge_list(state.contract_equipment, contract)
            state.technician_equipment = _merge_list(state.technician_equipment, technician)
            state.customer_equipment = _merge_list(state.customer_equipment, customer)
            state.removal_candidates = _merge_list(state.removal_candidates, removal_candidates)
            state.data_loaded = True
            self._touch(state)
        logger.debug("API data set: work=%s", work_id)

    # ─── Installed ──────────────────────────────────────────────

    def add_installed(self, work_id: str, item: EquipmentItem, contract_equipment_id: str) -> None:
        """Install item into a contract slot, replacing whatever was there."""
        with self._locked(work_id) as state:
            item = copy.deepcopy(item)
            item.disposition = Disposition.INSTALLED
            state.marked_for_removal = _merge_keyed(state.marked_for_removal, item.equipment_id, None)
            state.removed_confirmed = _merge_keyed(state.removed_confirmed, item.equipment_id, None)
            state.installed = {
                k: v for k, v in state.installed.items()
                if v.equipment_id != item.equipment_id
            }
            state.installed = _merge_keyed(state.installed, contract_equipment_id, item)
            self._touch(state)

    def remove_installed(self, work_id: str, contract_equipment_id: str) -> None:
        with self._locked(work_id) as state:
            state.installed = _merge_keyed(state.installed, contract_equipment_id, None)
            self._touch(state)

    # ─── Removal ────────────────────────────────────────────────

    def mark_for_removal(self, work_id: str, item: EquipmentItem) -> None:
        """Mark an item for removal; marking the same id twice is a no-op."""
        with self._locked(work_id) as state:
            if item.equipment_id in state.marked_for_removal:
                return
            item = copy.deepcopy(item)
            item.disposition = Disposition.MARKED_FOR_REMOVAL
            state.installed = {
                k: v for k, v in state.installed.items()
                if v.equipment_id != item.equipment_id
            }
            state.removed_confirmed = _merge_keyed(state.removed_confirmed, item.equipment_id, None)
            state.marked_for_removal = _merge_keyed(state.marked_for_removal, item.equipment_id, item)
            self._touch(state)

    def unmark(self, work_id: str, equipment_id: str) -> None:
        with self._locked(work_id) as state:
            state.marked_for_removal = _merge_keyed(state.marked_for_removal, equipment_id, None)
            state.removed_confirmed = _merge_keyed(state.removed_confirmed, equipment_id, None)
            self._touch(state)

    def confirm_removed(self, work_id: str, equipment_id: str) -> bool:
        """Promote a marked item to removed-confirmed. Returns False if not marked."""
        with self._locked(work_id) as state:
            item = state.marked_for_removal.get(equipment_id)
            if item is None:
                return False
            item = copy.deepcopy(item)
            item.disposition = Disposition.REMOVED_CONFIRMED
            state.marked_for_removal = _merge_keyed(state.marked_for_removal, equipment_id, None)
            state.removed_confirmed = _merge_keyed(state.removed_confirmed, equipment_id, item)
            self._touch(state)
            return True

    # ─── Flags ──────────────────────────────────────────────────

    def toggle_loss_flag(self, work_id: str, equipment_id: str, flag: str) -> bool:
        """Flip one loss/damage flag. Returns the new value."""
        with self._locked(work_id) as state:
            current = state.loss_status.get(equipment_id)
            if current is None:
                current = self._initial_flags(state, equipment_id)
            value = not current.get(flag, False)
            state.loss_status = {
                **state.loss_status,
                equipment_id: _merge_flag(current, flag, value),
            }
            self._touch(state)
            return value

    def set_loss_flag(self, work_id: str, equipment_id: str, flag: str, value: bool) -> None:
        with self._locked(work_id) as state:
            current = state.loss_status.get(equipment_id) or self._initial_flags(state, equipment_id)
            state.loss_status = {
                **state.loss_status,
                equipment_id: _merge_flag(current, flag, bool(value)),
            }
            self._touch(state)

    @staticmethod
    def _initial_flags(state: WorkEquipmentState, equipment_id: str) -> dict[str, bool]:
        for pool in (state.marked_for_removal.values(), state.removed_confirmed.values(),
                     state.removal_candidates, state.customer_equipment):
            for item in pool:
                if item.equipment_id == equipment_id:
                    return dict(item.flags)
        return {k: False for k in LOSS_FLAGS}

    def set_reuse_all(self, work_id: str, reuse: bool) -> None:
        with self._locked(work_id) as state:
            state.reuse_all = bool(reuse)
            self._touch(state)

    # ─── Signal tracking ────────────────────────────────────────

    def set_signal_status(
        self,
        work_id: str,
        status: SignalStatus,
        result: dict[str, Any] | None = None,
    ) -> None:
        with self._locked(work_id) as state:
            state.signal_status = SignalStatus(status)
            if result is not None:
                state.signal_result = dict(result)
            self._touch(state)

    # ─── Read / lifecycle ───────────────────────────────────────

    def snapshot(self, work_id: str) -> WorkEquipmentState:
        """Deep copy of the aggregate; never shared with the store."""
        with self._locked(work_id) as state:
            snap = copy.deepcopy(state)
        for item in [*snap.contract_equipment, *snap.customer_equipment,
                     *snap.removal_candidates, *snap.technician_equipment]:
            item.disposition = snap.disposition_of(item.equipment_id)
        return snap

    def clear(self, work_id: str) -> None:
        """Drop the aggregate once no mutation on it is in flight. The lock stays."""
        with self._registry_lock:
            lock = self._locks.get(work_id)
        if lock is None:
            return
        with lock:
            with self._registry_lock:
                self._states.pop(work_id, None)
        logger.debug("Equipment state cleared: work=%s", work_id)

    def keys(self) -> list[str]:
        with self._registry_lock:
            return list(self._states)
