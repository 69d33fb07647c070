"""
Field Closeout — Code Book

Legacy backend code values the orchestrator branches on. Defaults match
the production backend; every value can be overridden through the
``codes`` and ``reference`` sections of the config.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any

# Response codes that mean a legacy call took effect
SUCCESS_CODES = ("SUCCESS", "OK")


@dataclass(frozen=True)
class CodeBook:
    hotbill_work_code: str = "02"
    hotbill_excluded_status: str = "7"
    hotbill_calc_work_class: str = "4"
    hotbill_simulation_work_class: str = "2"

    completed_statuses: tuple[str, ...] = ("3", "4", "7")
    completed_status: str = "3"

    removal_install_type: str = "77"
    removal_line_kpi_groups: tuple[str, ...] = ("C", "D", "I")
    removal_line_excluded_voip_ctx: tuple[str, ...] = ("T", "R")

    broadcast_prod_cmps_cl: str = "23"
    broadcast_locked_kpi_groups: tuple[str, ...] = ("C", "D")
    equipment_exempt_prod_grps: tuple[str, ...] = ("V",)

    ftth_linkage_codes: tuple[str, ...] = ("F", "FG", "Z", "ZG")

    voip_prod_grp: str = "V"
    voip_allowed_errors: tuple[str, ...] = ("PROC_VOIP_KCT-029",)
    closed_contract_status: str = "20"
    signal_default_message: str = "SMR05"
    signal_stb_message: str = "STB_DEL"
    stb_item_mid_cd: str = "04"
    signal_wait_time: str = "3"

    suspension_work_detail_type: str = "0430"

    @staticmethod
    def from_config(config: Any) -> CodeBook:
        """Build from a ConfigLoader; unknown keys are ignored."""
        raw = config.get("codes", {}) or {}
        kwargs: dict[str, Any] = {}
        for f in fields(CodeBook):
            if f.name not in raw:
                continue
            value = raw[f.name]
            kwargs[f.name] = tuple(str(v) for v in value) if isinstance(value, list) else str(value)
        return CodeBook(**kwargs)


@dataclass
class ReferenceData:
    """
    Product and office reference lists loaded by the host at startup.

    lghv_products: product codes in the LGHV set-top-box product map
    certify_products: products that are certification targets
    certify_so_ids: service offices that are certification targets
    """
    lghv_products: set[str] = field(default_factory=set)
    certify_products: set[str] = field(default_factory=set)
    certify_so_ids: set[str] = field(default_factory=set)

    @staticmethod
    def from_config(config: Any) -> ReferenceData:
        return ReferenceData.from_dict(config.get("reference", {}) or {})

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> ReferenceData:
        return ReferenceData(
            lghv_products={str(v) for v in raw.get("lghv_products") or []},
            certify_products={str(v) for v in raw.get("certify_products") or []},
            certify_so_ids={str(v) for v in raw.get("certify_so_ids") or []},
        )
