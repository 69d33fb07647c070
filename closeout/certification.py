"""
Field Closeout — Certification Handshake

Fiber products bound to a carrier certification (CL-08 query, CL-06
termination register) must be released when the service ends, unless
the certification is being handed over to a new product/office that is
itself a certification target.

    query (CL-08, read)   failure → "not certified", run continues
    register (CL-06)      failure → BlockingRemoteError, run stops

Certification of a contract also means the carrier closes the service,
so the signal step is skipped once the handshake reports
handled_closure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from closeout.errors import BlockingRemoteError, RecoverableRemoteError
from closeout.models import WorkOrder
from closeout.remote import LegacyBackend, first_row
from fieldengine.codes import SUCCESS_CODES, CodeBook, ReferenceData

logger = logging.getLogger("fieldops.certification")


class CertifyType(str, Enum):
    """How the certification binding relates to the service office."""
    UPDATE = "U"        # certified, office is a certification target
    CREATE = "C"        # not certified, office is a certification target
    DELETE = "D"        # certified, office is not a target
    NONE = ""


@dataclass
class CertResult:
    certified: bool
    contract_id: str = ""
    error: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_api(result: Any, ctrt_id: str) -> CertResult:
        row = first_row(result)
        error = str(row.get("ERROR") or "")
        contract_id = str(row.get("CONT_ID") or "")
        return CertResult(
            certified=not error and bool(contract_id) and contract_id == ctrt_id,
            contract_id=contract_id,
            error=error,
            raw=dict(row),
        )

    @staticmethod
    def not_certified(error: str = "") -> CertResult:
        return CertResult(certified=False, error=error)


@dataclass
class CertificationState:
    applicable: bool = False
    queried: CertResult | None = None
    register_required: bool = False
    registered: bool = False
    certify_type: CertifyType = CertifyType.NONE
    handled_closure: bool = False

    @property
    def certified(self) -> bool:
        return bool(self.queried and self.queried.certified)

    def to_dict(self) -> dict[str, Any]:
        return {
            "applicable": self.applicable,
            "certified": self.certified,
            "register_required": self.register_required,
            "registered": self.registered,
            "certify_type": self.certify_type.value,
            "handled_closure": self.handled_closure,
        }


def certification_applies(wo: WorkOrder, codes: CodeBook | None = None) -> bool:
    """Certify mode set on the order, or inferred from the FTTH linkage code."""
    codes = codes or CodeBook()
    return wo.certify_mode or wo.op_lnkd_cd in codes.ftth_linkage_codes


def _target_product_and_office(wo: WorkOrder) -> tuple[str, str]:
    # Where the service goes after a relocation; plain terminations have no target
    if wo.move_info is None:
        return "", ""
    return wo.move_info.new_prod_cd, wo.move_info.new_so_id or wo.so_id


class CertificationHandshake:
    """
    Query then (conditionally) register for one work order.

    The pipeline calls evaluate() and register() separately so it can
    record the register step in its applied-steps ledger; run() chains
    them for callers that do not need that.
    """

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

    def _params(self, wo: WorkOrder) -> dict[str, Any]:
        return {
            "CTRT_ID": wo.ctrt_id,
            "CUST_ID": wo.cust_id,
            "SO_ID": wo.so_id,
            "WRKR_ID": self.worker_id,
            "WRK_ID": wo.work_id,
            "REG_UID": self.worker_id,
        }

    def query(self, wo: WorkOrder) -> CertResult:
        """CL-08. Never raises; any failure reads as not certified."""
        try:
            result = self.backend.query_certification(self._params(wo))
        except Exception as e:
            err = RecoverableRemoteError(str(e), step="certification_query", ctrt_id=wo.ctrt_id)
            logger.warning("Certification query failed, assuming not certified: work=%s error=%s",
                           wo.work_id, err, exc_info=True)
            return CertResult.not_certified(str(err))

        cert = CertResult.from_api(result, wo.ctrt_id)
        if cert.error:
            logger.warning("Certification query returned error: work=%s error=%s",
                           wo.work_id, cert.error)
        logger.info("Certification query: work=%s certified=%s cont_id=%s",
                    wo.work_id, cert.certified, cert.contract_id)
        return cert

    def certify_type(self, wo: WorkOrder, certified: bool) -> CertifyType:
        _, office = _target_product_and_office(wo)
        office_listed = (office or wo.so_id) in self.reference.certify_so_ids
        if certified and office_listed:
            return CertifyType.UPDATE
        if not certified and office_listed:
            return CertifyType.CREATE
        if certified:
            return CertifyType.DELETE
        return CertifyType.NONE

    def should_register(self, wo: WorkOrder, cert: CertResult) -> bool:
        """
        Release the binding unless it is handed off: only when certified
        and the new product or the new office is not a certification target.
        """
        if not cert.certified:
            return False
        product, office = _target_product_and_office(wo)
        return (product not in self.reference.certify_products
                or office not in self.reference.certify_so_ids)

    def evaluate(self, wo: WorkOrder) -> CertificationState:
        if not certification_applies(wo, self.codes):
            return CertificationState(applicable=False)

        cert = self.query(wo)
        return CertificationState(
            applicable=True,
            queried=cert,
            register_required=self.should_register(wo, cert),
            certify_type=self.certify_type(wo, cert.certified),
            handled_closure=cert.certified or wo.certify_tg == "Y",
        )

    def register_params(self, wo: WorkOrder) -> dict[str, Any]:
        return self._params(wo)

    def register(self, wo: WorkOrder) -> dict[str, Any]:
        """CL-06. Raises BlockingRemoteError on an ERROR answer or a transport failure."""
        params = self.register_params(wo)
        try:
            result = self.backend.register_certification_termination(params)
        except Exception as e:
            logger.error("Certification register raised: work=%s error=%s",
                         wo.work_id, e, exc_info=True)
            raise BlockingRemoteError(
                f"certification register failed: {e}", step="certification_register",
            ) from e

        row = first_row(result)
        code = row.get("code")
        if row.get("ERROR") or (code and code not in SUCCESS_CODES):
            message = str(row.get("ERROR") or row.get("message") or code)
            logger.error("Certification register rejected: work=%s error=%s", wo.work_id, message)
            raise BlockingRemoteError(
                f"certification register failed: {message}", step="certification_register",
            )
        logger.info("Certification registered: work=%s ctrt=%s", wo.work_id, wo.ctrt_id)
        return row

    def run(self, wo: WorkOrder, state: CertificationState | None = None) -> CertificationState:
        """Query, then register at most once for the given state."""
        if state is None or state.queried is None:
            state = self.evaluate(wo)
        if state.applicable and state.register_required and not state.registered:
            self.register(wo)
            state.registered = True
        return state
