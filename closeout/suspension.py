"""
Field Closeout — Staged Suspension-Period Edit

A suspension work order may have its end date moved while the
technician is on site. The edit is validated and staged when entered;
the completion pipeline commits it (step 2) once the validation gate
has passed, so a work order that never completes never changes the
suspension period.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from closeout.errors import BlockingRemoteError, ValidationError
from closeout.remote import LegacyBackend, first_row
from fieldengine.codes import CodeBook
from fieldengine.hotbill import normalize_date

logger = logging.getLogger("fieldops.suspension")


def _parse(yyyymmdd: str) -> date:
    return datetime.strptime(normalize_date(yyyymmdd), "%Y%m%d").date()


@dataclass
class SuspensionInfo:
    ctrt_id: str
    rcpt_id: str
    start: str
    end: str
    valid_days: int = 0
    wrk_dtl_tcd: str = ""
    reason_cd: str = ""

    @staticmethod
    def from_api(row: dict[str, Any], ctrt_id: str, rcpt_id: str) -> SuspensionInfo:
        try:
            valid_days = int(row.get("VALID_SUS_DAYS") or 0)
        except (TypeError, ValueError):
            valid_days = 0
        return SuspensionInfo(
            ctrt_id=ctrt_id,
            rcpt_id=rcpt_id,
            start=normalize_date(str(row.get("SUS_HOPE_DD") or "")),
            end=normalize_date(str(row.get("MMT_SUS_HOPE_DD") or "")),
            valid_days=valid_days,
            wrk_dtl_tcd=str(row.get("WRK_DTL_TCD") or ""),
            reason_cd=str(row.get("MMT_SUS_CD") or ""),
        )

    def can_edit(self, today: str, codes: CodeBook | None = None) -> bool:
        """Only suspension work whose current end date has arrived."""
        codes = codes or CodeBook()
        return (self.wrk_dtl_tcd == codes.suspension_work_detail_type
                and bool(self.end) and self.end <= normalize_date(today))

    @property
    def max_end(self) -> str:
        if self.valid_days <= 0 or not self.start:
            return ""
        limit = _parse(self.start) + timedelta(days=self.valid_days - 1)
        return limit.strftime("%Y%m%d")


def fetch_suspension_info(backend: LegacyBackend, ctrt_id: str, rcpt_id: str) -> SuspensionInfo | None:
    """Read the current period; a failed read just means nothing to edit."""
    try:
        row = first_row(backend.fetch_suspension_info(ctrt_id, rcpt_id))
    except Exception as e:
        logger.warning("Suspension info lookup failed: ctrt=%s error=%s", ctrt_id, e, exc_info=True)
        return None
    if not row:
        return None
    return SuspensionInfo.from_api(row, ctrt_id, rcpt_id)


@dataclass
class StagedSuspensionEdit:
    info: SuspensionInfo
    new_end: str

    def __post_init__(self):
        self.new_end = normalize_date(self.new_end)

    @property
    def days(self) -> int:
        return (_parse(self.new_end) - _parse(self.info.start)).days

    def validate(self, today: str, codes: CodeBook | None = None) -> list[str]:
        """Returns list of errors. Empty = valid."""
        errors = []
        if not self.info.can_edit(today, codes):
            errors.append("suspension period is not editable for this work")
        if not self.new_end:
            errors.append("new suspension end date is required")
            return errors
        if self.new_end < self.info.start:
            errors.append("suspension end date must not be before the start date")
        max_end = self.info.max_end
        if max_end and self.new_end > max_end:
            errors.append(f"suspension end date must be on or before {max_end}")
        return errors

    def to_params(self, worker_id: str = "") -> dict[str, Any]:
        return {
            "CTRT_ID": self.info.ctrt_id,
            "RCPT_ID": self.info.rcpt_id,
            "SUS_HOPE_DD": self.info.start,
            "MMT_SUS_HOPE_DD": self.new_end,
            "SUS_DD_NUM": str(self.days),
            "REG_UID": worker_id,
        }


def stage_suspension_edit(
    info: SuspensionInfo,
    new_end: str,
    today: str,
    codes: CodeBook | None = None,
) -> StagedSuspensionEdit:
    edit = StagedSuspensionEdit(info=info, new_end=new_end)
    errors = edit.validate(today, codes)
    if errors:
        raise ValidationError(errors, step="suspension")
    logger.info("Suspension edit staged: ctrt=%s %s → %s (%d days)",
                info.ctrt_id, info.end, edit.new_end, edit.days)
    return edit


def commit_suspension_edit(
    backend: LegacyBackend,
    edit: StagedSuspensionEdit,
    worker_id: str = "",
) -> dict[str, Any]:
    """Save the staged period; anything but SUCCESS blocks the pipeline."""
    params = edit.to_params(worker_id)
    try:
        result = backend.save_suspension_period(params) or {}
    except Exception as e:
        logger.error("Suspension save raised: ctrt=%s error=%s", edit.info.ctrt_id, e, exc_info=True)
        raise BlockingRemoteError(f"suspension save failed: {e}", step="suspension") from e
    if result.get("code") != "SUCCESS":
        message = result.get("message") or "suspension save failed"
        logger.error("Suspension save rejected: ctrt=%s message=%s", edit.info.ctrt_id, message)
        raise BlockingRemoteError(message, step="suspension")
    return result
