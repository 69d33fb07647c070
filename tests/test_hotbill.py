"""
Field Closeout — Hotbill Engine Tests

Branch selection on load, the confirm/recalculate/skip sub-flow, charge
line derivation, and the illegal-transition guard.
"""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from fieldengine.hotbill import (
    ChargeLine, HotbillContext, HotbillEngine, HotbillState,
    charge_total, normalize_date, select_charge_lines,
)
from fieldengine.transitions import ActionUnavailable, IllegalStateTransition
from fixtures.backend import FixtureBackend
from fixtures.scenario import Scenario

TODAY = "20240115"

HISTORY = {
    "fetch_billing_summary": {
        "details": [{"BILL_SEQ_NO": "B1", "PROD_GRP": "I", "SO_ID": "SO01", "CTRT_ID": "CT1"}],
    },
    "fetch_billing_by_contract": [{"CTRT_ID": "CT1", "CLC_WRK_NO": "W1"}],
    "fetch_billing_by_charge": [{"CHRG_ITEM_NM": "Early termination", "BILL_AMT": "20000"}],
}


def _ctx(**overrides):
    values = dict(
        work_id="WO-1", cust_id="C1", ctrt_id="CT1", so_id="SO01", rcpt_id="R1",
        wrk_cd="02", wrk_stat_cd="2", target_date="20240115",
    )
    values.update(overrides)
    return HotbillContext(**values)


def _engine(backend, **ctx_overrides):
    return HotbillEngine(_ctx(**ctx_overrides), backend, today=lambda: TODAY)


class TestChargeLines(unittest.TestCase):

    def test_positive_or_required_kept_in_sort_order(self):
        rows = [
            {"CHRG_ITEM_NM": "b", "BILL_AMT": "300", "SORT_SEQ": "2"},
            {"CHRG_ITEM_NM": "zero", "BILL_AMT": "0", "SORT_SEQ": "0"},
            {"CHRG_ITEM_NM": "req", "BILL_AMT": "0", "REQ_YN": "Y", "SORT_SEQ": "1"},
            {"CHRG_ITEM_NM": "neg", "BILL_AMT": "-10", "SORT_SEQ": "3"},
        ]
        lines = select_charge_lines(rows)
        self.assertEqual([line.name for line in lines], ["req", "b"])
        self.assertEqual(charge_total(lines), 300)

    def test_bad_amounts_are_zero(self):
        self.assertEqual(ChargeLine.from_api({"BILL_AMT": "abc"}).amount, 0)
        self.assertEqual(ChargeLine.from_api({"BILL_AMT": "1500.0"}).amount, 1500)

    def test_normalize_date(self):
        self.assertEqual(normalize_date("2024-01-15"), "20240115")
        self.assertEqual(normalize_date("20240115120000"), "20240115")
        self.assertEqual(normalize_date(None), "")


class TestLoad(unittest.TestCase):

    def test_history_and_due_is_normal(self):
        engine = _engine(FixtureBackend(HISTORY))
        self.assertEqual(engine.load(), HotbillState.NORMAL_PENDING)
        self.assertEqual(engine.charge_total, 20000)
        self.assertFalse(engine.is_ready)

    def test_no_history_needs_recalc(self):
        engine = _engine(FixtureBackend())
        self.assertEqual(engine.load(), HotbillState.RECALC_NEEDED)

    def test_future_target_needs_recalc_even_with_history(self):
        engine = _engine(FixtureBackend(HISTORY), target_date="2024-01-20")
        self.assertEqual(engine.load(), HotbillState.RECALC_NEEDED)
        self.assertTrue(engine.is_future_date)

    def test_past_target_with_history_is_normal(self):
        engine = _engine(FixtureBackend(HISTORY), target_date="20240110")
        self.assertEqual(engine.load(), HotbillState.NORMAL_PENDING)

    def test_summary_failure_means_no_history(self):
        backend = FixtureBackend()
        backend.fail("fetch_billing_summary", "timeout")
        engine = _engine(backend)
        self.assertEqual(engine.load(), HotbillState.RECALC_NEEDED)
        self.assertEqual(engine.last_error, "timeout")

    def test_charge_lookup_failure_keeps_history(self):
        backend = FixtureBackend(HISTORY)
        backend.fail("fetch_billing_by_charge")
        engine = _engine(backend)
        self.assertEqual(engine.load(), HotbillState.NORMAL_PENDING)
        self.assertEqual(engine.charge_lines, [])

    def test_not_applicable(self):
        for overrides in ({"wrk_cd": "08"}, {"wrk_stat_cd": "7"}):
            backend = FixtureBackend(HISTORY)
            engine = _engine(backend, **overrides)
            self.assertEqual(engine.load(), HotbillState.NOT_APPLICABLE)
            self.assertTrue(engine.is_ready)
            self.assertEqual(backend.calls, [])


class TestRecalculation(unittest.TestCase):

    def test_success_then_confirm(self):
        backend = FixtureBackend(HISTORY)
        backend.queue("fetch_billing_summary", {"details": []})
        backend.respond("run_billing_simulation", {"code": "SUCCESS", "RCPT_ID": "R1-S"})
        engine = _engine(backend)
        engine.load()
        self.assertEqual(engine.recalculate(), HotbillState.RECALC_DONE_PENDING)
        self.assertEqual(engine.rcpt_id, "R1-S")
        self.assertEqual(backend.calls_to("fetch_billing_summary")[-1]["RCPT_ID"], "R1-S")
        sim = backend.calls_to("run_billing_simulation")[0]
        self.assertEqual(sim["HOPE_DT"], TODAY)
        self.assertEqual(sim["CLC_WRK_CL"], "2")
        self.assertEqual(engine.confirm(), HotbillState.RECALC_CONFIRMED)
        self.assertTrue(engine.is_ready)
        self.assertTrue(engine.confirmed)

    def test_future_date_requires_intent(self):
        engine = _engine(FixtureBackend(), target_date="20240201")
        engine.load()
        self.assertFalse(engine.can_recalculate)
        with self.assertRaises(ActionUnavailable):
            engine.recalculate()
        engine.set_intend_recalculate(True)
        self.assertEqual(engine.recalculate(), HotbillState.RECALC_DONE_PENDING)

    def test_intent_outside_recalc_branch_rejected(self):
        engine = _engine(FixtureBackend(HISTORY))
        engine.load()
        with self.assertRaises(ActionUnavailable):
            engine.set_intend_recalculate(True)

    def test_failure_then_retry(self):
        backend = FixtureBackend()
        backend.queue("run_billing_simulation", {"code": "FAIL", "message": "billing closed"})
        engine = _engine(backend)
        engine.load()
        self.assertEqual(engine.recalculate(), HotbillState.ERROR)
        self.assertEqual(engine.last_error, "billing closed")
        self.assertFalse(engine.is_ready)
        self.assertEqual(engine.recalculate(), HotbillState.RECALC_DONE_PENDING)
        self.assertEqual(engine.last_error, "")

    def test_raised_failure_then_skip(self):
        backend = FixtureBackend()
        backend.fail("run_billing_simulation", "connection reset")
        engine = _engine(backend)
        engine.load()
        self.assertEqual(engine.recalculate(), HotbillState.ERROR)
        self.assertEqual(engine.skip(), HotbillState.RECALC_SKIPPED)
        self.assertTrue(engine.is_ready)
        self.assertFalse(engine.confirmed)

    def test_missing_customer_blocks_recalc(self):
        engine = _engine(FixtureBackend(), cust_id="")
        engine.load()
        with self.assertRaises(ActionUnavailable):
            engine.recalculate()
        self.assertEqual(engine.state, HotbillState.RECALC_NEEDED)


class TestIllegalTransitions(unittest.TestCase):

    def test_confirm_before_load(self):
        engine = _engine(FixtureBackend(HISTORY))
        with self.assertRaises(IllegalStateTransition):
            engine.confirm()

    def test_skip_from_normal_pending(self):
        engine = _engine(FixtureBackend(HISTORY))
        engine.load()
        with self.assertRaises(IllegalStateTransition) as ctx:
            engine.skip()
        self.assertEqual(ctx.exception.machine, "hotbill")
        self.assertEqual(engine.state, HotbillState.NORMAL_PENDING)

    def test_history_recorded(self):
        engine = _engine(FixtureBackend(HISTORY))
        engine.load()
        engine.confirm()
        self.assertEqual(
            [(r.from_state, r.to_state) for r in engine.history],
            [(HotbillState.LOADING, HotbillState.NORMAL_PENDING),
             (HotbillState.NORMAL_PENDING, HotbillState.NORMAL_CONFIRMED)],
        )
        self.assertEqual(engine.history[0].to_dict()["action"], "load")


class TestScenarios(unittest.TestCase):

    def _drive(self, stem):
        scenario = Scenario.named(stem)
        backend = scenario.backend()
        return scenario, scenario.drive_hotbill(scenario.work_order(), backend)

    def test_wo_1001(self):
        scenario, engine = self._drive("wo_1001_hotbill_normal")
        snap = engine.snapshot()
        self.assertEqual(snap.state.value, scenario.expect["hotbill_state"])
        self.assertEqual(snap.charge_total, scenario.expect["charge_total"])
        self.assertTrue(snap.ready)

    def test_wo_1002(self):
        scenario, engine = self._drive("wo_1002_hotbill_recalc")
        snap = engine.snapshot()
        self.assertEqual(snap.state.value, scenario.expect["hotbill_state"])
        self.assertEqual(snap.charge_total, scenario.expect["charge_total"])
        self.assertEqual([line.name for line in snap.charge_lines],
                         ["Equipment loss", "Early termination", "Install fee"])


if __name__ == "__main__":
    unittest.main()
