"""
Field Closeout — Signal Transmission Tests

Skip rules, LGHV message selection, success detection, and the
blocking/overridable failure classification.
"""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from closeout.models import WorkOrder
from closeout.signal import (
    SignalOutcome, SignalPlan, SignalTransmitter, classify_signal_failure, is_signal_success,
)
from fieldengine.codes import ReferenceData
from fieldengine.equipment import EquipmentDispositionStore, EquipmentItem
from fixtures.backend import FixtureBackend

REFERENCE = ReferenceData(lghv_products={"LG1", "LG2"})

STB = {"EQT_NO": "STB-1", "ITEM_MID_CD": "04", "PROD_CMPS_CL": "21"}
CARD = {"EQT_NO": "CARD-1", "ITEM_MID_CD": "05", "PROD_CMPS_CL": "23", "EQT_PROD_CMPS_ID": "PC23"}


def _wo(**overrides):
    row = {"WRK_ID": "WO-5", "CUST_ID": "C5", "CTRT_ID": "CT5", "SO_ID": "SO01",
           "PROD_CD": "PI100", "PROD_GRP": "I", "CTRT_STAT": "10"}
    row.update(overrides)
    return WorkOrder.from_api(row)


def _equipment(*removed, customer=None):
    store = EquipmentDispositionStore()
    if customer:
        store.set_api_data("WO-5", customer=customer)
    for row in removed:
        store.mark_for_removal("WO-5", EquipmentItem.from_api(row))
    return store.snapshot("WO-5")


def _transmitter(backend=None):
    return SignalTransmitter(backend or FixtureBackend(), REFERENCE, worker_id="W01")


class TestSuccess(unittest.TestCase):

    def test_success_code_or_true_message(self):
        self.assertTrue(is_signal_success({"code": "SUCCESS"}))
        self.assertTrue(is_signal_success({"code": "FAIL", "message": "TRUE 000000"}))
        self.assertFalse(is_signal_success({"code": "FAIL", "message": "TRUE 000123"}))
        self.assertFalse(is_signal_success(None))


class TestSkipRules(unittest.TestCase):

    def test_already_sent(self):
        plan = _transmitter().plan(_wo(), _equipment(STB), already_sent=True)
        self.assertFalse(plan.send)

    def test_certification_handled(self):
        plan = _transmitter().plan(_wo(), _equipment(STB), handled_closure=True)
        self.assertFalse(plan.send)
        self.assertIn("certification", plan.skip_reason)

    def test_contract_closed(self):
        plan = _transmitter().plan(_wo(CTRT_STAT="20"), _equipment(STB))
        self.assertFalse(plan.send)

    def test_nothing_implicated(self):
        self.assertFalse(_transmitter().plan(_wo(), _equipment()).send)

    def test_isp_product_alone_is_enough(self):
        self.assertTrue(_transmitter().plan(_wo(ISP_PROD_CD="ISP1"), _equipment()).send)

    def test_customer_equipment_is_enough(self):
        plan = _transmitter().plan(_wo(), _equipment(customer=[{"EQT_NO": "K1"}]))
        self.assertTrue(plan.send)

    def test_skipped_plan_transmits_nothing(self):
        backend = FixtureBackend()
        attempt = _transmitter(backend).transmit(_wo(), SignalPlan(send=False, skip_reason="x"))
        self.assertEqual(attempt.result, SignalOutcome.SKIPPED)
        self.assertFalse(attempt.sent)
        self.assertEqual(backend.calls, [])


class TestMessageSelection(unittest.TestCase):

    def test_default_message_and_params(self):
        plan = _transmitter().plan(_wo(VOIP_PROD_CD="PV1"), _equipment(STB, CARD))
        self.assertEqual(plan.message_id, "SMR05")
        self.assertEqual(plan.params["EQT_PROD_CMPS_ID"], "PC23")
        self.assertEqual(plan.params["VOIP_JOIN_CTRT_ID"], "CT5")
        self.assertEqual(plan.params["ETC_1"], "")
        self.assertEqual(plan.params["REG_UID"], "W01")
        self.assertEqual(plan.params["WTIME"], "3")

    def test_lghv_removes_stb(self):
        plan = _transmitter().plan(_wo(PROD_CD="LG1"), _equipment(CARD, STB))
        self.assertTrue(plan.send)
        self.assertEqual(plan.message_id, "STB_DEL")
        self.assertEqual(plan.params["ETC_1"], "STB-1")

    def test_lghv_to_lghv_same_contract_marks_sent(self):
        wo = _wo(PROD_CD="LG1", move_info={
            "NEW_PROD_CD": "LG2", "OLD_PROD_CD": "LG1", "OLD_CTRT_ID": "CT5",
        })
        plan = _transmitter().plan(wo, _equipment(STB))
        self.assertFalse(plan.send)
        self.assertTrue(plan.mark_sent)
        attempt = _transmitter().transmit(wo, plan)
        self.assertTrue(attempt.sent)
        self.assertEqual(attempt.result, SignalOutcome.SKIPPED)

    def test_lghv_to_lghv_new_contract_sends_stb_del(self):
        wo = _wo(PROD_CD="LG1", move_info={
            "NEW_PROD_CD": "LG2", "OLD_PROD_CD": "LG1", "CTRT_ID": "CT6", "OLD_CTRT_ID": "CT5",
        })
        plan = _transmitter().plan(wo, _equipment(STB))
        self.assertTrue(plan.send)
        self.assertEqual(plan.message_id, "STB_DEL")
        self.assertEqual(plan.params["ETC_1"], "")


class TestClassification(unittest.TestCase):

    def test_voip_disallowed_error_blocks(self):
        outcome, _ = classify_signal_failure(_wo(PROD_GRP="V"), "PROC_VOIP_KCT-031 fail")
        self.assertEqual(outcome, SignalOutcome.BLOCKING)

    def test_voip_blocks_regardless_of_mso_flag(self):
        outcome, _ = classify_signal_failure(_wo(PROD_GRP="V", MSO_OUT_YN="N"), "other")
        self.assertEqual(outcome, SignalOutcome.BLOCKING)

    def test_voip_allowed_error_overridable(self):
        outcome, _ = classify_signal_failure(_wo(PROD_GRP="V"), "PROC_VOIP_KCT-029 dup")
        self.assertEqual(outcome, SignalOutcome.OVERRIDABLE)

    def test_mso_outage_blocks(self):
        outcome, reason = classify_signal_failure(_wo(MSO_OUT_YN="Y"), "anything")
        self.assertEqual(outcome, SignalOutcome.BLOCKING)
        self.assertIn("aggregator", reason)

    def test_default_overridable(self):
        outcome, _ = classify_signal_failure(_wo(), "head-end busy")
        self.assertEqual(outcome, SignalOutcome.OVERRIDABLE)


class TestTransmit(unittest.TestCase):

    def test_success(self):
        backend = FixtureBackend()
        transmitter = _transmitter(backend)
        wo = _wo()
        attempt = transmitter.transmit(wo, transmitter.plan(wo, _equipment(STB)))
        self.assertEqual(attempt.result, SignalOutcome.SUCCESS)
        self.assertTrue(attempt.sent)
        self.assertEqual(backend.calls_to("send_signal")[0]["MSG_ID"], "SMR05")

    def test_failure_answer_classified(self):
        backend = FixtureBackend({"send_signal": {"code": "FAIL", "message": "PROC_VOIP_KCT-031"}})
        transmitter = _transmitter(backend)
        wo = _wo(PROD_GRP="V")
        attempt = transmitter.transmit(wo, transmitter.plan(wo, _equipment(STB)))
        self.assertEqual(attempt.result, SignalOutcome.BLOCKING)
        self.assertEqual(attempt.error_message, "PROC_VOIP_KCT-031")
        self.assertEqual(attempt.to_dict()["result"], "blocking")

    def test_transport_failure_never_raises(self):
        backend = FixtureBackend()
        backend.fail("send_signal", "socket closed")
        transmitter = _transmitter(backend)
        wo = _wo()
        attempt = transmitter.transmit(wo, transmitter.plan(wo, _equipment(STB)))
        self.assertEqual(attempt.result, SignalOutcome.OVERRIDABLE)
        self.assertEqual(attempt.error_message, "socket closed")
        self.assertIsNone(attempt.response)


if __name__ == "__main__":
    unittest.main()
