"""
Field Closeout — Equipment Disposition Store Tests

Isolation between work orders, single disposition per item, loss-flag
toggles, and snapshot independence.
"""

import os
import sys
import threading
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from fieldengine.equipment import (
    Disposition, EquipmentDispositionStore, EquipmentItem, SignalStatus, yn_flag,
)


def _item(eqt_no, **extra):
    row = {"EQT_NO": eqt_no, "EQT_SERNO": f"SN-{eqt_no}", "ITEM_MID_CD": "03"}
    row.update(extra)
    return EquipmentItem.from_api(row)


class TestEquipmentItem(unittest.TestCase):

    def test_from_legacy_row(self):
        item = EquipmentItem.from_api({
            "EQT_NO": "E1", "EQT_SERNO": "S1", "MAC_ADDRESS": "AA:BB",
            "PROD_CMPS_CL": "23", "EQT_PROD_CMPS_ID": "PC9", "EQT_BRK_YN": "Y",
        })
        self.assertEqual(item.equipment_id, "E1")
        self.assertEqual(item.mac, "AA:BB")
        self.assertEqual(item.prod_cmps_id, "PC9")
        self.assertTrue(item.flags["broken"])
        self.assertFalse(item.flags["lost"])

    def test_from_camel_case_row(self):
        item = EquipmentItem.from_api({"id": "E2", "serialNumber": "S2", "itemMidCd": "04"})
        self.assertEqual((item.equipment_id, item.serial, item.item_mid_cd), ("E2", "S2", "04"))

    def test_yn_flag(self):
        for v in ("1", "Y", "y", True):
            self.assertTrue(yn_flag(v))
        for v in ("0", "N", "", None, False):
            self.assertFalse(yn_flag(v))


class TestIsolation(unittest.TestCase):

    def setUp(self):
        self.store = EquipmentDispositionStore()

    def test_write_under_a_not_visible_under_b(self):
        self.store.set_api_data("A", contract=[{"EQT_NO": "E1"}])
        self.store.mark_for_removal("A", _item("E1"))
        self.store.toggle_loss_flag("A", "E1", "lost")
        self.store.set_reuse_all("A", True)
        self.store.set_signal_status("A", SignalStatus.SUCCESS)

        b = self.store.snapshot("B")
        self.assertEqual(b.contract_equipment, [])
        self.assertEqual(b.marked_for_removal, {})
        self.assertEqual(b.loss_status, {})
        self.assertFalse(b.reuse_all)
        self.assertEqual(b.signal_status, SignalStatus.IDLE)

    def test_concurrent_writers_on_different_keys(self):
        def work(key):
            for n in range(50):
                self.store.mark_for_removal(key, _item(f"{key}-{n}"))

        threads = [threading.Thread(target=work, args=(k,)) for k in ("A", "B", "C")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        for key in ("A", "B", "C"):
            snap = self.store.snapshot(key)
            self.assertEqual(len(snap.marked_for_removal), 50)
            self.assertTrue(all(k.startswith(key) for k in snap.marked_for_removal))

    def test_snapshot_is_deep_copy(self):
        self.store.mark_for_removal("A", _item("E1"))
        snap = self.store.snapshot("A")
        snap.marked_for_removal["E1"].serial = "changed"
        snap.marked_for_removal.clear()
        again = self.store.snapshot("A")
        self.assertEqual(again.marked_for_removal["E1"].serial, "SN-E1")

    def test_clear_and_keys(self):
        self.store.mark_for_removal("A", _item("E1"))
        self.store.mark_for_removal("B", _item("E2"))
        self.assertEqual(sorted(self.store.keys()), ["A", "B"])
        self.store.clear("A")
        self.assertEqual(self.store.keys(), ["B"])
        self.assertEqual(self.store.snapshot("A").marked_for_removal, {})

    def test_clear_waits_for_in_flight_mutation(self):
        cleared = threading.Thread(target=self.store.clear, args=("A",))
        with self.store._locked("A") as state:
            cleared.start()
            cleared.join(timeout=0.2)
            self.assertTrue(cleared.is_alive())
            state.reuse_all = True
        cleared.join(timeout=5)
        self.assertFalse(cleared.is_alive())
        self.assertEqual(self.store.keys(), [])
        self.assertFalse(self.store.snapshot("A").reuse_all)

    def test_writes_racing_clear_never_fail(self):
        errors = []

        def write(n):
            try:
                for i in range(200):
                    self.store.mark_for_removal("A", _item(f"{n}-{i}"))
                    self.store.toggle_loss_flag("A", f"{n}-{i}", "lost")
            except Exception as e:
                errors.append(e)

        def wipe():
            try:
                for _ in range(200):
                    self.store.clear("A")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=write, args=(n,)) for n in range(4)]
        threads.append(threading.Thread(target=wipe))
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(errors, [])

        self.store.clear("A")
        self.store.mark_for_removal("A", _item("LAST"))
        self.assertEqual(list(self.store.snapshot("A").marked_for_removal), ["LAST"])


class TestDisposition(unittest.TestCase):

    def setUp(self):
        self.store = EquipmentDispositionStore()

    def test_set_api_data_replaces_only_given_lists(self):
        self.store.set_api_data("W", contract=[{"EQT_NO": "C1"}], customer=[{"EQT_NO": "K1"}])
        self.store.set_api_data("W", contract=[{"EQT_NO": "C2"}])
        snap = self.store.snapshot("W")
        self.assertEqual([i.equipment_id for i in snap.contract_equipment], ["C2"])
        self.assertEqual([i.equipment_id for i in snap.customer_equipment], ["K1"])
        self.assertTrue(snap.data_loaded)

    def test_mark_is_deduplicated(self):
        self.store.mark_for_removal("W", _item("E1"))
        self.store.mark_for_removal("W", _item("E1"))
        self.assertEqual(len(self.store.snapshot("W").removed_items()), 1)

    def test_install_replaces_slot(self):
        self.store.add_installed("W", _item("N1"), "C1")
        self.store.add_installed("W", _item("N2"), "C1")
        snap = self.store.snapshot("W")
        self.assertEqual(list(snap.installed), ["C1"])
        self.assertEqual(snap.installed["C1"].equipment_id, "N2")
        self.assertEqual(snap.disposition_of("N1"), Disposition.CONTRACT_ONLY)

    def test_remove_installed_frees_slot(self):
        self.store.add_installed("W", _item("N1"), "C1")
        self.store.add_installed("W", _item("N2"), "C2")
        self.store.remove_installed("W", "C1")
        snap = self.store.snapshot("W")
        self.assertEqual(list(snap.installed), ["C2"])
        self.assertEqual(snap.disposition_of("N1"), Disposition.CONTRACT_ONLY)
        self.assertEqual([i.equipment_id for i in snap.installed_items()], ["N2"])

        self.store.remove_installed("W", "missing")
        self.store.add_installed("W", _item("N3"), "C1")
        self.assertEqual(
            [i.equipment_id for i in self.store.snapshot("W").installed_items()], ["N2", "N3"])

    def test_exactly_one_disposition(self):
        self.store.add_installed("W", _item("E1"), "C1")
        self.assertEqual(self.store.snapshot("W").disposition_of("E1"), Disposition.INSTALLED)

        self.store.mark_for_removal("W", _item("E1"))
        snap = self.store.snapshot("W")
        self.assertEqual(snap.disposition_of("E1"), Disposition.MARKED_FOR_REMOVAL)
        self.assertEqual(snap.installed, {})

        self.assertTrue(self.store.confirm_removed("W", "E1"))
        snap = self.store.snapshot("W")
        self.assertEqual(snap.disposition_of("E1"), Disposition.REMOVED_CONFIRMED)
        self.assertNotIn("E1", snap.marked_for_removal)

        self.store.add_installed("W", _item("E1"), "C2")
        snap = self.store.snapshot("W")
        self.assertEqual(snap.disposition_of("E1"), Disposition.INSTALLED)
        self.assertEqual(snap.removed_confirmed, {})

    def test_confirm_unmarked_returns_false(self):
        self.assertFalse(self.store.confirm_removed("W", "nope"))

    def test_unmark(self):
        self.store.mark_for_removal("W", _item("E1"))
        self.store.unmark("W", "E1")
        self.assertFalse(self.store.snapshot("W").has_any_disposition)

    def test_snapshot_stamps_dispositions_on_lists(self):
        self.store.set_api_data("W", contract=[{"EQT_NO": "E1"}, {"EQT_NO": "E2"}])
        self.store.mark_for_removal("W", _item("E1"))
        snap = self.store.snapshot("W")
        by_id = {i.equipment_id: i.disposition for i in snap.contract_equipment}
        self.assertEqual(by_id, {"E1": Disposition.MARKED_FOR_REMOVAL, "E2": Disposition.CONTRACT_ONLY})


class TestLossFlags(unittest.TestCase):

    def setUp(self):
        self.store = EquipmentDispositionStore()

    def test_toggle_flips(self):
        self.store.mark_for_removal("W", _item("E1"))
        self.assertTrue(self.store.toggle_loss_flag("W", "E1", "lost"))
        self.assertFalse(self.store.toggle_loss_flag("W", "E1", "lost"))

    def test_toggle_starts_from_api_flags(self):
        self.store.mark_for_removal("W", _item("E1", EQT_BRK_YN="1"))
        self.assertFalse(self.store.toggle_loss_flag("W", "E1", "broken"))
        removed = self.store.snapshot("W").removed_items()[0]
        self.assertFalse(removed.flags["broken"])

    def test_unknown_flag_raises(self):
        with self.assertRaises(ValueError):
            self.store.toggle_loss_flag("W", "E1", "stolen")

    def test_removed_items_apply_flags_and_reuse(self):
        self.store.mark_for_removal("W", _item("E1"))
        self.store.set_loss_flag("W", "E1", "cradle_lost", True)
        self.store.set_reuse_all("W", True)
        item = self.store.snapshot("W").removed_items()[0]
        self.assertTrue(item.flags["cradle_lost"])
        self.assertTrue(item.reuse)

    def test_implicated_includes_customer_equipment(self):
        self.store.set_api_data("W", customer=[{"EQT_NO": "K1"}])
        snap = self.store.snapshot("W")
        self.assertTrue(snap.has_implicated_equipment)
        self.assertFalse(snap.has_any_disposition)


class TestSignalStatus(unittest.TestCase):

    def test_status_and_result(self):
        store = EquipmentDispositionStore(clock=lambda: 42.0)
        store.set_signal_status("W", SignalStatus.FAIL, {"message": "E"})
        snap = store.snapshot("W")
        self.assertEqual(snap.signal_status, SignalStatus.FAIL)
        self.assertEqual(snap.signal_result, {"message": "E"})
        self.assertEqual(snap.last_updated, 42.0)


if __name__ == "__main__":
    unittest.main()
