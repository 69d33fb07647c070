"""Tests for the applied-steps ledger (both backends)."""

import os
import sys
import tempfile
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from closeout.ledger import InMemoryStepLedger, SQLiteStepLedger, fingerprint


class TestFingerprint(unittest.TestCase):

    def test_key_order_does_not_matter(self):
        self.assertEqual(fingerprint({"a": 1, "b": 2}), fingerprint({"b": 2, "a": 1}))

    def test_value_change_changes_fingerprint(self):
        self.assertNotEqual(fingerprint({"a": 1}), fingerprint({"a": 2}))

    def test_none_is_empty_payload(self):
        self.assertEqual(fingerprint(None), fingerprint({}))


class _LedgerContract:

    def make_ledger(self):
        raise NotImplementedError

    def setUp(self):
        self.ledger = self.make_ledger()

    def test_is_applied_matches_payload(self):
        self.ledger.record("WO-1", "signal", {"MSG_ID": "SMR05"})
        self.assertTrue(self.ledger.is_applied("WO-1", "signal", {"MSG_ID": "SMR05"}))
        self.assertFalse(self.ledger.is_applied("WO-1", "signal", {"MSG_ID": "STB_DEL"}))
        self.assertFalse(self.ledger.is_applied("WO-2", "signal", {"MSG_ID": "SMR05"}))

    def test_record_replaces(self):
        self.ledger.record("WO-1", "suspension", {"end": "1"})
        self.ledger.record("WO-1", "suspension", {"end": "2"})
        entries = self.ledger.entries("WO-1")
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].fingerprint, fingerprint({"end": "2"}))

    def test_clear_only_that_work_order(self):
        self.ledger.record("WO-1", "removal_line", {})
        self.ledger.record("WO-1", "signal", {})
        self.ledger.record("WO-2", "signal", {})
        self.ledger.clear("WO-1")
        self.assertEqual(self.ledger.entries("WO-1"), [])
        self.assertIsNotNone(self.ledger.get("WO-2", "signal"))


class TestInMemoryStepLedger(_LedgerContract, unittest.TestCase):

    def make_ledger(self):
        return InMemoryStepLedger()


class TestSQLiteStepLedger(_LedgerContract, unittest.TestCase):

    def make_ledger(self):
        return SQLiteStepLedger()

    def tearDown(self):
        self.ledger.close()

    def test_survives_reopen(self):
        path = os.path.join(tempfile.mkdtemp(), "ledger.db")
        ledger = SQLiteStepLedger(path)
        ledger.record("WO-1", "certification_register", {"CTRT_ID": "CT1"})
        ledger.close()
        reopened = SQLiteStepLedger(path)
        try:
            self.assertTrue(reopened.is_applied("WO-1", "certification_register", {"CTRT_ID": "CT1"}))
        finally:
            reopened.close()


if __name__ == "__main__":
    unittest.main()
