import unittest

import torch

from flowsheet.errors import ERROR
from flowsheet.scope import ScopeStore, same_value


class TestScopeStore(unittest.TestCase):
    def setUp(self):
        self.scope = ScopeStore()

    def test_get_missing_returns_default(self):
        self.assertIsNone(self.scope.get("missing"))
        self.assertEqual(self.scope.get("missing", 0), 0)

    def test_set_bumps_version_even_for_same_value(self):
        self.scope.set("a", 1)
        self.scope.set("a", 1)
        self.assertEqual(self.scope.version, 2)
        self.assertEqual(self.scope.get("a"), 1)

    def test_update_is_one_batch(self):
        version = self.scope.update({"x": 1, "y": 2, "z": 3})
        self.assertEqual(version, 1)
        self.assertEqual(self.scope.version, 1)
        self.assertEqual(self.scope.get("y"), 2)

    def test_snapshot_is_read_only_copy(self):
        self.scope.set("a", 1)
        snap = self.scope.snapshot()
        with self.assertRaises(TypeError):
            snap["a"] = 2
        self.scope.set("a", 5)
        self.assertEqual(snap["a"], 1)

    def test_subscribers_get_version(self):
        seen = []
        unsubscribe = self.scope.subscribe(seen.append)
        self.scope.set("a", 1)
        self.scope.update({"b": 2, "c": 3})
        unsubscribe()
        self.scope.set("d", 4)
        self.assertEqual(seen, [1, 2])

    def test_failing_subscriber_does_not_break_writes(self):
        def broken(version):
            raise RuntimeError("boom")
        self.scope.subscribe(broken)
        with self.assertLogs("flowsheet.scope", level="ERROR"):
            self.scope.set("a", 1)
        self.assertEqual(self.scope.get("a"), 1)

    def test_summary_hides_private_names(self):
        self.scope.update({"a": 1, "_hidden": 2})
        self.assertIn("a: 1", self.scope.summary())
        self.assertNotIn("_hidden", self.scope.summary())
        self.assertIn("_hidden", self.scope)
        self.assertEqual(len(self.scope), 2)

    def test_summary_survives_huge_ints(self):
        self.scope.set("big", 2 ** 20000)
        self.assertIn("big: 3.98", self.scope.summary())


class TestSameValue(unittest.TestCase):
    def test_tensors(self):
        self.assertTrue(same_value(torch.tensor([1, 2]), torch.tensor([1, 2])))
        self.assertFalse(same_value(torch.tensor([1, 2]), torch.tensor([1.0, 2.0])))
        self.assertFalse(same_value(torch.tensor([1, 2]), [1, 2]))

    def test_nested_and_sentinel(self):
        self.assertTrue(same_value([[1, "a"]], [[1, "a"]]))
        self.assertTrue(same_value(ERROR, ERROR))
        self.assertFalse(same_value(1, True))
        self.assertFalse(same_value(1, 1.0))


if __name__ == '__main__':
    unittest.main()
