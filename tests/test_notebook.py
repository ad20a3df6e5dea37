import unittest

import torch

from flowsheet.config import RuntimeSettings
from flowsheet.context import ComputationContext
from flowsheet.errors import ERROR
from flowsheet.handlers import DataImportHandler
from flowsheet.notebook import Notebook


class TestFormulaBlocks(unittest.TestCase):
    def setUp(self):
        self.nb = Notebook()
        self.scope = self.nb.context.scope

    def test_formula_publishes_result(self):
        block = self.nb.add_block("formula", "2+3", variable_name="a")
        self.assertEqual(self.scope.get("a"), 5)
        self.assertEqual(self.nb.display(block.id), "5")

    def test_edit_persists_and_republishes(self):
        block = self.nb.add_block("formula", "1", variable_name="a")
        self.nb.update_block(block.id, content="2 * 21")
        self.assertEqual(self.nb.block(block.id).content, "2 * 21")
        self.assertEqual(self.scope.get("a"), 42)

    def test_failed_formula_publishes_error_but_persists(self):
        block = self.nb.add_block("formula", "1", variable_name="a")
        self.nb.update_block(block.id, content="1/")
        self.assertEqual(self.nb.block(block.id).content, "1/")
        self.assertIs(self.scope.get("a"), ERROR)
        self.assertEqual(self.nb.display(block.id), "Error")

    def test_blank_formula_publishes_nothing(self):
        self.nb.add_block("formula", "", variable_name="a")
        self.assertNotIn("a", self.scope)

    def test_formula_without_name_writes_nothing(self):
        self.nb.add_block("formula", "2+2")
        self.assertEqual(self.scope.version, 0)

    def test_rename_keeps_old_entry(self):
        block = self.nb.add_block("formula", "7", variable_name="a")
        self.nb.update_block(block.id, variable_name="b")
        self.assertEqual(self.scope.get("a"), 7)
        self.assertEqual(self.scope.get("b"), 7)

    def test_remove_block_keeps_variable(self):
        block = self.nb.add_block("formula", "7", variable_name="a")
        self.nb.remove_block(block.id)
        self.assertEqual(self.nb.blocks, [])
        self.assertEqual(self.scope.get("a"), 7)

    def test_display_lines(self):
        block = self.nb.add_block("formula", "x = 2\nx ^ 3\n1/")
        lines = self.nb.handler("formula").display_lines(block)
        self.assertEqual(lines, [(1, "x = 2", "2"), (2, "x ^ 3", "8"), (3, "1/", "Error")])

    def test_huge_integer_result_displays(self):
        block = self.nb.add_block("formula", "(2^10000) * (2^10000)", variable_name="big")
        self.assertTrue(self.nb.display(block.id).endswith("e+6020"))
        name, kind, text = self.nb.variables()[0]
        self.assertEqual((name, kind), ("big", "number"))
        self.assertTrue(text.startswith("3.98"))

    def test_text_block_is_inert(self):
        block = self.nb.add_block("text", "a = 1", variable_name="a")
        self.assertNotIn("a", self.scope)
        self.assertEqual(self.nb.display(block.id), "a = 1")


class TestRecompute(unittest.TestCase):
    def setUp(self):
        self.nb = Notebook()
        self.scope = self.nb.context.scope

    def test_consumers_update_on_recompute(self):
        a = self.nb.add_block("formula", "2", variable_name="a")
        b = self.nb.add_block("formula", "a * 10", variable_name="b")
        self.nb.update_block(a.id, content="3")
        self.assertEqual(self.scope.get("b"), 20)
        self.assertTrue(self.nb.stale)
        self.assertEqual(self.nb.recompute(), [b.id])
        self.assertEqual(self.scope.get("b"), 30)

    def test_settle_out_of_order_chain(self):
        c = self.nb.add_block("formula", "b + 1", variable_name="c")
        self.nb.add_block("formula", "a + 1", variable_name="b")
        self.nb.add_block("formula", "1", variable_name="a")
        self.assertIs(self.scope.get("c"), ERROR)
        self.nb.settle()
        self.assertEqual(self.scope.get("c"), 3)
        self.assertFalse(self.nb.stale)
        self.assertEqual(self.nb.display(c.id), "3")

    def test_settle_is_bounded(self):
        self.nb.context.update_variable("n", 0)
        self.nb.add_block("formula", "n + 1", variable_name="n")
        with self.assertLogs("flowsheet.notebook", level="WARNING"):
            passes = self.nb.settle(max_passes=3)
        self.assertEqual(passes, 3)
        self.assertEqual(self.scope.get("n"), 4)

    def test_unchanged_results_do_not_bump_version(self):
        self.nb.add_block("formula", "2", variable_name="a")
        self.nb.add_block("formula", "a + 1", variable_name="b")
        self.nb.settle()
        version = self.scope.version
        self.assertEqual(self.nb.recompute(), [])
        self.assertEqual(self.scope.version, version)


class TestTableBlocks(unittest.TestCase):
    def setUp(self):
        self.nb = Notebook()
        self.scope = self.nb.context.scope
        self.table = self.nb.add_block("table", [["1", "2"], ["3", "4"]], variable_name="t")

    def test_table_publishes_cells(self):
        self.assertEqual(self.scope.get("t"), [["1", "2"], ["3", "4"]])
        self.nb.add_block("formula", "sum(t)", variable_name="s")
        self.assertEqual(self.scope.get("s"), 10)

    def test_cell_display(self):
        handler = self.nb.handler("table")
        self.scope.set("s", 10)
        handler.set_cell(self.table, 0, 1, "=s * 2", self.nb.on_change(self.table.id))
        handler.set_cell(self.nb.block(self.table.id), 1, 0, "total {s}", self.nb.on_change(self.table.id))
        self.assertEqual(self.nb.display(self.table.id), [["1", "20"], ["total 10", "4"]])
        # published value stays raw
        self.assertEqual(self.scope.get("t")[0][1], "=s * 2")

    def test_add_row_and_column(self):
        handler = self.nb.handler("table")
        handler.add_row(self.table, self.nb.on_change(self.table.id))
        handler.add_column(self.nb.block(self.table.id), self.nb.on_change(self.table.id))
        self.assertEqual(self.nb.block(self.table.id).content,
                         [["1", "2", ""], ["3", "4", ""], ["", "", ""]])

    def test_refresh_pulls_matrix_from_scope(self):
        self.nb.context.update_variable("t", torch.tensor([[5, 6]]))
        self.assertIn(self.table.id, self.nb.recompute())
        self.assertEqual(self.nb.block(self.table.id).content, [[5, 6]])

    def test_refresh_ignores_non_tables(self):
        self.nb.context.update_variable("t", 12)
        self.assertEqual(self.nb.recompute(), [])
        self.assertEqual(self.nb.block(self.table.id).content, [["1", "2"], ["3", "4"]])


class TestDataImportBlocks(unittest.TestCase):
    def test_parse_csv_pads_and_converts(self):
        data = DataImportHandler.parse_csv("a;b\n1;2.5\n3\n", "s", delimiter=";")
        self.assertEqual(data, {"sheets": ["s"], "s": [["a", "b"], [1, 2.5], [3, ""]]})

    def test_only_plain_numbers_are_converted(self):
        data = DataImportHandler.parse_csv("1_000,nan,inf,2e3,-7\n", "s", delimiter=",")
        self.assertEqual(data["s"], [["1_000", "nan", "inf", 2000.0, -7]])

    def test_import_publishes_workbook(self):
        nb = Notebook()
        block = nb.add_block("data", variable_name="sales")
        self.assertNotIn("sales", nb.context.scope)
        nb.handler("data").import_csv(block, "name,value\nalpha,1\nbeta,2\n", "/tmp/results.csv",
                                      nb.on_change(block.id))
        stored = nb.block(block.id)
        self.assertEqual(stored.file_name, "/tmp/results.csv")
        self.assertEqual(stored.selected_sheet, "results")
        self.assertEqual(nb.context.scope.get("sales"), stored.data)
        self.assertEqual(nb.display(block.id), [["name", "value"], ["alpha", 1], ["beta", 2]])

    def test_select_unknown_sheet(self):
        nb = Notebook()
        block = nb.add_block("data", variable_name="sales")
        with self.assertRaises(KeyError):
            nb.handler("data").select_sheet(block, "missing", nb.on_change(block.id))


class TestDependencyOverlay(unittest.TestCase):
    def test_toggle(self):
        nb = Notebook()
        nb.add_block("formula", "10", variable_name="r")
        nb.add_block("formula", "r * 2")
        nb.add_block("text", "r is the radius")
        self.assertEqual(len(nb.dependency_edges()), 1)
        nb.show_dependencies = False
        self.assertEqual(nb.dependency_edges(), [])

    def test_variables_view(self):
        nb = Notebook()
        nb.add_block("formula", "1.5", variable_name="r")
        nb.context.update_variable("_internal", 1)
        self.assertEqual(nb.variables(), [("r", "number", "1.5000")])


class TestScriptBlocks(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.context = ComputationContext(settings=RuntimeSettings(r_executable="flowsheet-no-such-r"))
        self.nb = Notebook(self.context)

    async def asyncTearDown(self):
        await self.context.close()

    async def test_run_persists_output_and_syncs_scope(self):
        await self.context.bridge.runtime("python").initialize()
        self.nb.add_block("formula", "4", variable_name="r")
        block = self.nb.add_block("script", "area = r * r\nprint(area)")
        self.assertTrue(self.nb.handler("script").can_run(block))
        output = await self.nb.run_script(block.id)
        self.assertEqual(output, "16")
        self.assertEqual(self.nb.block(block.id).output, "16")
        self.assertEqual(self.context.scope.get("area"), 16)

    async def test_script_edit_does_not_execute(self):
        block = self.nb.add_block("script", "x = 1")
        self.nb.update_block(block.id, content="x = 2")
        self.assertNotIn("x", self.context.scope)
        self.assertIsNone(self.nb.block(block.id).output)

    async def test_run_before_ready(self):
        block = self.nb.add_block("script", "x = 1")
        self.assertFalse(self.nb.handler("script").can_run(block))
        self.assertEqual(await self.nb.run_script(block.id), "Error: Python is still loading...")

    async def test_r_script_with_missing_r(self):
        self.context.start()
        with self.assertLogs("flowsheet.runtime", level="ERROR"):
            await self.context.bridge.wait_settled()
        block = self.nb.add_block("script", "x <- 1", language="r")
        self.assertEqual(await self.nb.run_script(block.id),
                         "Error: R runtime failed to load and is unavailable")

    async def test_only_scripts_run(self):
        block = self.nb.add_block("formula", "1")
        with self.assertRaises(ValueError):
            await self.nb.run_script(block.id)


if __name__ == '__main__':
    unittest.main()
