import shutil
import unittest

import torch

from flowsheet.config import RuntimeSettings
from flowsheet.errors import ERROR
from flowsheet.runtime import RuntimeState
from flowsheet.scope import ScopeStore
from flowsheet.statistical_runtime import (
    ERROR_MARK,
    StatisticalRuntime,
    build_request,
    r_assignments,
    r_literal,
    r_string,
)

HAVE_R = shutil.which("R") is not None


class _ClosedPipe:
    def write(self, data):
        pass

    async def drain(self):
        raise BrokenPipeError()


class _ExitedProcess:
    returncode = 1
    stdin = _ClosedPipe()


class TestRLiterals(unittest.TestCase):
    def test_scalars(self):
        self.assertEqual(r_literal(5), "5")
        self.assertEqual(r_literal(2.5), "2.5")
        self.assertEqual(r_literal(True), "TRUE")
        self.assertEqual(r_literal(None), "NULL")
        self.assertEqual(r_literal(float("nan")), "NaN")
        self.assertEqual(r_literal(float("-inf")), "-Inf")

    def test_strings_are_escaped(self):
        self.assertEqual(r_string('say "hi"\n'), '"say \\"hi\\"\\n"')

    def test_vectors(self):
        self.assertEqual(r_literal([1, 2, 3]), "c(1, 2, 3)")
        self.assertEqual(r_literal(["a", "b"]), 'c("a", "b")')
        self.assertEqual(r_literal([]), "c()")

    def test_matrix_is_row_major(self):
        self.assertEqual(r_literal([[1, 2], [3, 4]]),
                         "matrix(c(1, 2, 3, 4), nrow = 2, ncol = 2, byrow = TRUE)")

    def test_tensors(self):
        self.assertEqual(r_literal(torch.tensor([1, 2])), "c(1, 2)")
        self.assertEqual(r_literal(torch.tensor(3.5)), "3.5")

    def test_unrepresentable_values(self):
        self.assertIsNone(r_literal({"a": 1}))
        self.assertIsNone(r_literal([[1, 2], [3]]))
        self.assertIsNone(r_literal([1, "a"]))
        self.assertIsNone(r_literal(ERROR))

    def test_assignments_skip_invalid_names(self):
        lines = r_assignments({"x": 1, "_private": 2, "if": 3, "data": {"a": 1}, "v.b": 4})
        self.assertEqual(lines, ["x <- 1", "v.b <- 4"])

    def test_request_ends_with_sentinel(self):
        request = build_request("print(x)", ["x <- 1"], "<<end>>")
        self.assertTrue(request.startswith("x <- 1\n"))
        self.assertIn('parse(text = "print(x)")', request)
        self.assertIn(ERROR_MARK, request)
        self.assertIn('cat("\\n<<end>>\\n")', request)


class TestStatisticalRuntimeLifecycle(unittest.IsolatedAsyncioTestCase):
    async def test_run_before_ready_is_refused(self):
        runtime = StatisticalRuntime()
        output = await runtime.run("x <- 1", ScopeStore())
        self.assertEqual(output, "Error: R is still loading...")

    async def test_missing_executable_fails(self):
        runtime = StatisticalRuntime(RuntimeSettings(r_executable="flowsheet-no-such-r"))
        with self.assertLogs("flowsheet.runtime", level="ERROR"):
            self.assertFalse(await runtime.initialize())
        self.assertIs(runtime.state, RuntimeState.FAILED)
        self.assertIn("flowsheet-no-such-r", str(runtime.failure))
        output = await runtime.run("1 + 1", ScopeStore())
        self.assertEqual(output, "Error: R runtime failed to load and is unavailable")


    async def test_broken_pipe_restarts_process(self):
        runtime = StatisticalRuntime(RuntimeSettings(r_executable="flowsheet-no-such-r"))
        runtime.state = RuntimeState.READY
        runtime._process = _ExitedProcess()
        with self.assertLogs("flowsheet", level="WARNING"):
            output = await runtime.run("1 + 1", ScopeStore())
            self.assertEqual(output, "Error: R process exited unexpectedly")
            self.assertNotEqual(runtime.state, RuntimeState.READY)
            # relaunch was attempted; with no R on PATH it fails
            self.assertFalse(await runtime.initialize())
        self.assertIs(runtime.state, RuntimeState.FAILED)


@unittest.skipUnless(HAVE_R, "R is not installed")
class TestStatisticalRuntimeExecution(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.runtime = StatisticalRuntime(RuntimeSettings(script_timeout=10))
        await self.runtime.initialize()
        self.scope = ScopeStore()

    async def asyncTearDown(self):
        await self.runtime.close()

    async def test_ready_with_version(self):
        self.assertTrue(self.runtime.ready)
        self.assertTrue(self.runtime.version_string.startswith("R version"))

    async def test_autoprint(self):
        output = await self.runtime.run("1 + 1", self.scope)
        self.assertEqual(output, "[1] 2")

    async def test_cat_output(self):
        output = await self.runtime.run('cat("hello\\n")', self.scope)
        self.assertEqual(output, "hello")

    async def test_scope_is_pushed(self):
        self.scope.update({"r": 3, "v": [1, 2, 3]})
        output = await self.runtime.run("cat(r * 2, sum(v))", self.scope)
        self.assertEqual(output, "6 6")

    async def test_nothing_is_read_back(self):
        version = self.scope.version
        await self.runtime.run("y <- 10", self.scope)
        self.assertNotIn("y", self.scope)
        self.assertEqual(self.scope.version, version)

    async def test_silent_run(self):
        output = await self.runtime.run("z <- 1", self.scope)
        self.assertEqual(output, "Executed successfully (no output)")

    async def test_error(self):
        output = await self.runtime.run('stop("bad input")', self.scope)
        self.assertEqual(output, "Error: bad input")

    async def test_warning_does_not_stop_run(self):
        output = await self.runtime.run('warning("careful")\ncat("after\\n")', self.scope)
        self.assertEqual(output, "Warning: careful\nafter")


if __name__ == '__main__':
    unittest.main()
