"""
FlowSheet Statistical Runtime - R for script blocks.

One long-lived `R` child process per session, driven over stdin/stdout.
Every request ends with a unique sentinel line so the reader knows where
the output of one script stops.

Scope synchronization is one-way and reduced: scalars, strings, booleans,
None and rectangular 1-D/2-D arrays of numbers, strings or booleans whose
names are valid R identifiers are assigned into R's global environment
before each run. Nothing is read back from R. This is a known limitation.
"""
import asyncio
import logging
import math
import re
import shutil
import uuid

import torch

from .errors import RuntimeInitializationFailure, ScriptExecutionError, ScriptTimeout
from .runtime import ForeignRuntime, RuntimeState

logger = logging.getLogger(__name__)

R_IDENTIFIER = re.compile(r'^[A-Za-z][A-Za-z0-9._]*$')
R_RESERVED = frozenset({
    'if', 'else', 'repeat', 'while', 'function', 'for', 'next', 'break', 'in',
    'TRUE', 'FALSE', 'NULL', 'Inf', 'NaN', 'NA', 'NA_integer_', 'NA_real_',
    'NA_character_', 'T', 'F',
})
ERROR_MARK = '\x01FLOWSHEET-ERROR\x01'
STARTUP_TIMEOUT = 30.0


def r_string(text):
    """Quote a Python string as an R string literal."""
    escaped = (text.replace('\\', '\\\\').replace('"', '\\"')
               .replace('\n', '\\n').replace('\r', '\\r').replace('\t', '\\t'))
    return f'"{escaped}"'


def _r_scalar(value):
    if value is None:
        return 'NULL'
    if isinstance(value, bool):
        return 'TRUE' if value else 'FALSE'
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value):
            return 'NaN'
        if math.isinf(value):
            return 'Inf' if value > 0 else '-Inf'
        return repr(value)
    if isinstance(value, str):
        return r_string(value)
    return None


def _r_vector(values):
    kinds = {(bool if isinstance(v, bool) else str if isinstance(v, str) else float) for v in values}
    if len(kinds) > 1 or not all(isinstance(v, (int, float, str, bool)) for v in values):
        return None
    return 'c(' + ', '.join(_r_scalar(v) for v in values) + ')'


def r_literal(value):
    """R source for `value`, or None when it cannot be represented."""
    if torch.is_tensor(value):
        value = value.item() if value.dim() == 0 else value.tolist()

    scalar = _r_scalar(value)
    if scalar is not None:
        return scalar

    if not isinstance(value, (list, tuple)):
        return None
    if not value:
        return 'c()'
    if all(isinstance(row, (list, tuple)) for row in value):
        ncol = len(value[0])
        if any(len(row) != ncol for row in value):
            return None
        cells = _r_vector([v for row in value for v in row])
        if cells is None:
            return None
        return f'matrix({cells}, nrow = {len(value)}, ncol = {ncol}, byrow = TRUE)'
    return _r_vector(list(value))


def r_assignments(snapshot):
    """`name <- value` lines for every scope entry R can receive."""
    lines = []
    for name, value in snapshot.items():
        if not R_IDENTIFIER.match(name) or name in R_RESERVED:
            continue
        literal = r_literal(value)
        if literal is None:
            logger.debug("Scope entry %r not sent to R (%s)", name, type(value).__name__)
            continue
        lines.append(f'{name} <- {literal}')
    return lines


def build_request(code, assignments, sentinel):
    """R program for one script run, ending with the sentinel line."""
    return "\n".join(assignments + [
        'withCallingHandlers(tryCatch({',
        f'  for (.fs_expr in parse(text = {r_string(code)})) {{',
        '    .fs_value <- withVisible(eval(.fs_expr, envir = globalenv()))',
        '    if (.fs_value$visible) print(.fs_value$value)',
        '  }',
        f'}}, error = function(e) cat("{ERROR_MARK}", conditionMessage(e), "\\n", sep = "")),',
        'warning = function(w) {',
        '  cat("Warning: ", conditionMessage(w), "\\n", sep = "")',
        '  invokeRestart("muffleWarning")',
        '})',
        f'cat("\\n{sentinel}\\n")',
        'flush.console()',
        '',
    ])


class StatisticalRuntime(ForeignRuntime):
    """R interpreter in a child process."""
    kind = "statistical"

    def __init__(self, settings=None):
        super().__init__(settings)
        self._process = None
        self._lock = asyncio.Lock()
        self.version_string = None

    async def _start(self):
        executable = shutil.which(self.settings.r_executable)
        if executable is None:
            raise RuntimeInitializationFailure(f"R executable '{self.settings.r_executable}' not found")
        self._process = await asyncio.create_subprocess_exec(
            executable, '--vanilla', '--quiet', '--no-echo',
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        sentinel = self._sentinel()
        self._send(f'cat(R.version.string, "\\n")\ncat("\\n{sentinel}\\n")\nflush.console()\n')
        await self._process.stdin.drain()
        try:
            lines = await asyncio.wait_for(self._read_until(sentinel), STARTUP_TIMEOUT)
        except (asyncio.TimeoutError, ScriptExecutionError) as exc:
            await self._kill()
            raise RuntimeInitializationFailure(f"R did not start: {str(exc) or 'timed out'}") from exc
        self.version_string = next((line for line in lines if line.strip()), None)
        logger.info("Statistical runtime started: %s", self.version_string)

    @staticmethod
    def _sentinel():
        return f'<<flowsheet-{uuid.uuid4().hex}>>'

    def _send(self, text):
        self._process.stdin.write(text.encode('utf-8'))

    async def _read_until(self, sentinel):
        lines = []
        while True:
            raw = await self._process.stdout.readline()
            if not raw:
                raise ScriptExecutionError("R process exited unexpectedly")
            line = raw.decode('utf-8', errors='replace').rstrip('\r\n')
            if line == sentinel:
                break
            lines.append(line)
        # drop the blank line written in front of the sentinel
        if lines and not lines[-1]:
            lines.pop()
        return lines

    async def _execute(self, code, scope, output):
        sentinel = self._sentinel()
        request = build_request(code, r_assignments(scope.snapshot()), sentinel)
        async with self._lock:
            timeout = self.settings.script_timeout
            try:
                self._send(request)
                await self._process.stdin.drain()
                lines = await asyncio.wait_for(self._read_until(sentinel), timeout)
            except asyncio.TimeoutError:
                await self._restart()
                raise ScriptTimeout(timeout) from None
            except ScriptExecutionError:
                await self._restart()
                raise
            except (ConnectionResetError, BrokenPipeError) as exc:
                await self._restart()
                raise ScriptExecutionError("R process exited unexpectedly") from exc

        for line in lines:
            if line.startswith(ERROR_MARK):
                output.append(f"Error: {line[len(ERROR_MARK):]}")
            else:
                output.append(line)

    async def _kill(self):
        if self._process is None or self._process.returncode is not None:
            return
        self._process.kill()
        await self._process.wait()

    async def _restart(self):
        """Replace a stuck or dead R process; runs are refused until it is back."""
        logger.warning("Restarting R process")
        await self._kill()
        self._set_state(RuntimeState.UNINITIALIZED)
        self._init_task = None
        self.start()

    async def close(self):
        if self._process is None or self._process.returncode is not None:
            return
        try:
            self._send('q("no")\n')
            await self._process.stdin.drain()
            await asyncio.wait_for(self._process.wait(), 5)
        except (asyncio.TimeoutError, ConnectionResetError, BrokenPipeError):
            await self._kill()
