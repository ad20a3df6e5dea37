"""
FlowSheet Numeric Runtime - Sandboxed Python for script blocks.

Scripts run with `exec` in one persistent namespace, on a dedicated worker
thread so the event loop keeps serving formulas while they run. The scope is
copied into the namespace before each run, and the globals the run bound or
modified are pulled back afterwards as a single scope batch.
"""
import asyncio
import ast
import builtins
import copy
import hashlib
import importlib
import io
import logging
import sys
import time
import types
from concurrent.futures import ThreadPoolExecutor

import torch

from .config import RUNTIME_INTERNAL_NAMES
from .errors import ScriptTimeout
from .runtime import ForeignRuntime
from .scope import same_value
from .security_policy import SAFE_BUILTINS, check_code, safe_import

logger = logging.getLogger(__name__)


class _Deadline(BaseException):
    """Raised by the trace hook; BaseException so `except Exception` in user code cannot swallow it."""


def _detached(value):
    """Copy of a scope value for the script namespace. Uncopyable objects are shared."""
    if torch.is_tensor(value):
        return value.clone()
    try:
        return copy.deepcopy(value)
    except (TypeError, copy.Error, RuntimeError):
        logger.debug("Sharing uncopyable %s with script", type(value).__name__)
        return value


class NumericRuntime(ForeignRuntime):
    """
    Executes Python code natively using 'exec' with a whitelisted set of
    built-ins, `torch` and `math` preloaded.
    """
    kind = "numeric"

    def __init__(self, settings=None):
        super().__init__(settings)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="flowsheet-numeric")
        self._code_cache = {}
        self._globals = None

    async def _start(self):
        loop = asyncio.get_running_loop()
        self._globals = await loop.run_in_executor(self._executor, self._get_context)

    def _get_context(self):
        """Returns the dictionary of globals for exec. Imports torch, so it is slow."""
        torch = importlib.import_module('torch')
        math = importlib.import_module('math')
        ctx = {
            '__name__': '__flowsheet__',
            'torch': torch,
            'math': math,
        }
        logger.info("Numeric runtime loaded torch %s", torch.__version__)
        return ctx

    def _builtins(self, stdout):
        safe = {name: getattr(builtins, name) for name in SAFE_BUILTINS if hasattr(builtins, name)}

        def _print(*args, sep=' ', end='\n', file=None, flush=False):
            print(*args, sep=sep, end=end, file=stdout)

        safe['print'] = _print
        safe['__import__'] = safe_import
        return safe

    def _compile(self, code_str):
        code_hash = hashlib.md5(code_str.encode()).hexdigest()
        if code_hash in self._code_cache:
            return self._code_cache[code_hash]
        tree = ast.parse(code_str, filename='<script>', mode='exec')
        check_code(tree)
        compiled = compile(tree, '<script>', 'exec')
        self._code_cache[code_hash] = compiled
        return compiled

    async def _execute(self, code, scope, output):
        snapshot = scope.snapshot()
        # scripts work on copies; the scope only changes through the batch below
        pushed = {k: _detached(v) for k, v in snapshot.items() if k not in RUNTIME_INTERNAL_NAMES}
        stdout = io.StringIO()
        loop = asyncio.get_running_loop()
        try:
            pulled = await loop.run_in_executor(
                self._executor, self._run_sync, code, pushed, snapshot, stdout)
        finally:
            text = stdout.getvalue().rstrip('\n')
            if text:
                output.append(text)
        # one batch, one version bump, applied back on the event loop
        if pulled:
            scope.update(pulled)
        logger.debug("Numeric run synced %d variables back to scope", len(pulled))

    def _run_sync(self, code, pushed, snapshot, stdout):
        compiled = self._compile(code)
        ctx = self._globals
        ctx.update(pushed)
        ctx['__builtins__'] = self._builtins(stdout)

        timeout = self.settings.script_timeout
        if timeout:
            deadline = time.monotonic() + timeout

            def tracer(frame, event, arg):
                if time.monotonic() > deadline:
                    raise _Deadline()
                return tracer
            sys.settrace(tracer)
        try:
            exec(compiled, ctx)
        except _Deadline:
            raise ScriptTimeout(timeout) from None
        finally:
            if timeout:
                sys.settrace(None)
        return self._collect(ctx, pushed, snapshot)

    def _collect(self, ctx, pushed, snapshot):
        """
        User-visible globals the run bound or modified.

        A name counts as modified if it was rebound, or if the pushed copy
        no longer equals the scope value it was taken from. Untouched names
        are left out so writes made to the scope during the run survive.
        """
        changed = {}
        for k, v in ctx.items():
            if k.startswith('_') or k in RUNTIME_INTERNAL_NAMES or isinstance(v, types.ModuleType):
                continue
            if k in pushed and v is pushed[k] and same_value(v, snapshot[k]):
                continue
            changed[k] = v
        return changed

    async def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)
