"""
FlowSheet Script Bridge - Uniform entry point to both script runtimes.

    bridge = ScriptBridge(scope)
    bridge.start()                        # fire-and-forget, once per session
    output = await bridge.run("x = 5", "numeric")

`run` never raises. Only one run per runtime kind should be in flight at a
time; the bridge does not queue or reject overlapping calls itself.
"""
import asyncio
import logging

from .config import UNSUPPORTED_LANGUAGE_MESSAGE, RuntimeSettings
from .numeric_runtime import NumericRuntime
from .statistical_runtime import StatisticalRuntime

logger = logging.getLogger(__name__)

KIND_ALIASES = {
    'numeric': 'numeric',
    'python': 'numeric',
    'statistical': 'statistical',
    'r': 'statistical',
}


class ScriptBridge:
    """
    Owns one numeric and one statistical runtime and the scope they share.

    Attributes:
        scope: The ScopeStore synchronized around every run.
        runtimes: {'numeric': NumericRuntime, 'statistical': StatisticalRuntime}
    """
    def __init__(self, scope, numeric=None, statistical=None, settings=None):
        self.scope = scope
        self.settings = settings or RuntimeSettings()
        self.runtimes = {
            'numeric': numeric or NumericRuntime(self.settings),
            'statistical': statistical or StatisticalRuntime(self.settings),
        }

    def start(self):
        """Kick off initialization of every runtime. Failures stay local to their runtime."""
        return [runtime.start() for runtime in self.runtimes.values()]

    async def wait_settled(self):
        """Wait until every runtime is either ready or failed."""
        await asyncio.gather(*(runtime.initialize() for runtime in self.runtimes.values()))
        return {kind: runtime.state for kind, runtime in self.runtimes.items()}

    @property
    def numeric_ready(self):
        return self.runtimes['numeric'].ready

    @property
    def statistical_ready(self):
        return self.runtimes['statistical'].ready

    def runtime(self, kind):
        name = KIND_ALIASES.get(str(kind).lower())
        return self.runtimes.get(name) if name else None

    async def run(self, code, kind='numeric'):
        """Execute `code` in the runtime for `kind` and return its output text."""
        runtime = self.runtime(kind)
        if runtime is None:
            logger.warning("Script for unsupported language %r ignored", kind)
            return UNSUPPORTED_LANGUAGE_MESSAGE
        return await runtime.run(code, self.scope)

    async def close(self):
        for runtime in self.runtimes.values():
            try:
                await runtime.close()
            except Exception:
                logger.exception("Closing %s runtime failed", runtime.kind)
