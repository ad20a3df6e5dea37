"""
FlowSheet Foreign Runtimes - Shared lifecycle of script interpreters.

Each runtime kind is a small state machine:

    uninitialized -> loading -> ready
                             -> failed   (terminal, never retried)

Initialization is started once and runs in the background. `run` never
waits for it: a script submitted early gets a "still loading" message.
"""
import asyncio
import enum
import logging

from .config import (
    NO_OUTPUT_MESSAGE,
    RUNTIME_FAILED_MESSAGES,
    RUNTIME_LOADING_MESSAGES,
    RuntimeSettings,
)
from .errors import RuntimeInitializationFailure, RuntimeNotReady, ScriptTimeout

logger = logging.getLogger(__name__)


class RuntimeState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


def format_output(chunks):
    """Join captured output; a silent run reports NO_OUTPUT_MESSAGE."""
    text = "\n".join(chunks)
    return text if text.strip() else NO_OUTPUT_MESSAGE


class ForeignRuntime:
    """
    Base class of the numeric (Python) and statistical (R) runtimes.

    Subclasses implement `_start()` and `_execute(code, scope, output)`;
    everything here guarantees that no exception leaves `run`.
    """
    kind = None

    def __init__(self, settings=None):
        self.settings = settings or RuntimeSettings()
        self.state = RuntimeState.UNINITIALIZED
        self.failure = None
        self._init_task = None

    @property
    def ready(self):
        return self.state is RuntimeState.READY

    def start(self):
        """Begin initialization in the background (once). Returns the task."""
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._load())
        return self._init_task

    async def initialize(self):
        """Start initialization if needed and wait for it to settle."""
        await asyncio.shield(self.start())
        return self.ready

    def _set_state(self, state):
        logger.info("%s runtime: %s -> %s", self.kind, self.state.value, state.value)
        self.state = state

    async def _load(self):
        self._set_state(RuntimeState.LOADING)
        try:
            await self._start()
        except Exception as exc:
            self.failure = exc if isinstance(exc, RuntimeInitializationFailure) \
                else RuntimeInitializationFailure(str(exc))
            logger.error("Failed to load %s runtime: %s", self.kind, exc)
            self._set_state(RuntimeState.FAILED)
        else:
            self._set_state(RuntimeState.READY)

    async def _start(self):
        raise NotImplementedError

    async def _execute(self, code, scope, output):
        raise NotImplementedError

    def not_ready_message(self):
        if self.state is RuntimeState.FAILED:
            return RUNTIME_FAILED_MESSAGES[self.kind]
        return RUNTIME_LOADING_MESSAGES[self.kind]

    def check_ready(self):
        """Raise RuntimeNotReady, carrying the message for the block, unless ready."""
        if not self.ready:
            raise RuntimeNotReady(self.not_ready_message())

    async def run(self, code, scope):
        """
        Execute `code` with `scope` synchronized around it.

        Returns the captured output as one string. Errors, including
        timeouts, come back as an `Error: <message>` line.
        """
        try:
            self.check_ready()
        except RuntimeNotReady as exc:
            logger.debug("%s runtime not ready (%s), script skipped", self.kind, self.state.value)
            return str(exc)

        output = []
        try:
            await self._execute(code, scope, output)
        except ScriptTimeout as exc:
            logger.warning("%s script stopped: %s", self.kind, exc)
            output.append(f"Error: {exc}")
        except Exception as exc:
            logger.debug("%s script raised %s: %s", self.kind, type(exc).__name__, exc)
            output.append(f"Error: {exc}")
        return format_output(output)

    async def close(self):
        """Release the interpreter. The runtime cannot be restarted afterwards."""
