"""
FlowSheet Configuration - Messages, names and runtime settings.

Module-level constants are the fixed strings the core hands back to blocks.
RuntimeSettings carries the tunables and can be read from the environment:

    FLOWSHEET_SCRIPT_TIMEOUT   seconds before a script run is stopped (0 = never)
    FLOWSHEET_R_EXECUTABLE     path or name of the R executable
    FLOWSHEET_LOG_LEVEL        logging level name for setup_logging()
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

# Output of a script that ran but printed nothing
NO_OUTPUT_MESSAGE = "Executed successfully (no output)"

RUNTIME_LOADING_MESSAGES = {
    "numeric": "Error: Python is still loading...",
    "statistical": "Error: R is still loading...",
}
RUNTIME_FAILED_MESSAGES = {
    "numeric": "Error: Python runtime failed to load and is unavailable",
    "statistical": "Error: R runtime failed to load and is unavailable",
}
UNSUPPORTED_LANGUAGE_MESSAGE = "Error: Unsupported language"

# Globals of the numeric sandbox that are never pulled back into the scope
RUNTIME_INTERNAL_NAMES = frozenset({
    "torch", "math", "statistics", "random", "builtins", "micropip", "pyodide", "js",
})

DEFAULT_SCRIPT_TIMEOUT = 60.0
DEFAULT_R_EXECUTABLE = "R"


@dataclass
class RuntimeSettings:
    """Tunables shared by the script bridge and both runtimes."""
    script_timeout: Optional[float] = DEFAULT_SCRIPT_TIMEOUT
    r_executable: str = DEFAULT_R_EXECUTABLE
    log_level: int = logging.INFO

    @classmethod
    def from_env(cls, environ=None) -> "RuntimeSettings":
        environ = os.environ if environ is None else environ
        settings = cls()

        raw_timeout = environ.get("FLOWSHEET_SCRIPT_TIMEOUT")
        if raw_timeout:
            try:
                timeout = float(raw_timeout)
            except ValueError:
                logger.warning("Ignoring invalid FLOWSHEET_SCRIPT_TIMEOUT=%r", raw_timeout)
            else:
                settings.script_timeout = timeout if timeout > 0 else None

        settings.r_executable = environ.get("FLOWSHEET_R_EXECUTABLE", settings.r_executable)

        raw_level = environ.get("FLOWSHEET_LOG_LEVEL")
        if raw_level:
            level = logging.getLevelName(raw_level.upper())
            if isinstance(level, int):
                settings.log_level = level
            else:
                logger.warning("Ignoring unknown FLOWSHEET_LOG_LEVEL=%r", raw_level)

        return settings
