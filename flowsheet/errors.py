"""
FlowSheet Errors - Failure taxonomy of the computation core.

Every exception here is raised inside the core and converted to a value
(the ERROR sentinel or an output string) before it reaches a block.
"""


class FlowSheetError(Exception):
    """Base class for all core failures."""


class EvaluationError(FlowSheetError):
    """A formula could not be parsed or evaluated."""


class CodeSafetyError(FlowSheetError):
    """Script code uses syntax or names the numeric sandbox forbids."""


class RuntimeNotReady(FlowSheetError):
    """A script was submitted before its runtime finished loading."""


class RuntimeInitializationFailure(FlowSheetError):
    """A foreign runtime failed to load. Terminal for that runtime kind."""


class ScriptExecutionError(FlowSheetError):
    """User code raised inside a foreign runtime."""


class ScriptTimeout(ScriptExecutionError):
    """A script ran longer than the configured timeout and was stopped."""

    def __init__(self, seconds):
        super().__init__(f"Script timed out after {seconds:g} seconds")
        self.seconds = seconds


class ErrorMarker:
    """
    The evaluation sentinel.

    Returned in place of a value whenever formula evaluation fails. There is
    exactly one instance, ERROR; compare with `is`.
    """
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "Error"

    def __str__(self):
        return "Error"

    def __bool__(self):
        return False

    def __reduce__(self):
        return (ErrorMarker, ())


ERROR = ErrorMarker()


def is_error(value):
    """True if `value` is the evaluation sentinel."""
    return value is ERROR
