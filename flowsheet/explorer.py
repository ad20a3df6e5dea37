"""
FlowSheet Variable Explorer - Text rendering of the scope for side panels.
"""
import torch

from .errors import is_error
from .formula import format_int


def format_value(value):
    """Short display form of a scope value."""
    if is_error(value):
        return "Error"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return format_int(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else f"{value:.4f}"
    if isinstance(value, str):
        return f'"{value}"'
    if torch.is_tensor(value):
        if value.dim() == 0:
            return format_value(value.item())
        return "Array[" + "x".join(str(n) for n in value.shape) + "]"
    if isinstance(value, (list, tuple)):
        if value and isinstance(value[0], (list, tuple)):
            return f"Array[{len(value)}x{len(value[0])}]"
        return f"Array[{len(value)}]"
    if isinstance(value, dict):
        return "Object"
    return str(value)


def type_name(value):
    if torch.is_tensor(value) or isinstance(value, (list, tuple)):
        return "Matrix/List"
    if is_error(value):
        return "error"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def list_variables(scope):
    """(name, type, display) for every public scope entry, sorted by name."""
    return [(name, type_name(value), format_value(value))
            for name, value in sorted(scope.items())
            if not name.startswith('_')]
