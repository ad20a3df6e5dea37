"""
FlowSheet Formula Evaluator.

Parses formula text with Python's 'ast' module and evaluates it directly
against a scope snapshot. Array-valued scope entries are converted to torch
tensors first so indexing and linear algebra behave like matrices.

Conventions:
    - `^` is exponentiation (same as `**`), `@` is matrix product.
    - Indexing is 0-based for tensors and lists alike.
    - `true`, `false`, `null`, `pi`, `e`, `tau`, `inf`, `nan` are literals.
"""
import ast
import logging
import math
import operator
import re
from collections import namedtuple

import torch

from .errors import ERROR, EvaluationError, is_error

logger = logging.getLogger(__name__)

CONSTANTS = {
    'pi': math.pi,
    'e': math.e,
    'tau': math.tau,
    'inf': math.inf,
    'nan': math.nan,
    'true': True,
    'false': False,
    'null': None,
}

# Largest integer exponent evaluated exactly; bigger ones would stall the UI
MAX_INT_EXPONENT = 10000

# Integers longer than this many bits display in scientific notation
LONG_INT_BITS = 13000

INTEGER = re.compile(r"[+-]?\d+", re.ASCII)
DECIMAL = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?", re.ASCII)

LineResult = namedtuple('LineResult', ['lineno', 'source', 'value'])


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_number(value):
    """
    Number for a numeric cell ("3", " 2.5 ", "1e3", 4), else None.

    Only plain decimal notation counts: "1_000", "nan" and "inf" stay text.
    """
    if _is_number(value):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if INTEGER.fullmatch(text):
        try:
            return int(text)
        except ValueError:
            # more digits than int() accepts
            return None
    if DECIMAL.fullmatch(text):
        return float(text)
    return None


def _numeric_cells(value):
    """Nested list of numbers for a rectangular 1-D/2-D numeric array, else None."""
    if all(not isinstance(v, (list, tuple)) for v in value):
        row = [parse_number(v) for v in value]
        return None if any(v is None for v in row) else row

    if not all(isinstance(r, (list, tuple)) for r in value):
        return None
    width = len(value[0])
    rows = []
    for r in value:
        if len(r) != width or any(isinstance(v, (list, tuple)) for v in r):
            return None
        row = [parse_number(v) for v in r]
        if any(v is None for v in row):
            return None
        rows.append(row)
    return rows


def to_matrix(value):
    """
    Convert an array scope entry to a tensor.

    Rectangular 1-D/2-D arrays of numbers (or numeric strings, as produced by
    table blocks) become int64 or float64 tensors. Anything else, including
    ragged or textual arrays, is returned unchanged.
    """
    if torch.is_tensor(value) or not isinstance(value, (list, tuple)) or not value:
        return value
    cells = _numeric_cells(value)
    if cells is None:
        return value
    flat = cells if not cells or not isinstance(cells[0], list) else [v for row in cells for v in row]
    dtype = torch.float64 if any(isinstance(v, float) for v in flat) else torch.int64
    try:
        return torch.tensor(cells, dtype=dtype)
    except (OverflowError, RuntimeError):
        return value


def matrix_scope(scope):
    """Copy of `scope` with every array entry converted by to_matrix()."""
    return {k: to_matrix(v) for k, v in (scope or {}).items()}


def _as_float(t):
    return t if t.is_floating_point() else t.to(torch.float64)


def _finalize(value):
    if torch.is_tensor(value) and value.dim() == 0:
        return value.item()
    return value


def _array(items):
    """Build the value of a list literal."""
    items = [_finalize(v) for v in items]
    if items and all(torch.is_tensor(v) for v in items):
        shapes = {tuple(v.shape) for v in items}
        if len(shapes) == 1:
            if len({v.dtype for v in items}) > 1:
                items = [_as_float(v) for v in items]
            return torch.stack(items)
    if items and all(_is_number(v) for v in items):
        return to_matrix(items)
    return items


def _elementwise(name, tensor_name=None):
    scalar_fn = getattr(math, name)
    tensor_fn = getattr(torch, tensor_name or name)

    def fn(x):
        x = to_matrix(x)
        if torch.is_tensor(x):
            return tensor_fn(_as_float(x))
        return scalar_fn(x)
    fn.__name__ = name
    return fn


def _reduction(tensor_fn, scalar_fn, needs_float=False):
    def fn(*args):
        if len(args) == 1:
            x = to_matrix(args[0])
            if torch.is_tensor(x):
                return tensor_fn(_as_float(x) if needs_float else x)
            if isinstance(x, (list, tuple)):
                return scalar_fn(list(x))
            return scalar_fn([x])
        return scalar_fn([_finalize(a) for a in args])
    return fn


def _mean(values):
    return math.fsum(values) / len(values)


def _abs(x):
    x = to_matrix(x)
    return torch.abs(x) if torch.is_tensor(x) else abs(x)


def _round(x, ndigits=0):
    x = to_matrix(x)
    if torch.is_tensor(x):
        return torch.round(_as_float(x), decimals=int(ndigits))
    return round(x, int(ndigits)) if ndigits else round(x)


def _log(x, base=None):
    x = to_matrix(x)
    if torch.is_tensor(x):
        result = torch.log(_as_float(x))
        return result / math.log(base) if base is not None else result
    return math.log(x) if base is None else math.log(x, base)


def _floor(x):
    x = to_matrix(x)
    return torch.floor(x) if torch.is_tensor(x) else math.floor(x)


def _ceil(x):
    x = to_matrix(x)
    return torch.ceil(x) if torch.is_tensor(x) else math.ceil(x)


def _size(x):
    x = to_matrix(x)
    if torch.is_tensor(x):
        return torch.tensor(list(x.shape), dtype=torch.int64)
    if isinstance(x, (list, tuple)):
        return torch.tensor([len(x)], dtype=torch.int64)
    if isinstance(x, str):
        return torch.tensor([len(x)], dtype=torch.int64)
    return torch.tensor([], dtype=torch.int64)


def _transpose(x):
    x = to_matrix(x)
    if not torch.is_tensor(x):
        raise EvaluationError("transpose() needs a numeric matrix")
    return x.T if x.dim() == 2 else x


def _square(x, name):
    x = to_matrix(x)
    if not torch.is_tensor(x) or x.dim() != 2:
        raise EvaluationError(f"{name}() needs a 2-D numeric matrix")
    return _as_float(x)


def _det(x):
    return torch.linalg.det(_square(x, 'det'))


def _inv(x):
    return torch.linalg.inv(_square(x, 'inv'))


def _pair(a, b):
    a, b = to_matrix(a), to_matrix(b)
    if not (torch.is_tensor(a) and torch.is_tensor(b)):
        raise EvaluationError("vector operation needs numeric arrays")
    if a.dtype != b.dtype:
        a, b = _as_float(a), _as_float(b)
    return a, b


def _dot(a, b):
    a, b = _pair(a, b)
    return torch.dot(a.flatten(), b.flatten())


def _cross(a, b):
    a, b = _pair(a, b)
    return torch.linalg.cross(a, b)


def _filled(fill):
    def fn(rows, cols=None):
        shape = (int(rows),) if cols is None else (int(rows), int(cols))
        return torch.full(shape, float(fill), dtype=torch.float64)
    return fn


def _eye(n, m=None):
    return torch.eye(int(n), int(m) if m is not None else int(n), dtype=torch.float64)


def _range(start, stop=None, step=1):
    if stop is None:
        start, stop = 0, start
    if all(isinstance(v, int) for v in (start, stop, step)):
        return torch.arange(start, stop, step, dtype=torch.int64)
    return torch.arange(start, stop, step, dtype=torch.float64)


def _linspace(start, stop, num=50):
    return torch.linspace(float(start), float(stop), int(num), dtype=torch.float64)


def _number(x):
    parsed = parse_number(x)
    if parsed is None:
        raise EvaluationError(f"cannot convert {x!r} to a number")
    return parsed


FUNCTIONS = {
    'sqrt': _elementwise('sqrt'),
    'exp': _elementwise('exp'),
    'sin': _elementwise('sin'),
    'cos': _elementwise('cos'),
    'tan': _elementwise('tan'),
    'asin': _elementwise('asin'),
    'acos': _elementwise('acos'),
    'atan': _elementwise('atan'),
    'sinh': _elementwise('sinh'),
    'cosh': _elementwise('cosh'),
    'tanh': _elementwise('tanh'),
    'log10': _elementwise('log10'),
    'log2': _elementwise('log2'),
    'log': _log,
    'atan2': math.atan2,
    'abs': _abs,
    'floor': _floor,
    'ceil': _ceil,
    'round': _round,
    'factorial': math.factorial,
    'gcd': math.gcd,
    'lcm': math.lcm,
    'sum': _reduction(torch.sum, sum),
    'prod': _reduction(torch.prod, math.prod),
    'min': _reduction(torch.min, min),
    'max': _reduction(torch.max, max),
    'mean': _reduction(torch.mean, _mean, needs_float=True),
    'median': _reduction(torch.median, lambda v: sorted(v)[(len(v) - 1) // 2]),
    'std': _reduction(torch.std, lambda v: torch.std(torch.tensor(v, dtype=torch.float64)), needs_float=True),
    'var': _reduction(torch.var, lambda v: torch.var(torch.tensor(v, dtype=torch.float64)), needs_float=True),
    'size': _size,
    'transpose': _transpose,
    'det': _det,
    'inv': _inv,
    'dot': _dot,
    'cross': _cross,
    'zeros': _filled(0),
    'ones': _filled(1),
    'eye': _eye,
    'range': _range,
    'linspace': _linspace,
    'matrix': to_matrix,
    'number': _number,
    'string': lambda x: format_result(x),
}


def _pow(base, exponent):
    if isinstance(base, int) and isinstance(exponent, int) and abs(exponent) > MAX_INT_EXPONENT:
        raise EvaluationError(f"exponent {exponent} is too large")
    return base ** exponent


BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: _pow,
    ast.BitXor: _pow,
    ast.MatMult: operator.matmul,
}

COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}


class FormulaEvaluator:
    """
    Evaluates formula text against a scope.

    The evaluator is stateless between calls: names assigned inside a
    formula only live for the duration of that call.
    """

    def evaluate(self, expression, scope=None):
        """
        Evaluate `expression` and return its value, or ERROR.

        Blank input returns "". A multi-line formula returns the list of
        per-line results; if any line fails the whole formula is ERROR.
        """
        if expression is None or not str(expression).strip():
            return ""
        try:
            results = self.evaluate_lines(expression, scope)
        except Exception as exc:
            logger.debug("Formula %r failed: %s", expression, exc)
            return ERROR
        if any(is_error(r.value) for r in results):
            return ERROR
        if not results:
            return ""
        if len(results) == 1:
            return results[0].value
        return [r.value for r in results]

    def evaluate_lines(self, expression, scope=None):
        """
        Evaluate each non-blank line in order.

        Returns a list of LineResult(lineno, source, value). A failing line
        yields ERROR for that line and evaluation continues with the next.
        """
        names = matrix_scope(scope)
        local = {}
        results = []
        for lineno, source in enumerate(str(expression or "").splitlines(), start=1):
            if not source.strip():
                continue
            try:
                statement = self._parse_line(source)
                if statement is None:
                    continue
                value = _finalize(self._run_statement(statement, names, local))
            except Exception as exc:
                logger.debug("Formula line %d %r failed: %s", lineno, source, exc)
                value = ERROR
            results.append(LineResult(lineno, source, value))
        return results

    def referenced_names(self, expression):
        """
        Names read by `expression`, taken from the parsed tree.

        Function names in call position and names assigned by an earlier line
        of the same formula are excluded. Raises EvaluationError on syntax
        errors.
        """
        found = []
        assigned = set()
        for source in str(expression or "").splitlines():
            if not source.strip():
                continue
            statement = self._parse_line(source)
            if statement is None:
                continue
            callees = {id(n.func) for n in ast.walk(statement) if isinstance(n, ast.Call)}
            for node in ast.walk(statement.value):
                if isinstance(node, ast.Name) and id(node) not in callees:
                    if node.id not in assigned and node.id not in found:
                        found.append(node.id)
            if isinstance(statement, ast.Assign):
                assigned.add(statement.targets[0].id)
        return found

    def _parse_line(self, source):
        try:
            module = ast.parse(source.strip(), mode='exec')
        except SyntaxError as exc:
            raise EvaluationError(f"Syntax error: {exc.msg}") from exc
        if not module.body:
            # comment-only line
            return None
        if len(module.body) != 1:
            raise EvaluationError("One expression per line")
        statement = module.body[0]
        if isinstance(statement, ast.Expr):
            return statement
        if isinstance(statement, ast.Assign):
            if len(statement.targets) != 1 or not isinstance(statement.targets[0], ast.Name):
                raise EvaluationError("Only simple 'name = expression' assignments are supported")
            return statement
        raise EvaluationError(f"Unsupported statement: {type(statement).__name__}")

    def _run_statement(self, statement, names, local):
        value = self._eval_node(statement.value, names, local)
        if isinstance(statement, ast.Assign):
            local[statement.targets[0].id] = value
        return value

    def _lookup(self, name, names, local):
        if name in local:
            return local[name]
        if name in names:
            return names[name]
        if name in CONSTANTS:
            return CONSTANTS[name]
        raise EvaluationError(f"Undefined symbol {name}")

    def _eval_node(self, node, names, local):
        # 1. Literals
        if isinstance(node, ast.Constant):
            if isinstance(node.value, (int, float, complex, str, bool)) or node.value is None:
                return node.value
            raise EvaluationError(f"Unsupported literal: {node.value!r}")

        # 2. Variables
        if isinstance(node, ast.Name):
            return self._lookup(node.id, names, local)

        # 3. Binary operations (+, -, *, /, //, %, ** or ^, @)
        if isinstance(node, ast.BinOp):
            op = BIN_OPS.get(type(node.op))
            if op is None:
                raise EvaluationError(f"Unsupported operator: {type(node.op).__name__}")
            left = self._eval_node(node.left, names, local)
            right = self._eval_node(node.right, names, local)
            return op(left, right)

        # 4. Unary operations (-x, +x, not x)
        if isinstance(node, ast.UnaryOp):
            operand = self._eval_node(node.operand, names, local)
            if isinstance(node.op, ast.USub):
                return -operand
            if isinstance(node.op, ast.UAdd):
                return +operand
            if isinstance(node.op, ast.Not):
                return torch.logical_not(operand) if torch.is_tensor(operand) else not operand
            raise EvaluationError(f"Unsupported operator: {type(node.op).__name__}")

        # 5. Comparisons, possibly chained (0 < x <= 10)
        if isinstance(node, ast.Compare):
            left = self._eval_node(node.left, names, local)
            result = True
            for op_node, right_node in zip(node.ops, node.comparators):
                op = COMPARE_OPS.get(type(op_node))
                if op is None:
                    raise EvaluationError(f"Unsupported comparison: {type(op_node).__name__}")
                right = self._eval_node(right_node, names, local)
                current = op(left, right)
                if torch.is_tensor(current) or torch.is_tensor(result):
                    result = torch.logical_and(torch.as_tensor(result), torch.as_tensor(current))
                else:
                    result = result and current
                left = right
            return result

        # 6. Boolean logic
        if isinstance(node, ast.BoolOp):
            value = None
            for operand in node.values:
                value = self._eval_node(operand, names, local)
                if isinstance(node.op, ast.And) and not value:
                    return value
                if isinstance(node.op, ast.Or) and value:
                    return value
            return value

        # 7. Conditional (a if cond else b)
        if isinstance(node, ast.IfExp):
            if self._eval_node(node.test, names, local):
                return self._eval_node(node.body, names, local)
            return self._eval_node(node.orelse, names, local)

        # 8. Function calls (sqrt(x), sum(v), det(m), ...)
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
                name = getattr(node.func, 'id', type(node.func).__name__)
                raise EvaluationError(f"Unknown function {name}")
            if any(isinstance(a, ast.Starred) for a in node.args):
                raise EvaluationError("Argument unpacking is not supported")
            args = [self._eval_node(a, names, local) for a in node.args]
            kwargs = {k.arg: self._eval_node(k.value, names, local) for k in node.keywords if k.arg}
            return FUNCTIONS[node.func.id](*args, **kwargs)

        # 9. Array literals ([1, 2, 3], [[1, 2], [3, 4]])
        if isinstance(node, (ast.List, ast.Tuple)):
            return _array([self._eval_node(e, names, local) for e in node.elts])

        # 10. Indexing and slicing (x[0], m[1, 2], v[1:3])
        if isinstance(node, ast.Subscript):
            target = to_matrix(self._eval_node(node.value, names, local))
            index = self._eval_index(node.slice, names, local)
            if isinstance(index, tuple) and not torch.is_tensor(target):
                for part in index:
                    target = target[part]
                return target
            return target[index]

        raise EvaluationError(f"Unsupported expression component: {type(node).__name__}")

    def _eval_index(self, node, names, local):
        if isinstance(node, ast.Slice):
            parts = [self._eval_node(p, names, local) if p is not None else None
                     for p in (node.lower, node.upper, node.step)]
            return slice(*[_finalize(p) for p in parts])
        if isinstance(node, ast.Tuple):
            return tuple(self._eval_index(e, names, local) for e in node.elts)
        index = _finalize(self._eval_node(node, names, local))
        if isinstance(index, float) and index.is_integer():
            index = int(index)
        return index


def format_int(value):
    """Digits of `value`, or a 15-significant-digit scientific form for very long ints."""
    if abs(value).bit_length() <= LONG_INT_BITS:
        return str(value)
    sign = "-" if value < 0 else ""
    value = abs(value)
    exponent = int(math.log10(value))
    mantissa = value / 10 ** exponent
    if mantissa >= 10:
        mantissa /= 10
        exponent += 1
    elif mantissa < 1:
        mantissa *= 10
        exponent -= 1
    return f"{sign}{mantissa:.14g}e+{exponent}"

def _format_number(value):
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return format_int(value)
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        return f"{value:.14g}"
    return str(value)


def format_result(value):
    """Display text for an evaluation result."""
    if is_error(value):
        return "Error"
    if value is None:
        return "null"
    if isinstance(value, str):
        return value
    if torch.is_tensor(value):
        return format_result(value.tolist()) if value.dim() else _format_number(value.item())
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(format_result(v) for v in value) + "]"
    return _format_number(value)


_default = FormulaEvaluator()


def evaluate(expression, scope=None):
    """Evaluate with the shared stateless evaluator. Never raises."""
    return _default.evaluate(expression, scope)


def evaluate_lines(expression, scope=None):
    return _default.evaluate_lines(expression, scope)


def referenced_names(expression):
    return _default.referenced_names(expression)
