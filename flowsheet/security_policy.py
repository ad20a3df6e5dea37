"""
FlowSheet Security Policy - Whitelisting for the numeric script sandbox.
"""
import ast

from .errors import CodeSafetyError

# Modules a script may import
ALLOWED_MODULES = [
    'math', 'cmath', 'statistics', 'random', 'itertools', 'functools',
    'collections', 'json', 're', 'fractions', 'decimal', 'string', 'torch',
]
# Whitelisted built-ins for Python
SAFE_BUILTINS = [
    'range', 'len', 'list', 'dict', 'tuple', 'set', 'frozenset', 'int', 'float', 'str',
    'complex', 'zip', 'enumerate', 'isinstance', 'type', 'print', 'bool', 'iter', 'next',
    'min', 'max', 'sum', 'round', 'abs', 'any', 'all', 'sorted', 'reversed', 'slice',
    'map', 'filter', 'divmod', 'pow', 'repr', 'format', 'chr', 'ord', 'hash', 'callable',
    'Exception', 'ValueError', 'TypeError', 'KeyError', 'IndexError', 'ZeroDivisionError',
    'ArithmeticError', 'RuntimeError', 'StopIteration', 'AssertionError', 'NameError',
    'True', 'False', 'None',
]
FORBIDDEN_BUILTINS = [
    'eval', 'exec', 'compile', 'open', 'input', 'globals', 'locals', 'vars',
    'getattr', 'setattr', 'delattr', 'breakpoint', 'memoryview', 'help', 'exit', 'quit',
    '__import__',
]
# torch entry points that reach the network, the filesystem or native code.
# Rejected on any object, since `torch` can be reached under other names.
FORBIDDEN_ATTRIBUTES = [
    'hub', 'load', 'save', 'ops', 'classes', 'library', 'utils', 'jit', 'cuda',
    'serialization', 'from_file', 'package', 'multiprocessing', 'distributed',
]


def _is_torch(module):
    return module == 'torch' or module.startswith('torch.')


class CodeSafetyValidator(ast.NodeVisitor):
    """Rejects script code the sandbox does not allow, before it runs."""

    def visit_Import(self, node):
        for alias in node.names:
            self._check_module(alias.name)
        self.generic_visit(node)

    def visit_ImportFrom(self, node):
        if node.level:
            raise CodeSafetyError("Forbidden syntax: relative import")
        self._check_module(node.module or '')
        for alias in node.names:
            if alias.name == '*' or alias.name.startswith('_') or (
                    _is_torch(node.module) and alias.name in FORBIDDEN_ATTRIBUTES):
                raise CodeSafetyError(f"Forbidden import of '{alias.name}' from '{node.module}'")
        self.generic_visit(node)

    def _check_module(self, name):
        parts = name.split('.')
        if parts[0] not in ALLOWED_MODULES:
            raise CodeSafetyError(f"Forbidden syntax: import of module '{name}'")
        if parts[0] == 'torch' and any(p in FORBIDDEN_ATTRIBUTES for p in parts[1:]):
            raise CodeSafetyError(f"Forbidden syntax: import of module '{name}'")

    def visit_Name(self, node):
        if node.id in FORBIDDEN_BUILTINS:
            raise CodeSafetyError(f"Use of forbidden built-in '{node.id}'")
        if node.id.startswith('__') and node.id.endswith('__'):
            raise CodeSafetyError(f"Access to private attribute '{node.id}'")
        self.generic_visit(node)

    def visit_Attribute(self, node):
        if node.attr.startswith('_'):
            raise CodeSafetyError(f"Access to private attribute '{node.attr}'")
        if node.attr in FORBIDDEN_ATTRIBUTES:
            raise CodeSafetyError(f"Access to forbidden attribute '{node.attr}'")
        self.generic_visit(node)

    def _forbidden(self, node):
        raise CodeSafetyError(f"Forbidden syntax: {type(node).__name__}")

    visit_ClassDef = _forbidden
    visit_With = _forbidden
    visit_AsyncWith = _forbidden
    visit_AsyncFunctionDef = _forbidden
    visit_Await = _forbidden
    visit_Global = _forbidden
    visit_Nonlocal = _forbidden


def check_code(tree):
    """Raise CodeSafetyError if the parsed script breaks the policy."""
    CodeSafetyValidator().visit(tree)
    return tree


def safe_import(name, globals=None, locals=None, fromlist=(), level=0):
    """`__import__` replacement installed in the sandbox builtins."""
    if level:
        raise CodeSafetyError("Forbidden syntax: relative import")
    CodeSafetyValidator()._check_module(name)
    for item in fromlist or ():
        if _is_torch(name) and item in FORBIDDEN_ATTRIBUTES:
            raise CodeSafetyError(f"Forbidden import of '{item}' from '{name}'")
    return __import__(name, globals, locals, fromlist, level)
