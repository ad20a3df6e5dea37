"""
FlowSheet Computation Context.

The one object injected into every block handler: it owns the shared scope,
the formula evaluator and the script bridge.
"""
import logging

from .bridge import ScriptBridge
from .config import RuntimeSettings
from .formula import FormulaEvaluator
from .scope import ScopeStore

logger = logging.getLogger(__name__)


class ComputationContext:
    """
    Shared computation services for a notebook session.

    Attributes:
        scope: ScopeStore with every named value on the canvas.
        evaluator: FormulaEvaluator used by formula blocks and table cells.
        bridge: ScriptBridge running script blocks.
    """
    def __init__(self, scope=None, evaluator=None, bridge=None, settings=None):
        self.settings = settings or RuntimeSettings()
        self.scope = scope if scope is not None else ScopeStore()
        self.evaluator = evaluator or FormulaEvaluator()
        self.bridge = bridge or ScriptBridge(self.scope, settings=self.settings)

    def start(self):
        """Begin loading both script runtimes in the background."""
        logger.info("Starting script runtimes")
        return self.bridge.start()

    async def close(self):
        await self.bridge.close()

    def evaluate_formula(self, expression):
        """Evaluate against a snapshot of the current scope. Never raises."""
        return self.evaluator.evaluate(expression, self.scope.snapshot())

    def evaluate_formula_lines(self, expression):
        return self.evaluator.evaluate_lines(expression, self.scope.snapshot())

    async def run_script(self, code, language='python'):
        return await self.bridge.run(code, language)

    def update_variable(self, name, value):
        return self.scope.set(name, value)

    @property
    def scope_version(self):
        return self.scope.version

    @property
    def numeric_ready(self):
        return self.bridge.numeric_ready

    @property
    def statistical_ready(self):
        return self.bridge.statistical_ready
