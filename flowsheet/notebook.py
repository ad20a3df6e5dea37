"""
FlowSheet Notebook - Owner of the blocks on one canvas.

Stores blocks in canvas order, hands every handler an `on_change` callback
that persists partial updates, and derives the dependency overlay.
Deleting a block leaves its variable in the scope.
"""
import logging

from .blocks import BlockType, apply_update, create_block
from .context import ComputationContext
from .dependencies import resolve_dependencies
from .explorer import list_variables
from .handlers import create_handler

logger = logging.getLogger(__name__)

# Kinds re-derived by recompute()
REACTIVE_TYPES = (BlockType.TABLE, BlockType.FORMULA)


class Notebook:
    """
    Attributes:
        context: ComputationContext shared by every block.
        show_dependencies: When False, dependency_edges() is empty.
        strict_dependencies: Read consumer names from parsed formulas.
    """
    def __init__(self, context=None, show_dependencies=True, strict_dependencies=False):
        self.context = context or ComputationContext()
        self.show_dependencies = show_dependencies
        self.strict_dependencies = strict_dependencies
        self._blocks = {}
        self._handlers = {}
        self._last_version = self.context.scope_version

    @property
    def blocks(self):
        return list(self._blocks.values())

    def block(self, block_id):
        return self._blocks[block_id]

    def handler(self, block_type):
        block_type = BlockType(block_type)
        if block_type not in self._handlers:
            self._handlers[block_type] = create_handler(block_type, self.context)
        return self._handlers[block_type]

    def on_change(self, block_id):
        """Persistence callback for one block: applies partial updates in place."""
        def persist(update):
            self._blocks[block_id] = apply_update(self._blocks[block_id], update)
        return persist

    def add_block(self, block_type, content=None, variable_name=None, **extra):
        block = create_block(block_type, content, variable_name, **extra)
        self._blocks[block.id] = block
        self.handler(block.type).derive(block)
        logger.debug("Added %s block %s", block.type.value, block.id)
        return block

    def update_block(self, block_id, **update):
        """Apply a user edit through the block's handler."""
        block = self._blocks[block_id]
        return self.handler(block.type).edit(block, update, self.on_change(block_id))

    def remove_block(self, block_id):
        # the variable it produced stays in the scope
        return self._blocks.pop(block_id)

    async def run_script(self, block_id):
        block = self._blocks[block_id]
        if block.type is not BlockType.SCRIPT:
            raise ValueError(f"Block {block_id} is a {block.type.value} block, not a script")
        return await self.handler(block.type).run(block, self.on_change(block_id))

    def display(self, block_id):
        block = self._blocks[block_id]
        return self.handler(block.type).display(block)

    @property
    def stale(self):
        """True if the scope changed since the last recompute()."""
        return self.context.scope_version != self._last_version

    def recompute(self):
        """
        One pass over tables and formulas in canvas order.

        Each block re-derives from the scope as it is when its turn comes.
        A single pass is made even if it changes the scope again, so cyclic
        formulas cannot loop; call again while `stale` to settle chains
        declared out of order, or use settle().
        """
        version = self.context.scope_version
        changed = []
        for block in self.blocks:
            if block.type not in REACTIVE_TYPES:
                continue
            if self.handler(block.type).refresh(block, self.on_change(block.id)):
                changed.append(block.id)
        self._last_version = version
        return changed

    def settle(self, max_passes=10):
        """Recompute until the scope stops changing, at most `max_passes` times."""
        passes = 0
        while self.stale and passes < max_passes:
            self.recompute()
            passes += 1
        if self.stale:
            logger.warning("Scope still changing after %d passes; formulas may be cyclic", passes)
        return passes

    def dependency_edges(self):
        if not self.show_dependencies:
            return []
        return resolve_dependencies(self.blocks, strict=self.strict_dependencies)

    def variables(self):
        return list_variables(self.context.scope)
