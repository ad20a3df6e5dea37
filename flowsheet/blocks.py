"""
FlowSheet Blocks - The records placed on the canvas.

Only the fields the computation core reads are modelled: the block kind,
its persisted content and, for value-producing kinds, the variable name its
result is written to.
"""
from __future__ import annotations

import copy
import enum
import uuid
from dataclasses import dataclass, field, fields, replace
from typing import Any, Optional


class BlockType(str, enum.Enum):
    TEXT = "text"
    SCRIPT = "script"
    FORMULA = "formula"
    TABLE = "table"
    IMAGE = "image"
    DATA = "data"
    CAD = "cad"


# Kinds that may carry a variable name
PRODUCER_TYPES = frozenset({BlockType.FORMULA, BlockType.TABLE, BlockType.DATA})


def empty_table(rows: int = 3, cols: int = 3) -> list[list[str]]:
    return [['' for _ in range(cols)] for _ in range(rows)]


@dataclass
class Block:
    """One canvas block. `content` depends on `type` (text, code, 2-D cells, ...)."""
    type: BlockType
    content: Any = ""
    variable_name: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    # script blocks
    output: Optional[str] = None
    language: str = "python"
    # data-import blocks
    file_name: Optional[str] = None
    data: Optional[dict] = None
    selected_sheet: Optional[str] = None

    def __post_init__(self):
        self.type = BlockType(self.type)

    @property
    def target_name(self) -> Optional[str]:
        """The stripped variable name, or None if the block writes nothing."""
        if self.type not in PRODUCER_TYPES or not self.variable_name:
            return None
        name = self.variable_name.strip()
        return name or None


_DEFAULT_CONTENT = {
    BlockType.TEXT: "",
    BlockType.SCRIPT: "",
    BlockType.FORMULA: "",
    BlockType.TABLE: empty_table(),
    BlockType.IMAGE: "",
    BlockType.DATA: [],
    BlockType.CAD: "",
}

_UPDATABLE_FIELDS = frozenset(f.name for f in fields(Block)) - {'id', 'type'}


def create_block(block_type, content=None, variable_name=None, **extra) -> Block:
    """A new block of `block_type` with the default content for its kind."""
    block_type = BlockType(block_type)
    if content is None:
        content = copy.deepcopy(_DEFAULT_CONTENT[block_type])
    return Block(type=block_type, content=content, variable_name=variable_name, **extra)


def apply_update(block: Block, update: dict) -> Block:
    """Copy of `block` with the partial `update` applied. `id` and `type` are fixed."""
    unknown = set(update) - _UPDATABLE_FIELDS
    if unknown:
        raise KeyError(f"Unknown block field(s): {', '.join(sorted(unknown))}")
    return replace(block, **update)
