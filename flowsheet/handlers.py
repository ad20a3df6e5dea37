"""
FlowSheet Block Handlers - The block update protocol.

Every block kind has a handler. When a block is edited the handler

    1. persists the raw update through the owner's `on_change(partial)`,
    2. computes any derived value (formula result, table cells, ...),
    3. writes that value to the scope if the block has a variable name.

Persistence happens whether or not evaluation succeeded.
"""
from __future__ import annotations

import csv
import io
import logging
import os
import re
from typing import Callable, Optional

import torch

from .blocks import Block, BlockType, apply_update, empty_table
from .formula import format_result, parse_number
from .scope import same_value

logger = logging.getLogger(__name__)

OnChange = Callable[[dict], None]

_REGISTRY: dict[BlockType, type] = {}

PLACEHOLDER = re.compile(r'\{(\w+)\}')


def register_handler(cls):
    """Class decorator to register a handler for each block type in its KEYS."""
    keys = getattr(cls, "KEYS", None)
    if not keys:
        raise ValueError(f"{cls.__name__} must define KEYS")
    for key in keys:
        _REGISTRY[BlockType(key)] = cls
    return cls


def create_handler(block_type, context) -> "BlockHandler":
    cls = _REGISTRY.get(BlockType(block_type))
    if not cls:
        raise KeyError(f"No handler registered for block type '{block_type}'")
    return cls(context)


def _is_blank(result) -> bool:
    return isinstance(result, str) and result == ""


class BlockHandler:
    """Base handler: persistence only, no derived value."""
    KEYS: tuple = ()

    def __init__(self, context):
        self.context = context

    @property
    def scope(self):
        return self.context.scope

    def edit(self, block: Block, update: dict, on_change: OnChange) -> Block:
        block = apply_update(block, update)
        on_change(dict(update))
        self.derive(block)
        return block

    def derive(self, block: Block):
        """Compute the block's value and publish it. Returns the value or None."""
        return None

    def refresh(self, block: Block, on_change: OnChange) -> bool:
        """Re-derive after a scope change. True if the scope or the block changed."""
        return False

    def display(self, block: Block):
        return block.content

    def _publish(self, block: Block, value, only_if_changed=False) -> bool:
        name = block.target_name
        if name is None:
            return False
        if only_if_changed and name in self.scope and same_value(self.scope.get(name), value):
            return False
        self.scope.set(name, value)
        return True


@register_handler
class StaticHandler(BlockHandler):
    """Text, image and CAD blocks: content is persisted and never evaluated."""
    KEYS = (BlockType.TEXT, BlockType.IMAGE, BlockType.CAD)


@register_handler
class FormulaHandler(BlockHandler):
    """
    Formula blocks evaluate their content against the scope and publish the
    result under their variable name. A failed formula publishes ERROR so
    consumers do not keep computing with a stale value; a blank formula
    publishes nothing.
    """
    KEYS = (BlockType.FORMULA,)

    def evaluate(self, block: Block):
        return self.context.evaluate_formula(block.content)

    def derive(self, block: Block):
        result = self.evaluate(block)
        if not _is_blank(result):
            self._publish(block, result)
        return result

    def refresh(self, block: Block, on_change: OnChange) -> bool:
        result = self.evaluate(block)
        if _is_blank(result):
            return False
        return self._publish(block, result, only_if_changed=True)

    def display(self, block: Block) -> str:
        return format_result(self.evaluate(block))

    def display_lines(self, block: Block):
        """(line number, source, formatted result) for every non-blank line."""
        return [(r.lineno, r.source, format_result(r.value))
                for r in self.context.evaluate_formula_lines(block.content)]


@register_handler
class TableHandler(BlockHandler):
    """
    Table blocks publish their 2-D cell content. Cells starting with `=` are
    shown as formula results and `{name}` placeholders are filled from the
    scope; the published value is always the raw cells.
    """
    KEYS = (BlockType.TABLE,)

    def cells(self, block: Block):
        return block.content if block.content else empty_table()

    def derive(self, block: Block):
        data = [list(row) for row in self.cells(block)]
        self._publish(block, data)
        return data

    def refresh(self, block: Block, on_change: OnChange) -> bool:
        """Pull a 2-D value written to the table's variable by someone else."""
        name = block.target_name
        if name is None:
            return False
        value = self.scope.get(name)
        if torch.is_tensor(value) and value.dim() == 2:
            value = value.tolist()
        if not (isinstance(value, list) and value and all(isinstance(row, list) for row in value)):
            return False
        if same_value(value, block.content):
            return False
        on_change({'content': [list(row) for row in value]})
        return True

    def cell_display(self, cell) -> str:
        if cell is None or cell == '':
            return ''
        if not isinstance(cell, str):
            return format_result(cell)
        if cell.startswith('='):
            return format_result(self.context.evaluate_formula(cell[1:]))

        def interpolate(match):
            value = self.scope.get(match.group(1))
            return match.group(0) if value is None else format_result(value)
        return PLACEHOLDER.sub(interpolate, cell)

    def display(self, block: Block):
        return [[self.cell_display(c) for c in row] for row in self.cells(block)]

    def set_cell(self, block: Block, row: int, col: int, value, on_change: OnChange) -> Block:
        data = [list(r) for r in self.cells(block)]
        data[row][col] = value
        return self.edit(block, {'content': data}, on_change)

    def add_row(self, block: Block, on_change: OnChange) -> Block:
        data = [list(r) for r in self.cells(block)]
        cols = len(data[0]) if data else 3
        data.append(['' for _ in range(cols)])
        return self.edit(block, {'content': data}, on_change)

    def add_column(self, block: Block, on_change: OnChange) -> Block:
        data = [list(r) + [''] for r in self.cells(block)]
        return self.edit(block, {'content': data}, on_change)


def _cell(value: str):
    """Keep numbers numeric, everything else as text."""
    if not value.strip():
        return ''
    number = parse_number(value)
    return value if number is None else number


@register_handler
class DataImportHandler(BlockHandler):
    """
    Data-import blocks hold a parsed workbook:

        {"sheets": ["results"], "results": [[...], ...]}

    The whole workbook is published under the variable name.
    """
    KEYS = (BlockType.DATA,)

    def derive(self, block: Block):
        if block.data:
            self._publish(block, block.data)
        return block.data

    @staticmethod
    def parse_csv(text: str, sheet_name: str = "Sheet1", delimiter: Optional[str] = None) -> dict:
        if delimiter is None:
            try:
                delimiter = csv.Sniffer().sniff(text[:4096], delimiters=",;\t").delimiter
            except csv.Error:
                delimiter = ","
        rows = [[_cell(v) for v in row] for row in csv.reader(io.StringIO(text), delimiter=delimiter)]
        width = max((len(r) for r in rows), default=0)
        rows = [r + [''] * (width - len(r)) for r in rows]
        return {"sheets": [sheet_name], sheet_name: rows}

    def import_csv(self, block: Block, text: str, file_name: str, on_change: OnChange) -> Block:
        sheet = os.path.splitext(os.path.basename(file_name))[0] or "Sheet1"
        data = self.parse_csv(text, sheet)
        logger.info("Imported %s: %d rows", file_name, len(data[sheet]))
        return self.edit(block, {'file_name': file_name, 'data': data, 'selected_sheet': sheet}, on_change)

    def select_sheet(self, block: Block, sheet: str, on_change: OnChange) -> Block:
        if not block.data or sheet not in block.data.get("sheets", []):
            raise KeyError(f"No sheet named '{sheet}'")
        return self.edit(block, {'selected_sheet': sheet}, on_change)

    def display(self, block: Block, limit: int = 5):
        """Preview of the first rows of the selected sheet."""
        if not block.data or not block.selected_sheet:
            return []
        return block.data.get(block.selected_sheet, [])[:limit]


@register_handler
class ScriptHandler(BlockHandler):
    """
    Script blocks persist their code on edit and only execute on `run`.
    Scope synchronization is done by the script bridge.
    """
    KEYS = (BlockType.SCRIPT,)

    def can_run(self, block: Block) -> bool:
        runtime = self.context.bridge.runtime(block.language)
        return runtime is not None and runtime.ready

    async def run(self, block: Block, on_change: OnChange) -> str:
        output = await self.context.run_script(block.content, block.language)
        on_change({'output': output})
        return output

    def display(self, block: Block):
        return block.output or ''
