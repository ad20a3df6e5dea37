"""
FlowSheet Dependency Resolver - Producer/consumer edges for the canvas overlay.

Edges are derived from block content alone and recomputed from scratch on
every call. They only feed the visual overlay; evaluation never consults them.
"""
import logging
import re
from dataclasses import dataclass

from .blocks import BlockType
from .errors import EvaluationError
from .formula import referenced_names

logger = logging.getLogger(__name__)

# ASCII-only, so `r²` and `πr` still mention `r`
IDENTIFIER = re.compile(r'\b[a-zA-Z_][a-zA-Z0-9_]*\b', re.ASCII)


@dataclass(frozen=True)
class DependencyEdge:
    producer_id: str
    consumer_id: str
    variable: str

    @property
    def id(self):
        return f"{self.producer_id}-{self.consumer_id}"


def tokenize(content):
    """Distinct identifier-like tokens of `content`, in order of first appearance."""
    return list(dict.fromkeys(IDENTIFIER.findall(content or "")))


def producer_index(blocks):
    """variable name -> producing block. Later blocks win on collisions."""
    index = {}
    for block in blocks:
        name = block.target_name
        if name:
            index[name] = block
    return index


def consumed_names(block, strict=False):
    if not strict:
        return tokenize(block.content)
    try:
        return referenced_names(block.content)
    except EvaluationError:
        return tokenize(block.content)


def resolve_dependencies(blocks, strict=False):
    """
    Edges (producer, consumer) for every formula block that mentions a
    name some other block produces.

    With strict=True names are read from the parsed formula instead of raw
    tokens, so text inside string literals no longer creates edges.
    """
    blocks = list(blocks)
    producers = producer_index(blocks)
    edges = []
    for block in blocks:
        if block.type is not BlockType.FORMULA or not isinstance(block.content, str):
            continue
        for name in consumed_names(block, strict):
            producer = producers.get(name)
            if producer is not None and producer.id != block.id:
                edges.append(DependencyEdge(producer.id, block.id, name))
    logger.debug("Resolved %d dependency edges over %d blocks", len(edges), len(blocks))
    return edges


def edges_to_dot(blocks, edges, name="dependencies"):
    """
    Export the dependency overlay to GraphViz DOT format.

    Args:
        blocks: Blocks to draw as nodes
        edges: DependencyEdge list from resolve_dependencies()
        name: Graph name
    Returns:
        String in DOT format
    """
    lines = [f"digraph {name} {{"]
    lines.append("  rankdir=LR;")
    lines.append("  node [shape=box, style=filled, fillcolor=lightblue];")

    for block in blocks:
        label = block.target_name or block.type.value
        color = "lightyellow" if block.target_name else "white"
        lines.append(f'  "{block.id}" [label="{label}", fillcolor={color}];')

    for edge in edges:
        lines.append(f'  "{edge.producer_id}" -> "{edge.consumer_id}" [label="{edge.variable}"];')

    lines.append("}")
    return "\n".join(lines)
