"""Propagate a variable rename to every node that can reference it.

When a node's ``variableName`` changes in the editor, templates in all
downstream nodes are rewritten to the new name. Nodes outside the downstream
set (the renamed node included) are returned as the same objects so callers
can diff by identity and skip redundant writes.
"""

from collections.abc import Sequence
from typing import Any

from flowcore.core.graph_schema import Edge, Node, downstream_of
from flowcore.core.templates import rename_variable


def _rename_in_data(value: Any, old_name: str, new_name: str) -> Any:
    """Recursively rewrite template strings inside node data."""
    if isinstance(value, str):
        return rename_variable(value, old_name, new_name)
    if isinstance(value, list):
        return [_rename_in_data(item, old_name, new_name) for item in value]
    if isinstance(value, dict):
        return {key: _rename_in_data(item, old_name, new_name) for key, item in value.items()}
    return value


def propagate_rename(
    source_node_id: str,
    old_name: str,
    new_name: str,
    nodes: Sequence[Node],
    edges: Sequence[Edge],
) -> Sequence[Node]:
    """Rewrite ``{{old_name...}}`` references downstream of ``source_node_id``.

    Returns ``nodes`` itself when the name did not change.
    """
    if old_name == new_name:
        return nodes

    downstream = downstream_of(source_node_id, nodes, edges)

    result = []
    for node in nodes:
        # The source's own variableName is updated by the editor, not here
        if node.id not in downstream or node.id == source_node_id:
            result.append(node)
            continue
        result.append(
            node.model_copy(update={"data": _rename_in_data(node.data, old_name, new_name)})
        )
    return result
