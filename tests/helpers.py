"""Builders for workflow nodes and edges shared by the test modules."""

from __future__ import annotations

from typing import Any

from flowcore.core.graph_schema import Edge, Node, NodeType


def make_node(node_id: str, node_type: NodeType = NodeType.SET_VARIABLE, **data: Any) -> Node:
    return Node(id=node_id, type=node_type, data=data)


def make_edge(source: str, target: str, handle: str | None = None) -> Edge:
    return Edge(id=f"{source}->{target}", source=source, target=target, source_handle=handle)
