"""Terminal rendering of workflow graphs and run status using Rich."""

import json
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from flowcore.core.graph_schema import Edge, Node, WorkflowDocument
from flowcore.core.models import ExecutionStatus


class TerminalGraphRenderer:
    """
    Renders workflow documents as a Rich tree.

    Features:
    - One branch per entry node (nodes without incoming edges)
    - Trigger nodes highlighted
    - Branch handles shown as edge labels
    - Nodes reachable through several paths are expanded once per path
    """

    STATUS_COLORS = {
        "initial": "dim",
        "loading": "blue bold",
        "success": "green",
        "error": "red bold",
    }

    STATUS_MARKS = {"loading": " ⟳", "success": " ✓", "error": " ✗"}

    @staticmethod
    def _normalize_status(status: ExecutionStatus | str | None) -> str:
        """Normalize status to string (the database returns plain strings)."""
        if isinstance(status, ExecutionStatus):
            return status.value
        return str(status) if status else "initial"

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_as_tree(
        self,
        document: WorkflowDocument,
        statuses: dict[str, ExecutionStatus | str] | None = None,
        max_depth: int = 50,
    ) -> Tree:
        # SECURITY: Escape user-controlled names to prevent Rich markup injection
        tree = Tree(f"[bold]{escape(document.name)}[/] ({escape(document.id)})")

        node_map = {n.id: n for n in document.nodes}
        edge_map: dict[str, list[Edge]] = {n.id: [] for n in document.nodes}
        for edge in document.edges:
            if edge.source in edge_map:
                edge_map[edge.source].append(edge)

        targets = {e.target for e in document.edges}
        entries = [n for n in document.nodes if n.id not in targets]
        if not entries:
            tree.add("[red]Error: no entry node (every node has an incoming edge)[/]")
            return tree

        for entry in entries:
            self._add_node_to_tree(tree, entry, statuses, node_map, edge_map, set(), 0, max_depth)
        return tree

    def _node_text(self, node: Node, statuses: dict[str, Any] | None) -> str:
        label = escape(node.id)
        if node.variable_name:
            label += f" [dim]→ {escape(node.variable_name)}[/]"
        kind = escape(node.type.value)

        status = self._normalize_status(statuses.get(node.id)) if statuses else "initial"
        if status != "initial":
            color = self.STATUS_COLORS.get(status, "white")
            return f"[{color}]{label} ({kind}){self.STATUS_MARKS.get(status, '')}[/]"
        color = "yellow" if node.type.is_trigger else "cyan"
        return f"[{color}]{label}[/] [dim]({kind})[/]"

    def _add_node_to_tree(
        self,
        parent: Tree,
        node: Node,
        statuses: dict[str, Any] | None,
        node_map: dict[str, Node],
        edge_map: dict[str, list[Edge]],
        visited: set[str],
        depth: int,
        max_depth: int,
    ) -> None:
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        if node.id in visited:
            parent.add(f"[dim]↩ {escape(node.id)} (cycle)[/]")
            return
        visited.add(node.id)

        branch = parent.add(self._node_text(node, statuses))
        for edge in edge_map.get(node.id, []):
            child = node_map.get(edge.target)
            if child is None:
                continue
            holder = branch
            if edge.source_handle:
                holder = branch.add(f"[dim]({escape(edge.source_handle)})[/]")
            self._add_node_to_tree(
                holder, child, statuses, node_map, edge_map, visited.copy(), depth + 1, max_depth
            )


class StatusTableRenderer:
    """Renders node execution status as a Rich table.

    SECURITY: All user-controlled strings (node ids, outputs, run id) are escaped
    to prevent Rich markup injection.
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_status_table(
        self,
        document: WorkflowDocument,
        run_id: str,
        statuses: dict[str, ExecutionStatus | str],
        context: dict[str, Any] | None = None,
    ) -> Table:
        table = Table(title=f"Run: {escape(run_id[:8])}...")

        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Output", max_width=40)

        for node in document.nodes:
            status = TerminalGraphRenderer._normalize_status(statuses.get(node.id))

            output = ""
            if context and node.variable_name and node.variable_name in context:
                value = context[node.variable_name]
                output = value if isinstance(value, str) else json.dumps(value, default=str)

            if status == "success":
                status_text = "[green]✓ Success[/]"
            elif status == "error":
                status_text = "[red]✗ Error[/]"
            elif status == "loading":
                status_text = "[blue]⟳ Loading[/]"
            else:
                status_text = "[dim]○ Initial[/]"

            output_str = escape(output)
            if len(output_str) > 40:
                output_str = output_str[:37] + "..."

            table.add_row(escape(node.id), node.type.value, status_text, output_str)

        return table
