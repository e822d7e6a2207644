"""CLI UI components for terminal-based workflow visualization.

- Workflow structure as a tree (branch handles as edge labels)
- Per-node run status tables
- Variable picker trees for the context command
"""

from flowcore.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from flowcore.cli_ui.variable_tree import render_variable_tree

__all__ = [
    "StatusTableRenderer",
    "TerminalGraphRenderer",
    "render_variable_tree",
]
