"""Rich rendering of the variable picker tree."""

from rich.markup import escape
from rich.tree import Tree

from flowcore.core.context_builder import VariableItem

TYPE_STYLES = {
    "object": ("{}", "cyan"),
    "array": ("[]", "magenta"),
    "primitive": ("·", "white"),
}


def render_variable_tree(items: list[VariableItem], title: str = "Available variables") -> Tree:
    """Tree of insertable ``{{path}}`` tokens."""
    tree = Tree(f"[bold]{escape(title)}[/]")
    if not items:
        tree.add("[dim]No variables available (no upstream node declares a variable name)[/]")
        return tree
    for item in items:
        _add_item(tree, item)
    return tree


def _add_item(parent: Tree, item: VariableItem) -> None:
    symbol, color = TYPE_STYLES[item.type]
    token = escape("{{" + item.path + "}}")
    branch = parent.add(f"[{color}]{escape(symbol)} {escape(item.label)}[/] [dim]{token}[/]")
    for child in item.children or []:
        _add_item(branch, child)
