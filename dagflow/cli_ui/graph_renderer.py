"""Terminal rendering of workflow graphs and run status using Rich."""

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from dagflow.core.graph_schema import DefinitionWithGraph, NodeType, WorkflowEdge, WorkflowNode
from dagflow.core.models import NodeStatus


def _normalize_status(status: NodeStatus | str | None) -> str:
    if isinstance(status, NodeStatus):
        return status.value
    return str(status) if status else "pending"


class TerminalGraphRenderer:
    """
    Renders a definition as a Rich tree rooted at each trigger node.

    Edges are listed in sort order; condition labels ("yes"/"no") and edge
    conditions are shown on the branch. A node reached twice on one path is
    shown as a loop marker instead of being expanded again.
    """

    NODE_STYLES = {
        NodeType.TRIGGER.value: ("[T]", "bold green"),
        NodeType.CONDITION.value: ("[?]", "magenta"),
        NodeType.ACTION.value: ("[A]", "cyan"),
        NodeType.APPROVAL.value: ("[H]", "red"),
        NodeType.DELAY.value: ("[D]", "yellow"),
        NodeType.AGENT.value: ("[G]", "blue"),
    }

    # String keys: statuses come back from the DB as plain strings too
    STATUS_COLORS = {
        "pending": "dim",
        "running": "blue bold",
        "waiting": "yellow bold",
        "completed": "green",
        "failed": "red bold",
        "skipped": "dim strikethrough",
    }

    STATUS_INDICATORS = {
        "completed": " ✓",
        "failed": " ✗",
        "running": " ⟳",
        "waiting": " ⏸",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_as_tree(
        self,
        definition: DefinitionWithGraph,
        statuses: dict[str, NodeStatus | str] | None = None,
        max_depth: int = 50,
    ) -> Tree:
        """
        Render a definition as a Rich Tree.

        Args:
            definition: The definition to render
            statuses: Optional dict of node_id -> status from a run
            max_depth: Maximum tree depth (guards against wide graphs)
        """
        state = "enabled" if definition.is_enabled else "disabled"
        tree = Tree(f"[bold]{escape(definition.name)}[/] (v{definition.version}, {state})")

        node_map = {n.id: n for n in definition.nodes}
        edge_map = definition.adjacency()

        triggers = definition.trigger_nodes()
        if not triggers:
            tree.add("[red]No trigger node: this workflow never starts[/]")
            return tree

        for trigger in triggers:
            self._add_node_to_tree(
                tree, trigger, statuses, node_map, edge_map, visited=set(), depth=0, max_depth=max_depth
            )
        return tree

    def _add_node_to_tree(
        self,
        parent: Tree,
        node: WorkflowNode,
        statuses: dict[str, NodeStatus | str] | None,
        node_map: dict[str, WorkflowNode],
        edge_map: dict[str, list[WorkflowEdge]],
        visited: set,
        depth: int = 0,
        max_depth: int = 50,
    ):
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        # Escape user-controlled names to prevent Rich markup injection
        safe_label = escape(node.name or node.id)

        if node.id in visited:
            parent.add(f"[red]↩ {safe_label} (cycle)[/]")
            return
        visited.add(node.id)

        symbol, color = self.NODE_STYLES.get(node.node_type, ("[~]", "white"))
        status = _normalize_status(statuses.get(node.id)) if statuses else None
        if status and status != "pending":
            status_color = self.STATUS_COLORS.get(status, "white")
            indicator = self.STATUS_INDICATORS.get(status, "")
            node_text = f"[{status_color}]{symbol} {safe_label}{indicator}[/]"
        else:
            node_text = f"[{color}]{symbol} {safe_label}[/]"
        if node.node_type not in self.NODE_STYLES:
            node_text += f" [dim](unknown type '{escape(node.node_type)}')[/]"

        branch = parent.add(node_text)

        for edge in edge_map.get(node.id, []):
            child = node_map.get(edge.target_node_id)
            if child is None:
                continue
            target = branch
            annotations = []
            if edge.label:
                annotations.append(escape(edge.label))
            if edge.condition_expr:
                expr = edge.condition_expr
                value = escape(str(expr.get("value"))[:50])
                annotations.append(
                    f"{escape(str(expr.get('field')))} {escape(str(expr.get('operator')))} {value}"
                )
            if annotations:
                target = branch.add(f"[dim]({'; '.join(annotations)})[/]")
            self._add_node_to_tree(
                target, child, statuses, node_map, edge_map, visited.copy(), depth + 1, max_depth
            )


class StatusTableRenderer:
    """Renders the node executions of a run as a Rich table.

    All user-controlled strings are escaped to prevent Rich markup injection.
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_status_table(
        self,
        definition: DefinitionWithGraph | None,
        execution_id: str,
        statuses: dict[str, NodeStatus | str],
        outputs: dict[str, Any] | None = None,
        errors: dict[str, str | None] | None = None,
    ) -> Table:
        table = Table(title=f"Execution: {escape(execution_id[:8])}...")

        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Output", max_width=40)

        node_map = {n.id: n for n in definition.nodes} if definition else {}
        for node_id, raw_status in statuses.items():
            node = node_map.get(node_id)
            status = _normalize_status(raw_status)
            val = outputs.get(node_id) if outputs else None
            error = errors.get(node_id) if errors else None
            output = error if error else (val if val is not None else "")

            if status == "completed":
                status_text = "[green]✓ Completed[/]"
            elif status == "failed":
                status_text = "[red]✗ Failed[/]"
            elif status == "running":
                status_text = "[blue]⟳ Running[/]"
            elif status == "waiting":
                status_text = "[yellow]⏸ Waiting[/]"
            elif status == "skipped":
                status_text = "[dim]⊘ Skipped[/]"
            else:
                status_text = "[dim]○ Pending[/]"

            output_str = escape(str(output))
            if len(output_str) > 40:
                output_str = output_str[:37] + "..."

            table.add_row(
                escape(node.name if node else node_id),
                escape(node.node_type) if node else "?",
                status_text,
                output_str,
            )

        return table
