"""CLI UI components for terminal workflow visualization."""

from nodeflow.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer

__all__ = [
    "TerminalGraphRenderer",
    "StatusTableRenderer",
]
