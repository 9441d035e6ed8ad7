"""CLI routing and terminal rendering."""

from quality_gate.ui.cli import CLIError, build_parser, run_cli
from quality_gate.ui.render import CLIRenderer, create_renderer

__all__ = ["CLIError", "CLIRenderer", "build_parser", "create_renderer", "run_cli"]
