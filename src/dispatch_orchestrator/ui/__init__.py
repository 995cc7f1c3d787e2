"""Command-line surface: argparse router plus plain-text rendering."""

from dispatch_orchestrator.ui.cli import CLIError, build_parser, run_cli
from dispatch_orchestrator.ui.render import CLIRenderer

__all__ = ["CLIError", "CLIRenderer", "build_parser", "run_cli"]
