"""
Kanuka Command Line Interface

Modules:
- secrets: Secrets access commands (register)
- utils: Shared utilities
"""

import argparse

from .. import __version__
from .secrets import register_secrets_commands


def create_parser():
    """Create and configure the argument parser with all commands."""
    parser = argparse.ArgumentParser(
        prog="kanuka",
        description="Kanuka: share project secrets through per-member key envelopes"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    register_secrets_commands(subparsers)

    return parser


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    func = getattr(args, "func", None)
    if func is None:
        parser.print_help()
        return 0

    return func(args)


__all__ = [
    'main',
    'create_parser',
    'register_secrets_commands',
]
