"""CLI module - the ``measure-library`` command."""

from measure_library.cli.main import build_parser, main, parse_arguments

__all__ = [
    "build_parser",
    "main",
    "parse_arguments",
]
