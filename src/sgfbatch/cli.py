#!/usr/bin/env python3
"""
Batch converter CLI.
Validates the source and save folders, then hands the batch to the trio runner.
"""

from __future__ import annotations

import argparse
import shlex
import sys
from pathlib import Path
from typing import List, NoReturn, Optional

import trio

from .main import load_config, main_async, setup_logging
from .models import BatchConfig

USAGE = "sgf-batch [options] ${source_path} ${save_path} ${thread_count}"


class _StdoutArgumentParser(argparse.ArgumentParser):
    """Reports usage errors on stdout with exit status 1."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stdout)
        print(f"{self.prog}: error: {message}")
        self.exit(1)


def _positive_int(value: str) -> int:
    ivalue = int(value)
    if ivalue < 1:
        raise argparse.ArgumentTypeError("Value must be >= 1")
    return ivalue


def _positive_float(value: str) -> float:
    fvalue = float(value)
    if fvalue <= 0:
        raise argparse.ArgumentTypeError("Value must be > 0")
    return fvalue


def build_parser() -> argparse.ArgumentParser:
    parser = _StdoutArgumentParser(
        prog="sgf-batch",
        usage=USAGE,
        description="Run the SGF conversion tool over every entry of a folder",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("source_path", help="Folder whose entries are converted")
    parser.add_argument("save_path", help="Folder the tool writes its output to")
    # converted after the folder checks, see resolve_thread_count
    parser.add_argument("thread_count", help="Max concurrent conversions")
    parser.add_argument("--config", help="Path to config YAML")
    parser.add_argument("--tool", help="Conversion tool command line")
    parser.add_argument("--tool-cwd", help="Working directory the tool runs in")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--log-file", help="Log file location")
    parser.add_argument("--timeout", type=_positive_float, help="Per-entry timeout in seconds")
    parser.add_argument("--dry-run", action="store_true", help="List work without invoking the tool")
    parser.add_argument("--no-report", dest="report", action="store_false", help="Skip the summary tables")
    parser.add_argument(
        "--no-cpu-monitor", dest="monitor_cpu", action="store_false", help="Skip CPU sampling"
    )
    parser.set_defaults(report=None, monitor_cpu=None)
    return parser


def validate_folders(args: argparse.Namespace) -> Optional[str]:
    """Return an error message when either folder is unusable."""
    if not Path(args.source_path).is_dir():
        return "Please check the source folder path is valid!"
    if not Path(args.save_path).is_dir():
        return "Please check the save folder path is valid !"
    return None


def resolve_thread_count(parser: argparse.ArgumentParser, args: argparse.Namespace) -> int:
    """Parse thread_count in place; reports bad values through the parser."""
    try:
        args.thread_count = _positive_int(str(args.thread_count))
    except (ValueError, argparse.ArgumentTypeError) as exc:
        parser.error(f"argument thread_count: {exc}")
    return args.thread_count


def apply_overrides(config: BatchConfig, args: argparse.Namespace) -> BatchConfig:
    updates = {"max_workers": args.thread_count}
    if args.tool:
        updates["tool_command"] = shlex.split(args.tool)
    if args.tool_cwd:
        updates["tool_cwd"] = Path(args.tool_cwd).as_posix()
    if args.log_level:
        updates["log_level"] = args.log_level
    if args.log_file:
        updates["log_file"] = args.log_file
    if args.timeout is not None:
        updates["item_timeout"] = args.timeout
    if args.dry_run:
        updates["dry_run"] = True
    if args.report is not None:
        updates["report"] = args.report
    if args.monitor_cpu is not None:
        updates["monitor_cpu"] = args.monitor_cpu

    return config.model_copy(update=updates)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    error = validate_folders(args)
    if error:
        print(error)
        return 1
    resolve_thread_count(parser, args)

    config = load_config(args.config)
    config = apply_overrides(config, args)

    try:
        setup_logging(config)
    except OSError as exc:
        print(f"Cannot open log file {config.log_file}: {exc}")
        return 1

    source_dir = Path(args.source_path).absolute()
    save_dir = Path(args.save_path).absolute()
    try:
        return trio.run(main_async, config, source_dir, save_dir)
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
