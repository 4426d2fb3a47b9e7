"""Command-line entry point.

Usage:
    reviw FILE [FILE ...] [--port N] [--encoding NAME] [--no-open]
    git diff | reviw -

Each file gets its own viewer on sequential ports starting at --port. The
reviewer's feedback is written to stdout as YAML when every viewer has been
submitted (or on Ctrl-C); all diagnostics go to stderr.
"""

import argparse
import logging
import os
import sys
from typing import Optional

from pydantic import ValidationError

from reviw import __version__
from reviw.config import ReviewConfig, get_config
from reviw.registry import CleanupRegistry
from reviw.session_lock import AlreadyLocked, SessionLockManager
from reviw.supervisor import ReviewSupervisor
from reviw.tools.documents import STDIN_MARKER

logger = logging.getLogger("reviw")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reviw",
        description="Review CSV/TSV, diff, Markdown and text files in the browser; "
                    "feedback is printed as YAML.",
    )
    parser.add_argument("files", nargs="+", help="Files to review ('-' reads a diff from stdin)")
    parser.add_argument("--port", type=int, default=None, help="First port to try (default 3000)")
    parser.add_argument("--encoding", "-e", default=None, help="Input encoding (e.g. shift_jis, euc-jp)")
    parser.add_argument("--no-open", action="store_true", help="Do not open a browser")
    parser.add_argument("--scene-threshold", type=float, default=None,
                        help="ffmpeg scene score for candidate frames (0-1)")
    parser.add_argument("--stable-threshold", type=float, default=None,
                        help="Similarity at which frames count as the same state (0-1)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def apply_overrides(config: ReviewConfig, args: argparse.Namespace) -> ReviewConfig:
    """Return ``config`` with the CLI flags applied, validated.

    Raises:
        ValidationError: If a flag value is out of range.
    """
    overrides = {}
    if args.port is not None:
        overrides["base_port"] = args.port
    if args.scene_threshold is not None:
        overrides["scene_threshold"] = args.scene_threshold
    if args.stable_threshold is not None:
        overrides["stable_threshold"] = args.stable_threshold
    if not overrides:
        return config
    return ReviewConfig(**{**config.model_dump(), **overrides})


def resolve_targets(files: list[str]) -> list[str]:
    """Make file arguments absolute and check they exist.

    Raises:
        FileNotFoundError: For the first missing file.
    """
    targets = []
    for name in files:
        if name == STDIN_MARKER:
            targets.append(name)
            continue
        path = os.path.abspath(name)
        if not os.path.isfile(path):
            raise FileNotFoundError(name)
        targets.append(path)
    return targets


def main(argv: Optional[list[str]] = None) -> int:
    """Run the reviewer. Returns the process exit code."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s" if not args.verbose else "%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    try:
        config = apply_overrides(get_config(), args)
    except ValidationError as exc:
        logger.error("invalid option: %s", exc)
        return 2

    try:
        targets = resolve_targets(args.files)
    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        return 1
    if targets.count(STDIN_MARKER) > 1:
        logger.error("stdin ('-') can only be given once")
        return 1

    registry = CleanupRegistry()
    registry.install_atexit()
    lock_manager = SessionLockManager(config.lock_dir, registry)
    supervisor = ReviewSupervisor(
        config,
        registry,
        lock_manager,
        encoding=args.encoding,
        open_browser=not args.no_open,
        watch=True,
    )

    try:
        supervisor.start(targets)
    except AlreadyLocked as exc:
        logger.error("%s is already being reviewed (pid %s). Close that session first.", exc.path, exc.pid)
        registry.run()
        return 1
    except OSError as exc:
        logger.error("failed to start: %s", exc)
        registry.run()
        return 1

    return supervisor.run()


if __name__ == "__main__":
    sys.exit(main())
