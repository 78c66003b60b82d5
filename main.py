"""TractorBeam — entry point.

Configures logging, parses the command line, loads the run configuration
and drives the transfer → command → transfer cycle.

Usage::

    python main.py -s input -d results -c tractorbeam.pkl
"""

from __future__ import annotations

import argparse
import logging
import sys

from tractorbeam import TractorBeam
from tractorbeam.config import load_config
from tractorbeam.errors import TractorBeamError

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

logger = logging.getLogger("tractorbeam.main")


def _configure_logging(verbose: bool = False) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def parse_command_line_args(argv: list[str]) -> argparse.Namespace:
    """Parse the TractorBeam command line."""
    parser = argparse.ArgumentParser(
        prog="tractorbeam",
        description=(
            "Transfer a hierarchy of input files to a remote host, run a "
            "configurable command there, and bring the results back."
        ),
    )
    parser.add_argument(
        "--source_dir", "-s",
        help="The source directory full of input data to be transferred "
        "(overrides inputs_to_transfer).",
    )
    parser.add_argument(
        "--destination", "-d",
        help="The destination directory where the results files should be placed "
        "(overrides local_results_dir).",
    )
    parser.add_argument(
        "--config", "-c",
        default="tractorbeam.pkl",
        help="Configuration file, Pkl or JSON (default: %(default)s).",
    )
    parser.add_argument(
        "--gui", "-g",
        action="store_true",
        help="Run through a GUI instead of the command line (not available).",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log debug output.",
    )
    return parser.parse_args(argv)


def _report_progress(remaining: int, progress: float) -> None:
    logger.info("%3.0f%% done, %d file(s) remaining", progress * 100, remaining)


def main(argv: list[str] | None = None) -> int:
    """Run TractorBeam and return the process exit code."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        return 0

    args = parse_command_line_args(argv)
    _configure_logging(args.verbose)
    logger.info("Command line arguments provided. Running in script mode.")

    if args.gui:
        logger.info("The TractorBeam GUI is not available; use the command line.")
        return 0

    try:
        config = load_config(
            args.config,
            overrides={
                "inputs_to_transfer": args.source_dir,
                "local_results_dir": args.destination,
            },
        )
    except TractorBeamError as exc:
        logger.error("%s", exc)
        return 1

    beam = TractorBeam(config, on_progress=_report_progress)
    try:
        summary = beam.run()
    except TractorBeamError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted; cancelling outstanding work")
        beam.cancel()
        return 130

    if not summary.ok:
        logger.warning("Finished with failed transfers; see the summary above")
    return 0


if __name__ == "__main__":
    sys.exit(main())
