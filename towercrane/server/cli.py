"""Command-line runner for the towercrane controller.

Outbound messages are written to stdout as JSON lines; logs go to stderr.
"""

import argparse
import logging
import signal
import sys
import threading
from typing import IO

import towercrane.config as cfg
from towercrane.config import TRACE
from towercrane.protocol.types import Point3D
from towercrane.server.controller import Controller, ControllerConfig
from towercrane.server.status_broadcast import JsonLinesSink

logger = logging.getLogger("towercrane.server.cli")


def _pump_stdin(controller: Controller, stream: IO[bytes]) -> None:
    """Forward each non-empty input line to the controller inbox."""
    for line in stream:
        line = line.strip()
        if line:
            controller.submit(line)
    logger.debug("stdin closed")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Tower crane motion controller")
    parser.add_argument(
        "--rate",
        type=float,
        default=cfg.TICK_RATE_HZ,
        help="Tick rate in Hz (default: %(default)s)",
    )
    parser.add_argument(
        "--stdin",
        action="store_true",
        help="Read operator messages as JSON lines from stdin",
    )
    parser.add_argument(
        "--cycle",
        nargs=6,
        type=float,
        metavar=("AX", "AY", "AZ", "BX", "BY", "BZ"),
        help="Start a pick-and-place cycle from A to B on startup",
    )
    parser.add_argument(
        "--speed",
        type=float,
        default=None,
        help="Cycle speed in units/s (default: %s)" % cfg.DEFAULT_SPEED,
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds",
    )
    parser.add_argument(
        "--no-priority",
        action="store_true",
        help="Do not try to raise process priority",
    )

    # Verbose logging options
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity; -v=INFO, -vv=DEBUG, -vvv=TRACE",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Enable quiet logging (WARNING level)",
    )
    parser.add_argument(
        "--log-level",
        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set specific log level",
    )
    return parser


def _resolve_log_level(args: argparse.Namespace) -> int:
    # Precedence: --log-level, then -v/-q, then TOWERCRANE_TRACE, then INFO
    if args.log_level:
        if args.log_level == "TRACE":
            cfg.TRACE_ENABLED = True
            return TRACE
        return getattr(logging, args.log_level)
    if args.verbose >= 3:
        cfg.TRACE_ENABLED = True
        return TRACE
    if args.verbose >= 2:
        return logging.DEBUG
    if args.verbose == 1:
        return logging.INFO
    if args.quiet:
        return logging.WARNING
    if cfg.TRACE_ENABLED:
        return TRACE
    return getattr(logging, cfg.LOG_LEVEL_DEFAULT)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the controller."""
    args = _build_parser().parse_args(argv)
    if args.rate <= 0:
        print("--rate must be positive", file=sys.stderr)
        return 2

    log_level = _resolve_log_level(args)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    logging.getLogger("numba").setLevel(max(log_level, logging.INFO))

    # Pre-compile numba functions so the first ticks do not stall
    from towercrane.utils.warmup import warmup_jit

    warmup_jit()

    config = ControllerConfig(
        loop_interval=1.0 / args.rate,
        high_priority=not args.no_priority,
    )
    controller = Controller(config, sink=JsonLinesSink(sys.stdout.buffer))

    def handle_sigterm(signum, frame):
        logger.info("Received SIGTERM, shutting down...")
        controller.stop()

    signal.signal(signal.SIGTERM, handle_sigterm)

    if args.cycle:
        ax, ay, az, bx, by, bz = args.cycle
        controller.start_cycle(Point3D(ax, ay, az), Point3D(bx, by, bz), args.speed)

    if args.stdin:
        threading.Thread(
            target=_pump_stdin,
            args=(controller, sys.stdin.buffer),
            name="towercrane-stdin",
            daemon=True,
        ).start()

    stop_timer: threading.Timer | None = None
    if args.duration is not None:
        stop_timer = threading.Timer(args.duration, controller.stop)
        stop_timer.daemon = True
        stop_timer.start()

    try:
        controller.start()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        if stop_timer is not None:
            stop_timer.cancel()
        controller.stop()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
