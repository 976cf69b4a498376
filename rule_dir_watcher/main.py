"""Main entry point for rule-dir-watcher.

This module handles the command-line interface (CLI), configuration loading,
logging setup, and the main loop. It builds the initial rule artifact and then
hands control to the :class:`RuleDirScheduler`, which rebuilds the artifact
whenever the rules folder changes.

Key Responsibilities:
    - CLI Argument Parsing: Handles --rules-folder, --period, --drain-timeout, etc.
    - Signal Handling: Registers handlers for SIGINT/SIGTERM to ensure graceful shutdown.
    - Logging: Configures logging with rotation (10MB).
    - Startup/Shutdown Invariants: The watcher is closed exactly once on exit,
      via the finally block or atexit, whichever runs first.
"""

from __future__ import annotations

import argparse
import atexit
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from types import FrameType
from typing import List, Optional

from rule_dir_watcher import __version__
from rule_dir_watcher.builder import RuleArtifactBuilder
from rule_dir_watcher.config import load_config
from rule_dir_watcher.scheduler import RuleDirScheduler

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

STATS_LOG_INTERVAL = 300.0

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stdout) and optional file logging with rotation.

    Logging Practices:
        - **Levels**:
            - ``INFO``: Normal operations (each detected change, rebuilds, startup).
            - ``WARNING``: Recoverable issues.
            - ``ERROR``: Overflow, unknown watch keys, failed registrations and rebuilds.
            - ``DEBUG``: Registrations and every file added to an artifact.
        - **Format**: ``[asctime] [levelname] name: message``
        - **Rotation**: Log files are rotated at 10MB (keeping 5 backups).

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO", "WARNING", "ERROR").
        log_file (Optional[str]): Optional path to a log file.

    Returns:
        None

    Raises:
        ValueError: If the provided log_level is not a valid logging level.
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    handlers: List[logging.Handler] = []
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        try:
            os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except Exception as e:
            # Logging isn't set up yet
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def log_statistics(scheduler: Optional[RuleDirScheduler], builder: Optional[RuleArtifactBuilder]) -> None:
    """Log scheduler, watcher and builder counters in one line."""
    parts = [f"PID={os.getpid()}", f"Threads={threading.active_count()}"]
    if scheduler is not None:
        stats = scheduler.get_statistics()
        parts.append(
            f"Enabled={stats['enabled']}, Ticks={stats['ticks']}, "
            f"Rebuilds={stats['rebuilds']}, RebuildFailures={stats['rebuild_failures']}"
        )
        if "registrations" in stats:
            parts.append(
                f"Registrations={stats['registrations']}, Events={stats['events_detected']}, "
                f"Overflows={stats['overflows']}"
            )
    if builder is not None:
        current = builder.current
        parts.append(f"Artifact={current.version if current else None}")
    logger.info("Statistics: " + ", ".join(parts))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Watch a rules folder and rebuild the rule artifact when it changes."
    )
    parser.add_argument(
        "--rules-folder", type=str, default=None, help="Folder to watch. Watching is disabled when unset."
    )
    parser.add_argument(
        "--bundled-rules-folder", type=str, default=None, help="Rules loaded before the watched folder."
    )
    parser.add_argument(
        "--period", type=float, default=None, help="Seconds between watcher ticks (default: 5)."
    )
    parser.add_argument(
        "--drain-timeout",
        type=float,
        default=None,
        help="Max seconds a tick waits for notifications; must be shorter than --period (default: 1).",
    )
    parser.add_argument(
        "--no-recursive",
        dest="recursive",
        action="store_const",
        const=False,
        default=None,
        help="Only watch the top-level rules folder.",
    )
    parser.add_argument(
        "--max-pending-events",
        type=int,
        default=None,
        help="Notifications queued before overflow is reported (default: 4096).",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging (overrides --log-level)."
    )
    parser.add_argument(
        "--log-file", type=str, default=None, help="Path to the log file."
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Execute the main application logic.

    Parse command-line arguments, load configuration, set up logging, build the
    initial artifact and run the scheduler until SIGINT/SIGTERM.

    Args:
        argv (Optional[List[str]]): Arguments to parse instead of ``sys.argv[1:]``.

    Raises:
        SystemExit: If configuration is invalid or the rules folder cannot be watched (code 1).

    Example:
        $ rule-dir-watcher --rules-folder ./rules --log-level DEBUG
    """
    args = build_parser().parse_args(argv)

    # Bootstrap logging to capture config loading events
    bootstrap_handler = logging.StreamHandler(sys.stdout)
    bootstrap_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO, handlers=[bootstrap_handler], force=True
    )

    try:
        config = load_config(vars(args))
        logger.debug(f"Configuration loaded: {config}")
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        sys.exit(f"Configuration Error: {e}")

    logger.info(f"Starting rule-dir-watcher v{__version__} (PID: {os.getpid()})...")

    builder = RuleArtifactBuilder(config.rules_folder, config.bundled_rules_folder)
    scheduler = RuleDirScheduler(
        config.rules_folder,
        builder.rebuild,
        period=config.period,
        drain_timeout=config.drain_timeout,
        recursive=config.recursive,
        max_pending_events=config.max_pending_events,
    )
    stats_timer: Optional[threading.Timer] = None
    stop_event = threading.Event()

    def cleanup() -> None:
        """Cancel timers and stop the scheduler. Runs at most once."""
        nonlocal stats_timer
        if stats_timer:
            stats_timer.cancel()
            stats_timer = None
        if scheduler.enabled or scheduler.watcher is not None:
            log_statistics(scheduler, builder)
        try:
            scheduler.stop()
        except Exception as e:
            logger.error(f"Error stopping scheduler in cleanup: {e}")

    atexit.register(cleanup)

    def signal_handler(sig: int, frame: Optional[FrameType]) -> None:
        logger.info(f"Received signal {signal.Signals(sig).name}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        builder.rebuild()

        try:
            scheduler.start()
        except OSError as e:
            logger.critical(f"Cannot watch rules folder {config.rules_folder}: {e}")
            sys.exit(1)

        def run_stats_log() -> None:
            nonlocal stats_timer
            if stop_event.is_set():
                return
            try:
                log_statistics(scheduler, builder)
            except Exception as e:
                logger.error(f"Error logging statistics: {e}")
            finally:
                if not stop_event.is_set():
                    stats_timer = threading.Timer(STATS_LOG_INTERVAL, run_stats_log)
                    stats_timer.daemon = True
                    stats_timer.start()

        stats_timer = threading.Timer(STATS_LOG_INTERVAL, run_stats_log)
        stats_timer.daemon = True
        stats_timer.start()

        stop_event.wait()
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, stopping...")
    finally:
        cleanup()
        atexit.unregister(cleanup)


if __name__ == "__main__":
    main()
