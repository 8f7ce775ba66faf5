"""
Command line entry point.

    osc-tally                      # TUI, peers via OSCQuery
    osc-tally --custom-port 9000   # TUI, send to 127.0.0.1:9000 only
    osc-tally --headless -v        # no TUI, status line on stdout
"""

import argparse
import logging
import signal
import sys
import time
from typing import List, Optional

from .config import DEFAULT_CONFIG_PATH, load_config, save_config
from .engine import TallyEngine, build_engine
from .errors import ConfigError

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2
EXIT_START_FAILED = 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="osc-tally",
        description="Mirror tally state to OSC receivers found via OSCQuery",
    )
    parser.add_argument(
        "--config", "-c", default=str(DEFAULT_CONFIG_PATH),
        help=f"YAML config file (default: {DEFAULT_CONFIG_PATH})"
    )
    parser.add_argument(
        "--custom-port", type=int, default=None,
        help="Send to 127.0.0.1:PORT instead of discovering receivers"
    )
    parser.add_argument(
        "--update-interval", type=float, default=None,
        help="Seconds between parameter updates"
    )
    parser.add_argument(
        "--write-config", action="store_true",
        help="Write the effective config back to --config and exit"
    )
    parser.add_argument(
        "--headless", action="store_true",
        help="Run without the terminal UI"
    )
    parser.add_argument(
        "--log-file", default=None,
        help="Log to this file (TUI mode logs nowhere otherwise)"
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Debug logging"
    )
    return parser


def setup_logging(args: argparse.Namespace) -> None:
    level = logging.DEBUG if args.verbose else logging.INFO
    fmt = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    if args.log_file:
        logging.basicConfig(level=level, format=fmt, filename=args.log_file)
    elif args.headless:
        logging.basicConfig(level=level, format=fmt)
    else:
        # Stderr output would tear up the TUI
        logging.basicConfig(level=logging.CRITICAL, handlers=[logging.NullHandler()])


def apply_overrides(config, args: argparse.Namespace):
    updates = {}
    if args.custom_port is not None:
        updates["use_custom_port"] = True
        updates["send_port"] = args.custom_port
    if args.update_interval is not None:
        updates["update_interval"] = args.update_interval
    if not updates:
        return config
    data = config.model_dump()
    data["osc"].update(updates)
    try:
        return type(config).model_validate(data)
    except ValueError as exc:
        raise ConfigError(f"Invalid command line override:\n{exc}") from exc


def run_headless(engine: TallyEngine) -> int:
    stop_event = [False]

    def signal_handler(sig, frame):
        stop_event[0] = True

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if not engine.start():
        print("Failed to start tally engine", file=sys.stderr)
        return EXIT_START_FAILED

    print("OSC Tally running. Press Ctrl+C to stop.")
    try:
        while not stop_event[0]:
            time.sleep(0.5)
            status = engine.get_status()
            targets = ", ".join(status["destinations"]) or "No OSC Receivers connected!"
            print(f"\r{targets}", end="", flush=True)
    except KeyboardInterrupt:
        pass

    print("\nStopping OSC Tally...")
    engine.stop()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args)

    try:
        config = apply_overrides(load_config(args.config), args)
        if args.write_config:
            path = save_config(config, args.config)
            print(f"Wrote {path}")
            return 0
        engine = build_engine(config)
    except ConfigError as exc:
        logger.error(f"Configuration error: {exc}")
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.headless:
        return run_headless(engine)

    from .ui import TallyApp
    try:
        TallyApp(engine).run()
    finally:
        engine.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
