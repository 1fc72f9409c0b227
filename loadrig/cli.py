from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv

from loadrig.config import get_settings, reset_settings
from loadrig.exceptions import ConfigError, SetupError
from loadrig.metrics import prometheus_format
from loadrig.models import RunOptions
from loadrig.presets import PRESETS
from loadrig.runner import LoadRunner, RunResult
from loadrig.summary import format_summary

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_SETUP = 3
EXIT_THRESHOLDS = 99

logger = logging.getLogger(__name__)


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="loadrig",
        description="Run a load scenario against TARGET_ENDPOINT.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Run a preset scenario.")
    run.add_argument("scenario", choices=sorted(PRESETS), help="Preset to run.")
    run.add_argument(
        "--env-file",
        help="Load environment variables from this file (default: ./.env if present).",
    )
    run.add_argument(
        "--json", action="store_true", help="Print the result as JSON instead of text."
    )
    run.add_argument(
        "--prometheus",
        action="store_true",
        help="Print final metrics in Prometheus text format.",
    )
    run.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level.",
    )
    run.add_argument(
        "--graceful-stop",
        default="30s",
        help="Drain period for in-flight iterations (e.g. 30s).",
    )
    run.add_argument("--max-duration", help="Hard cap on the load phase (e.g. 10m).")
    run.add_argument("--seed", type=int, default=0, help="Seed for arrival jitter.")
    return parser.parse_args(argv)


async def _run(runner: LoadRunner) -> RunResult:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runner.stop)
        except (NotImplementedError, RuntimeError):
            # Not available on every platform; Ctrl-C then aborts hard.
            pass
    return await runner.run()


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.env_file:
        load_dotenv(args.env_file, override=False)
    else:
        load_dotenv(find_dotenv(usecwd=True), override=False)

    try:
        reset_settings()
        settings = get_settings()
        scenario = PRESETS[args.scenario](settings)
        options = RunOptions(
            graceful_stop=args.graceful_stop,
            max_duration=args.max_duration,
            seed=args.seed,
        )
        runner = LoadRunner(scenario, options=options)
        result = asyncio.run(_run(runner))
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc.message)
        print(json.dumps(exc.to_dict(), ensure_ascii=True, default=str), file=sys.stderr)
        return EXIT_CONFIG
    except SetupError as exc:
        logger.error("Setup failed: %s", exc.message)
        print(json.dumps(exc.to_dict(), ensure_ascii=True, default=str), file=sys.stderr)
        return EXIT_SETUP

    if args.json:
        print(json.dumps(result.to_dict(), ensure_ascii=True))
    else:
        print(format_summary(result))
    if args.prometheus:
        print(prometheus_format(result.snapshot))
    return EXIT_OK if result.passed else EXIT_THRESHOLDS


if __name__ == "__main__":
    raise SystemExit(main())
