"""
Command line client: start or attach to a strategy session and log its progress.

Usage:
    python -m strategyflow strategies
    python -m strategyflow start <StrategyClass> [--speed INSTANT] [--config run.json]
    python -m strategyflow view <session_id> [--strategy-class <StrategyClass>]
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from .config import SessionConfig, StrategyFlowConfig, config as settings, setup_logging
from .control_client import ControlPlaneError, StrategyControlClient
from .mirror import DurableMirror, JsonFileStore
from .session import SessionController
from .transport import WebSocketTransport

logger = logging.getLogger("strategyflow.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="strategyflow", description="Strategy session client")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("strategies", help="List strategy classes the engine can run")

    start = sub.add_parser("start", help="Start a strategy run and follow it")
    start.add_argument("strategy_class")
    start.add_argument("--config", help="JSON run configuration file")
    start.add_argument("--speed", help="Run speed (SLOW, NORMAL, INSTANT, ...)")
    start.add_argument("--interval", type=float, default=5.0, help="Seconds between summaries")

    view = sub.add_parser("view", help="Attach to a running strategy")
    view.add_argument("session_id")
    view.add_argument("--strategy-class")
    view.add_argument("--interval", type=float, default=5.0, help="Seconds between summaries")

    return parser


def load_session_config(args: argparse.Namespace, controller: SessionController) -> SessionConfig:
    """Run config from file, else the last one used for the class, else defaults."""
    if args.config:
        with open(args.config, "r") as f:
            data = json.load(f)
        session_config = SessionConfig.model_validate(data)
    else:
        session_config = controller.last_config(args.strategy_class) or SessionConfig()

    update = {"strategy_class": args.strategy_class}
    if args.speed:
        update["speed"] = args.speed.upper()
    # model_copy skips validation, so re-check the overridden speed
    merged = session_config.model_copy(update=update)
    return SessionConfig.model_validate(merged.model_dump(by_alias=True))


async def follow(controller: SessionController, interval: float) -> None:
    """Log a summary every ``interval`` seconds while the session is active."""
    while controller.snapshot.running:
        await asyncio.sleep(interval)
        logger.info(f"Session: {controller.snapshot.summary()}")

    state = controller.snapshot
    logger.info(f"Session ended in phase {state.phase.value}: {state.summary()}")
    if state.analysis is not None:
        logger.info(f"Analysis: {json.dumps(state.analysis.stats, default=str)}")


async def run(args: argparse.Namespace, config: StrategyFlowConfig) -> int:
    control = StrategyControlClient(config.API_URL, api_token=config.API_TOKEN, timeout=config.HTTP_TIMEOUT)
    try:
        if args.command == "strategies":
            for strategy in await control.get_strategies():
                print(strategy)
            return 0

        transport = WebSocketTransport(
            config.events_url,
            api_token=config.API_TOKEN,
            ping_interval=config.WS_PING_INTERVAL,
            ping_timeout=config.WS_PING_TIMEOUT,
        )
        mirror = DurableMirror(
            JsonFileStore(config.MIRROR_PATH),
            namespace=config.MIRROR_NAMESPACE,
            candle_max_points=config.CANDLE_MAX_POINTS,
            equity_max_points=config.EQUITY_MAX_POINTS,
        )
        controller = SessionController(transport, control, mirror=mirror, log_buffer_limit=config.LOG_BUFFER_LIMIT)

        if args.command == "start":
            ok = await controller.start(load_session_config(args, controller))
        else:
            ok = await controller.view(args.session_id, strategy_class=args.strategy_class)

        if not ok:
            logger.error(f"Could not start session: {controller.snapshot.error_message}")
            return 1

        try:
            await follow(controller, args.interval)
        finally:
            await controller.shutdown()

        return 1 if controller.snapshot.error_message else 0

    except ControlPlaneError as e:
        logger.error(f"Control plane request failed: {e}")
        return 1
    finally:
        await control.close()


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging(settings)
    try:
        sys.exit(asyncio.run(run(args, settings)))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
