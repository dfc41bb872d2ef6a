"""Main entry point for the CloudOps bot."""

import argparse
import asyncio
import json
import logging
import signal
import sys
from contextlib import asynccontextmanager
from pathlib import Path

from .config import Config, load_config
from .exceptions import CloudOpsError
from .llm_handler import LLMHandler
from .orm import ConversationStatus
from .services import (
    ChannelCreator,
    ConversationService,
    Dispatcher,
    ProcessOrchestrator,
    ReconciliationService,
    init_db_service,
)
from .slack_client import SlackChannelInput, SlackClient
from .webhook_server import create_webhook_app
from .worker import STOP_TERMINATED, ConversationWorker


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("slack_sdk").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def build_worker_command(config: Config, config_path: str, verbose: bool) -> list[str]:
    """argv prefix for worker processes launched by the server."""
    command = [*config.worker.command, "--config", str(Path(config_path).resolve())]
    if verbose:
        command.append("--verbose")
    return command


async def run_sweeps(reconciliation: ReconciliationService, interval: float, logger) -> None:
    """Run the reconciliation sweep forever."""
    while True:
        try:
            await reconciliation.sweep()
        except Exception as e:
            logger.exception("Reconciliation sweep failed: %s", e)
        await asyncio.sleep(interval)


async def run_server(args, logger, config: Config) -> int:
    """Run the Slack event server and supervise worker runs."""
    import uvicorn

    port = args.port or config.server.port
    logger.info("Initializing database at %s", config.server.database_path)
    db_service = await init_db_service(config.server.database_path)

    conversation_service = ConversationService(db_service)
    messaging = SlackClient(config.slack.bot_token.get_secret_value())
    orchestrator = ProcessOrchestrator(
        command=build_worker_command(config, args.config, args.verbose),
        hard_ceiling_seconds=config.conversation.hard_ceiling.total_seconds(),
        max_concurrent_runs=config.worker.max_concurrent_runs,
        stop_grace_seconds=config.conversation.shutdown_grace_seconds,
    )
    dispatcher = Dispatcher(
        config=config,
        conversation_service=conversation_service,
        messaging=messaging,
        orchestrator=orchestrator,
        channel_creator=ChannelCreator(messaging),
    )
    reconciliation = ReconciliationService(conversation_service, orchestrator, config.conversation)

    @asynccontextmanager
    async def lifespan(app):
        sweep_task = asyncio.create_task(
            run_sweeps(reconciliation, config.worker.sweep_interval_seconds, logger)
        )
        logger.info("CloudOps bot listening on %s:%d", config.server.host, port)
        yield
        logger.info("Shutting down CloudOps bot...")
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
        await orchestrator.shutdown()
        await db_service.close()
        logger.info("Database connection closed")

    app = create_webhook_app(config, dispatcher, lifespan=lifespan)

    uvicorn_config = uvicorn.Config(
        app,
        host=config.server.host,
        port=port,
        log_level="info" if args.verbose else "warning",
    )
    server = uvicorn.Server(uvicorn_config)
    await server.serve()
    return 0


async def run_worker(args, logger, config: Config) -> int:
    """Run one conversation to completion inside this process."""
    try:
        payload = json.loads(args.input or "")
        conversation_id = payload["conversationId"]
        channel_id = payload["channelId"]
        user_id = payload["userId"]
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        logger.error("Invalid worker input %r: %s", args.input, e)
        return 2

    logger.info("Starting worker for conversation: %s", conversation_id)
    db_service = await init_db_service(config.server.database_path)
    try:
        messaging = SlackClient(config.slack.bot_token.get_secret_value())
        worker = ConversationWorker(
            conversation_service=ConversationService(db_service),
            messaging=messaging,
            model=LLMHandler(config.llm),
            input_source=SlackChannelInput(
                messaging,
                channel_id=channel_id,
                user_id=user_id,
                poll_interval=config.slack.poll_interval_seconds,
            ),
            config=config.conversation,
            channel_creator=ChannelCreator(messaging),
            archive_channel=config.slack.private_channels and config.slack.archive_on_completion,
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, worker.request_stop, STOP_TERMINATED)

        outcome = await worker.run(conversation_id)
        logger.info("Worker for conversation %s exiting (%s)", conversation_id, outcome.value)
        return 1 if outcome == ConversationStatus.FAILED else 0
    finally:
        await db_service.close()


async def run_sweep_once(args, logger, config: Config) -> int:
    """Run a single reconciliation sweep and exit."""
    db_service = await init_db_service(config.server.database_path)
    try:
        reconciliation = ReconciliationService(
            ConversationService(db_service), None, config.conversation
        )
        result = await reconciliation.sweep()
        logger.info(
            "Sweep finished: %d timed out, %d failed, %d purged",
            len(result.timed_out),
            len(result.failed),
            result.purged,
        )
        return 0
    finally:
        await db_service.close()


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Slack CloudOps assistant with supervised conversation workers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                              # Run the Slack event server with config.yaml
  %(prog)s -c myconfig.yaml --port 9000 # Custom config and port
  %(prog)s --mode sweep                 # Reconcile stuck conversations once and exit
  %(prog)s --mode worker --input '{"conversationId": "...", "channelId": "...", "userId": "..."}'
        """,
    )

    parser.add_argument(
        "-c",
        "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    parser.add_argument(
        "--mode",
        choices=["server", "worker", "sweep"],
        default="server",
        help="Run mode: server (default), worker for one conversation, or sweep",
    )
    parser.add_argument(
        "--input",
        help="Worker input payload as JSON (worker mode)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for the event server (overrides config)",
    )

    args = parser.parse_args()

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        logger.info("Loading configuration from %s", args.config)
        config = load_config(args.config)
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.exception("Invalid configuration: %s", e)
        return 1

    runners = {
        "server": run_server,
        "worker": run_worker,
        "sweep": run_sweep_once,
    }

    try:
        return asyncio.run(runners[args.mode](args, logger, config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except CloudOpsError as e:
        logger.error("Fatal error: %s", e)
        return 1
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
