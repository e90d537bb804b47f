"""Command line entry point for running a digest outside Lambda."""

import argparse
import signal
import sys
import threading
from dataclasses import replace

from .config import Config
from .errors import NoRecipientsError, PipelineNotConfiguredError, StageError
from .lambda_handler import get_telegram_token
from .logging_config import create_execution_logger, new_execution_id, setup_structured_logging
from .pipeline import RunMode, build_pipeline, mode_from_flags

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_NO_RECIPIENTS = 3
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="digest-bot",
        description="Collect RSS news, build a categorized digest and deliver it to Telegram.",
    )
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in RunMode],
        help="full: build and send; build: save the digest only; send: deliver a saved digest "
        "(defaults to BUILD_MODE/SEND_MODE from the environment)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="stop after filtering, without generation requests or delivery",
    )
    parser.add_argument(
        "--force-dispatch",
        action="store_true",
        help="run even when no recipients are known",
    )
    parser.add_argument(
        "--test-message",
        action="store_true",
        help="send a single test message to all recipients and exit",
    )
    parser.add_argument("--state-dir", help="directory holding state.json and digest.json")
    parser.add_argument("--feeds", help="path to the feeds JSON file")
    parser.add_argument("--log-level", help="logging level (default: LOG_LEVEL or INFO)")
    return parser


def install_signal_handlers(cancel: threading.Event, logger) -> None:
    def _shutdown(signum, frame):
        logger.warning(f"Received {signal.Signals(signum).name}, cancelling run")
        cancel.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _shutdown)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    config = Config(feeds_file=args.feeds)
    if args.state_dir:
        config.state_dir = args.state_dir
    setup_structured_logging(args.log_level or config.log_level)

    execution_id = new_execution_id("cli")
    logger = create_execution_logger("cli", execution_id)

    try:
        flags = config.get_run_flags()
        if args.mode:
            flags = replace(
                flags,
                build_mode=args.mode == RunMode.BUILD.value,
                send_mode=args.mode == RunMode.SEND.value,
            )
        flags = replace(
            flags,
            skip_generation=flags.skip_generation or args.dry_run,
            force_dispatch=flags.force_dispatch or args.force_dispatch,
            send_test_message=flags.send_test_message or args.test_message,
        )

        bot_token = config.telegram_bot_token
        if not bot_token and not flags.skip_generation:
            bot_token = get_telegram_token(
                config.telegram_secret_name, config.aws_region, execution_id
            )

        pipeline = build_pipeline(config, flags, bot_token, execution_id)
    except (ValueError, FileNotFoundError, RuntimeError) as e:
        logger.error(f"Configuration error: {e}", error=str(e))
        return EXIT_CONFIG

    cancel = threading.Event()
    install_signal_handlers(cancel, logger)

    try:
        result = pipeline.run(mode_from_flags(flags), cancel)
    except StageError as e:
        return EXIT_CANCELLED if e.cancelled else EXIT_FAILED
    except NoRecipientsError:
        return EXIT_NO_RECIPIENTS
    except PipelineNotConfiguredError as e:
        logger.error(str(e))
        return EXIT_CONFIG

    logger.info(
        f"Run finished: {result.outcome.value}",
        **{k: v for k, v in result.to_metrics().items() if k != "outcome"},
    )
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
