import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any

from live_transcriber.config import TranscriberSettings
from live_transcriber.domain.errors import ConfigError, LiveTranscriberError
from live_transcriber.domain.results import CloseEvent, TranscriptionResult
from live_transcriber.domain.session import SessionCallbacks
from live_transcriber.log_format import configure_logging

ENV_FILE_PATH = Path.home() / ".config" / "live-transcriber" / "env"

logger = logging.getLogger(__name__)


def _load_env_file(path: Path = ENV_FILE_PATH) -> None:
    if not path.exists():
        return
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip("'\"")
            if key not in os.environ:
                os.environ[key] = value


def parse_option(text: str) -> tuple[str, Any]:
    key, sep, raw = text.partition("=")
    key = key.strip()
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected key=value, got {text!r}")
    try:
        value = json.loads(raw)
    except ValueError:
        value = raw
    return key, value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Stream microphone audio to a live transcription service")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    parser.add_argument("--model", help="Transcription model")
    parser.add_argument("--language", help="Spoken language code")
    parser.add_argument("--device", help="Capture device name or index")
    parser.add_argument(
        "--option", "-o",
        action="append",
        default=[],
        type=parse_option,
        metavar="KEY=VALUE",
        help="Extra transcription option (repeatable)",
    )
    parser.add_argument("--skip-checks", action="store_true", help="Skip startup health checks")
    return parser


def main(argv: list[str] | None = None) -> None:
    _load_env_file()
    args = build_parser().parse_args(argv)
    configure_logging(verbose=args.verbose)

    settings = TranscriberSettings()
    if args.device:
        settings.capture_device = args.device

    overrides: dict[str, Any] = dict(args.option)
    if args.model:
        overrides["model"] = args.model
    if args.language:
        overrides["language"] = args.language

    try:
        exit_code = asyncio.run(_run_session(settings, overrides, args.skip_checks))
    except ConfigError as exc:
        print(f"Invalid options: {exc}", file=sys.stderr)
        exit_code = 2
    sys.exit(exit_code)


def _print_transcript(result: TranscriptionResult) -> None:
    if result.transcript:
        print(result.transcript, flush=True)


def _print_interim(result: TranscriptionResult) -> None:
    if result.transcript:
        print(f"... {result.transcript}", file=sys.stderr, flush=True)


async def _run_session(settings: TranscriberSettings, overrides: dict[str, Any], skip_checks: bool) -> int:
    from live_transcriber.factory import create_session
    from live_transcriber.health import has_critical_failures, run_startup_checks

    if not skip_checks:
        results = run_startup_checks(settings)
        if has_critical_failures(results):
            logger.error("Critical health check failures, aborting startup")
            return 1

    shutdown_event = asyncio.Event()
    shutdown_triggered = False

    def handle_close(event: CloseEvent) -> None:
        logger.info("Connection closed (code=%s)", event.code)
        shutdown_event.set()

    session = create_session(
        settings,
        overrides,
        SessionCallbacks(
            on_transcript=_print_transcript,
            on_interim_result=_print_interim,
            on_error=lambda error: logger.error("Session error: %s", error),
            on_close=handle_close,
        ),
    )

    def handle_signal() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            logger.warning("Forced exit")
            sys.exit(1)
        shutdown_triggered = True
        logger.info("Shutting down...")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    try:
        await session.start()
    except LiveTranscriberError as exc:
        logger.error("Could not start session: %s", exc)
        return 1

    try:
        await shutdown_event.wait()
    finally:
        await session.cleanup()
    return 0 if shutdown_triggered else 1
