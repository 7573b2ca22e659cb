import argparse
import asyncio
import logging
from pathlib import Path
import sys

from batchverify.browser import PlaywrightCapability
from batchverify.channel import Channel, ConsoleChannel, OutboxChannel, is_approved, usage_text
from batchverify.config import ConfigError, Settings, get_settings
from batchverify.database import build_session_factory
from batchverify.pipeline import BatchRejectedError, BatchRunner, NoBatchError
from batchverify.service import start_inbox_service
from batchverify.storage import ArchiveTooLargeError


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run remote verification batches")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="run one batch")
    run_parser.add_argument("--input", required=True, help="Batch file path, or - for stdin")
    run_parser.add_argument("--requester", default="local", help="Requester identity for the allow-list")

    export_parser = subparsers.add_parser("export", help="zip the latest batch results")
    export_parser.add_argument("--requester", default="local")

    clean_parser = subparsers.add_parser("clean", help="clear stored screenshots and files")
    clean_parser.add_argument("--requester", default="local")

    serve_parser = subparsers.add_parser("serve", help="poll the inbox directory for batch files")
    serve_parser.add_argument("--run-now", action="store_true", help="also process the inbox once immediately")

    subparsers.add_parser("usage", help="show the accepted input format")

    return parser.parse_args()


def _read_input(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    return Path(source).read_text(encoding="utf-8")


def build_runner(settings: Settings, channel: Channel) -> BatchRunner:
    session_factory = build_session_factory(settings.database_url)
    return BatchRunner(
        settings,
        session_factory,
        lambda: PlaywrightCapability(settings.require_target_url(), headless=settings.headless),
        channel=channel,
    )


def main() -> None:
    args = parse_args()
    try:
        settings = get_settings()
    except ConfigError as exc:
        raise SystemExit(f"configuration error: {exc}") from exc

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.command == "usage":
        print(usage_text(settings))
        return

    if args.command in ("run", "serve"):
        try:
            settings.require_target_url()
        except ConfigError as exc:
            raise SystemExit(f"configuration error: {exc}") from exc

    channel = OutboxChannel(settings.outbox_dir) if args.command == "serve" else ConsoleChannel()
    runner = build_runner(settings, channel)

    if args.command == "serve":
        start_inbox_service(settings, runner, channel, run_now=args.run_now)
        return

    if not is_approved(args.requester, settings.approved_users):
        channel.send_message(args.requester, "You are not approved to use this service.")
        raise SystemExit(1)

    if args.command == "export":
        try:
            archive_path = runner.export(args.requester)
        except (NoBatchError, ArchiveTooLargeError):
            raise SystemExit(1)
        print(f"export={archive_path}")
        return

    if args.command == "clean":
        path = runner.clean(args.requester)
        print(f"cleaned={path}")
        return

    try:
        result = asyncio.run(runner.submit_batch(_read_input(args.input), args.requester))
    except BatchRejectedError as exc:
        print(f"status=rejected reason={exc.reason}")
        raise SystemExit(1)

    counts = result.summary.counts if result.summary else {}
    print(
        "batch_id={batch_id} valid={valid} invalid={invalid} matched={matched} mismatched={mismatched} "
        "indeterminate={indeterminate} failed={failed} summary={summary}".format(
            batch_id=result.batch_id,
            valid=result.valid,
            invalid=result.invalid,
            matched=counts.get("matched", 0),
            mismatched=counts.get("mismatched", 0),
            indeterminate=counts.get("indeterminate", 0),
            failed=counts.get("failed", 0),
            summary=result.summary_path,
        )
    )


if __name__ == "__main__":
    main()
