import asyncio
import logging
from pathlib import Path

from apscheduler.schedulers.blocking import BlockingScheduler

from batchverify.channel import Channel, is_approved
from batchverify.config import Settings
from batchverify.pipeline import BatchRejectedError, BatchRunner


logger = logging.getLogger(__name__)

PROCESSED_DIR = "processed"
REJECTED_DIR = "rejected"


def _move(path: Path, folder: str) -> Path:
    target_dir = path.parent / folder
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / path.name
    path.replace(target)
    return target


def pending_batch_files(inbox_dir: Path) -> list[tuple[str, Path]]:
    """Return (requester, path) pairs for inbox/<requester>/*.txt, oldest name first."""
    if not inbox_dir.is_dir():
        return []
    pending: list[tuple[str, Path]] = []
    for requester_dir in sorted(entry for entry in inbox_dir.iterdir() if entry.is_dir()):
        for path in sorted(requester_dir.glob("*.txt")):
            pending.append((requester_dir.name, path))
    return pending


def process_inbox(settings: Settings, runner: BatchRunner, channel: Channel) -> int:
    processed = 0
    for requester, path in pending_batch_files(Path(settings.inbox_dir)):
        if not is_approved(requester, settings.approved_users):
            logger.warning("inbox file from unapproved requester", extra={"requester": requester, "path": str(path)})
            channel.send_message(requester, "You are not approved to use this service.")
            _move(path, REJECTED_DIR)
            continue

        text = path.read_text(encoding="utf-8")
        try:
            result = asyncio.run(runner.submit_batch(text, requester))
        except BatchRejectedError as exc:
            logger.info("inbox batch rejected", extra={"requester": requester, "reason": exc.reason})
            _move(path, REJECTED_DIR)
            continue
        except Exception:
            logger.exception("inbox batch failed", extra={"requester": requester, "path": str(path)})
            _move(path, REJECTED_DIR)
            continue

        _move(path, PROCESSED_DIR)
        processed += 1
        logger.info(
            "inbox batch completed",
            extra={"requester": requester, "batch_id": result.batch_id, "valid": result.valid},
        )
    return processed


def start_inbox_service(settings: Settings, runner: BatchRunner, channel: Channel, *, run_now: bool = False) -> None:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        process_inbox,
        "interval",
        args=[settings, runner, channel],
        seconds=settings.inbox_poll_seconds,
        id="inbox_poll",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "inbox service started",
        extra={"inbox_dir": settings.inbox_dir, "poll_seconds": settings.inbox_poll_seconds},
    )

    if run_now:
        process_inbox(settings, runner, channel)

    scheduler.start()
