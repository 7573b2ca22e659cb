from collections.abc import Callable
from dataclasses import dataclass
import logging
from pathlib import Path
import uuid

from sqlalchemy.orm import Session, sessionmaker

from batchverify.aggregator import BatchState, aggregate
from batchverify.channel import EXAMPLE_LINE, Channel, ConsoleChannel
from batchverify.config import Settings
from batchverify.executor import AttemptExecutor, InteractionCapability
from batchverify.intake import parse_batch, split_outcomes
from batchverify.run_store import (
    create_run,
    mark_run_failed,
    mark_run_running,
    mark_run_succeeded,
    store_attempt_result,
    store_rejections,
)
from batchverify.scheduler import BoundedScheduler
from batchverify.schemas import (
    AttemptOutcome,
    AttemptResult,
    BatchSummary,
    ParseOutcome,
    Record,
    Rejection,
    SubmitResult,
)
from batchverify.storage import ArchiveTooLargeError, BatchStorage, batch_stamp, check_archive_size


logger = logging.getLogger(__name__)

CapabilityFactory = Callable[[], InteractionCapability]
ProgressCallback = Callable[[str, int, int], None]
CompleteCallback = Callable[[str, BatchSummary], None]


class BatchRejectedError(RuntimeError):
    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class NoBatchError(RuntimeError):
    pass


@dataclass(frozen=True)
class PreparedBatch:
    batch_id: str
    requester: str
    outcomes: list[ParseOutcome]
    records: list[Record]
    rejections: list[Rejection]


class BatchRunner:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        capability_factory: CapabilityFactory,
        *,
        channel: Channel | None = None,
        storage: BatchStorage | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.capability_factory = capability_factory
        self.channel = channel or ConsoleChannel()
        self.storage = storage or BatchStorage(settings.output_root)

    def prepare(self, text: str, requester: str) -> PreparedBatch:
        outcomes = parse_batch(text)
        records, rejections = split_outcomes(outcomes)

        if not records:
            message = f"No valid lines. Example format:\n{EXAMPLE_LINE}"
            if rejections:
                first = rejections[0]
                message += f"\n\nFirst error: line {first.index} - {first.error}: {first.reason}"
            raise BatchRejectedError("no_valid_lines", message)

        if len(records) > self.settings.max_entries:
            raise BatchRejectedError(
                "too_many_entries",
                f"You sent {len(records)} lines. Max per batch is {self.settings.max_entries}. "
                "Please split and resend.",
            )

        batch_id = f"batch_{batch_stamp()}_{uuid.uuid4().hex[:6]}"
        return PreparedBatch(
            batch_id=batch_id,
            requester=requester,
            outcomes=outcomes,
            records=records,
            rejections=rejections,
        )

    async def execute(
        self,
        prepared: PreparedBatch,
        on_progress: ProgressCallback | None = None,
    ) -> tuple[BatchSummary, Path]:
        settings = self.settings
        batch_dir = self.storage.ensure_batch_workspace(prepared.requester, prepared.batch_id)
        state = BatchState(total=len(prepared.records))

        with self.session_factory() as db:
            run = create_run(
                db,
                batch_id=prepared.batch_id,
                requester=prepared.requester,
                total_lines=len(prepared.outcomes),
                valid_records=len(prepared.records),
                invalid_records=len(prepared.rejections),
                concurrency=settings.concurrency,
                max_retries=settings.retry_errors,
            )
            store_rejections(db, run_id=run.id, rejections=prepared.rejections)
            mark_run_running(db, run)
            logger.info(
                "batch started",
                extra={
                    "batch_id": prepared.batch_id,
                    "valid_records": len(prepared.records),
                    "concurrency": settings.concurrency,
                },
            )

            def on_complete(result: AttemptResult) -> None:
                store_attempt_result(db, run, result)
                done = state.record(result)
                if on_progress:
                    on_progress(prepared.batch_id, done, state.total)

            try:
                capability = self.capability_factory()
                try:
                    await self._scheduler(capability, batch_dir, on_complete).run(prepared.records)
                finally:
                    await capability.close()

                summary = aggregate(
                    state.results,
                    batch_id=prepared.batch_id,
                    rejected=prepared.rejections,
                    total_lines=len(prepared.outcomes),
                    concurrency=settings.concurrency,
                    max_retries=settings.retry_errors,
                )
                summary_path = self.storage.write_summary(batch_dir, summary)
                mark_run_succeeded(db, run, summary=summary, summary_path=str(summary_path))
            except Exception as exc:
                mark_run_failed(db, run, error=str(exc))
                logger.exception("batch run failed", extra={"batch_id": prepared.batch_id})
                raise

        logger.info(
            "batch completed",
            extra={"batch_id": prepared.batch_id, "counts": summary.counts, "summary_path": str(summary_path)},
        )
        return summary, summary_path

    async def submit_batch(
        self,
        text: str,
        requester: str,
        *,
        on_progress: ProgressCallback | None = None,
        on_complete: CompleteCallback | None = None,
    ) -> SubmitResult:
        try:
            prepared = self.prepare(text, requester)
        except BatchRejectedError as exc:
            self.channel.send_message(requester, str(exc))
            raise

        valid, invalid = len(prepared.records), len(prepared.rejections)
        self.channel.send_message(
            requester,
            f"Received {len(prepared.outcomes)} lines - Valid: {valid} - Skipped: {invalid}\n"
            f"Starting {valid} entries with concurrency x{self.settings.concurrency}...",
        )

        def progress(batch_id: str, done: int, total: int) -> None:
            self.channel.send_message(requester, f"Progress {done}/{total}")

        report = on_progress or progress
        report(prepared.batch_id, 0, valid)
        summary, summary_path = await self.execute(prepared, on_progress=report)

        if on_complete:
            on_complete(prepared.batch_id, summary)
        else:
            self.channel.send_message(requester, completion_text(summary))

        return SubmitResult(
            batch_id=prepared.batch_id,
            valid=valid,
            invalid=invalid,
            summary=summary,
            summary_path=str(summary_path),
        )

    def export(self, requester: str) -> Path:
        batch_dir = self.storage.latest_batch_dir(requester)
        if batch_dir is None:
            self.channel.send_message(requester, "No batch found to export yet.")
            raise NoBatchError(f"no batch found for requester {requester}")

        archive_path = self.storage.package_archive(batch_dir)
        try:
            check_archive_size(archive_path, self.settings.archive_max_bytes)
        except ArchiveTooLargeError as exc:
            self.channel.send_message(requester, f"{exc}. Please reduce batch size.")
            raise
        self.channel.send_document(requester, archive_path, "results.zip")
        return archive_path

    def clean(self, requester: str) -> Path:
        path = self.storage.clean(requester)
        self.channel.send_message(requester, "Cleared all stored screenshots & files.")
        return path

    def _scheduler(
        self,
        capability: InteractionCapability,
        batch_dir: Path,
        on_complete: Callable[[AttemptResult], None],
    ) -> BoundedScheduler:
        settings = self.settings
        executor = AttemptExecutor(
            capability,
            batch_dir,
            field_timeout_ms=settings.field_timeout_ms,
            submit_timeout_ms=settings.submit_timeout_ms,
            settle_ms=settings.settle_ms,
            classify_timeout_ms=settings.classify_timeout_ms,
            poll_interval_ms=settings.poll_interval_ms,
        )
        return BoundedScheduler(
            executor.attempt,
            concurrency_limit=settings.concurrency,
            per_attempt_timeout=settings.entry_timeout_ms / 1000,
            max_retries=settings.retry_errors,
            retry_delay=settings.retry_delay_ms / 1000,
            retry_jitter=settings.retry_jitter_ms / 1000,
            cooldown=(settings.serial_cooldown_min_ms / 1000, settings.serial_cooldown_max_ms / 1000),
            on_complete=on_complete,
            on_pass=self._log_pass,
        )

    def _log_pass(self, record: Record, pass_no: int, outcome: AttemptOutcome) -> None:
        logger.info(
            "attempt pass finished",
            extra={
                "record_index": record.index,
                "pass_no": pass_no,
                "status": outcome.status.value,
                "error_kind": outcome.error_kind,
            },
        )


def completion_text(summary: BatchSummary) -> str:
    counts = summary.counts
    return (
        f"Done. Success: {summary.succeeded} - Failed: {summary.failed}\n"
        f"Matched: {counts.get('matched', 0)} - Mismatched: {counts.get('mismatched', 0)} - "
        f"Indeterminate: {counts.get('indeterminate', 0)}\n"
        "Use export to download the zip of this batch."
    )
