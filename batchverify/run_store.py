from datetime import UTC, datetime

from sqlalchemy.orm import Session

from batchverify.db_models import AttemptRecord, BatchRun, RejectedLine
from batchverify.schemas import AttemptResult, BatchSummary, Rejection


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def create_run(
    db: Session,
    *,
    batch_id: str,
    requester: str,
    total_lines: int,
    valid_records: int,
    invalid_records: int,
    concurrency: int,
    max_retries: int,
) -> BatchRun:
    run = BatchRun(
        batch_id=batch_id,
        requester=requester,
        status="queued",
        total_lines=total_lines,
        valid_records=valid_records,
        invalid_records=invalid_records,
        concurrency=concurrency,
        max_retries=max_retries,
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def mark_run_running(db: Session, run: BatchRun) -> None:
    run.status = "running"
    run.started_at = utc_now()
    run.error = None
    db.commit()


def store_rejections(db: Session, *, run_id: int, rejections: list[Rejection]) -> None:
    for rejection in rejections:
        db.add(
            RejectedLine(
                run_id=run_id,
                line_index=rejection.index,
                raw_line=rejection.raw,
                error=rejection.error,
                value=rejection.value,
            )
        )
    db.commit()


def store_attempt_result(db: Session, run: BatchRun, result: AttemptResult) -> None:
    db.add(
        AttemptRecord(
            run_id=run.id,
            record_index=result.index,
            line_number=result.line,
            input_line=result.input,
            status=result.status.value,
            passes=result.passes,
            artifact_path=result.artifact,
            error_kind=result.error_kind,
            message=result.message or None,
        )
    )
    run.completed_records += 1
    setattr(run, result.status.value, getattr(run, result.status.value) + 1)
    db.commit()


def mark_run_succeeded(db: Session, run: BatchRun, *, summary: BatchSummary, summary_path: str) -> None:
    run.status = "succeeded"
    run.completed_records = summary.valid
    for status, count in summary.counts.items():
        setattr(run, status, count)
    run.summary_path = summary_path
    run.completed_at = utc_now()
    run.error = None
    db.commit()


def mark_run_failed(db: Session, run: BatchRun, *, error: str) -> None:
    run.status = "failed"
    run.error = error
    run.completed_at = utc_now()
    db.commit()
