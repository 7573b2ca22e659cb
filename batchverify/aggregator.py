from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from batchverify.schemas import AttemptResult, AttemptStatus, BatchSummary, Rejection


def empty_counts() -> dict[str, int]:
    return {status.value: 0 for status in AttemptStatus}


@dataclass
class BatchState:
    """Live progress of one batch; mutated only by the completion callback."""

    total: int
    completed: int = 0
    counts: dict[str, int] = field(default_factory=empty_counts)
    results: list[AttemptResult] = field(default_factory=list)

    def record(self, result: AttemptResult) -> int:
        self.results.append(result)
        self.counts[result.status.value] += 1
        self.completed += 1
        return self.completed


def aggregate(
    results: Iterable[AttemptResult],
    *,
    batch_id: str,
    rejected: Iterable[Rejection] = (),
    total_lines: int | None = None,
    concurrency: int,
    max_retries: int,
    generated_at: datetime | None = None,
) -> BatchSummary:
    ordered = sorted(results, key=lambda result: result.index)
    rejections = sorted(rejected, key=lambda rejection: rejection.index)

    counts = empty_counts()
    for result in ordered:
        counts[result.status.value] += 1

    when = generated_at or datetime.now(UTC)
    return BatchSummary(
        batch_id=batch_id,
        generated_at=when.isoformat(),
        total_lines=total_lines if total_lines is not None else len(ordered) + len(rejections),
        valid=len(ordered),
        invalid=len(rejections),
        concurrency=concurrency,
        max_retries=max_retries,
        counts=counts,
        rejected=rejections,
        results=ordered,
    )
