import asyncio
from collections.abc import Awaitable, Callable, Sequence
import logging
import random

from batchverify.retry import PassState, RetryTracker, retry_delay_seconds
from batchverify.schemas import AttemptOutcome, AttemptResult, AttemptStatus, Record


logger = logging.getLogger(__name__)

AttemptFn = Callable[[Record], Awaitable[AttemptOutcome]]
CompletionCallback = Callable[[AttemptResult], None]
PassCallback = Callable[[Record, int, AttemptOutcome], None]

TIMEOUT_KIND = "timeout"
FAILED_KIND = "failed"


class AttemptTimeoutError(Exception):
    pass


class BoundedScheduler:
    """Runs attempts for a batch of records under a concurrency cap.

    Records are admitted FIFO by `concurrency_limit` workers. Every pass of an
    attempt races against `per_attempt_timeout`; a pass that loses is cancelled
    in the background and counted as a `timeout` failure. Failed passes are
    retried up to `max_retries` times. Each record yields exactly one
    AttemptResult, handed to `on_complete` as soon as it is final.
    """

    def __init__(
        self,
        attempt_fn: AttemptFn,
        *,
        concurrency_limit: int,
        per_attempt_timeout: float,
        max_retries: int,
        retry_delay: float,
        retry_jitter: float = 0.0,
        cooldown: tuple[float, float] = (0.0, 0.0),
        on_complete: CompletionCallback | None = None,
        on_pass: PassCallback | None = None,
        drain_timeout: float = 5.0,
        rng: random.Random | None = None,
    ) -> None:
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        if per_attempt_timeout <= 0:
            raise ValueError("per_attempt_timeout must be > 0")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.attempt_fn = attempt_fn
        self.concurrency_limit = concurrency_limit
        self.per_attempt_timeout = per_attempt_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.retry_jitter = retry_jitter
        self.cooldown = cooldown
        self.on_complete = on_complete
        self.on_pass = on_pass
        self.drain_timeout = drain_timeout
        self._rng = rng or random.Random()
        self._draining: set[asyncio.Task] = set()

    async def run(self, records: Sequence[Record]) -> list[AttemptResult]:
        queue: asyncio.Queue[Record] = asyncio.Queue()
        for record in records:
            queue.put_nowait(record)

        results: list[AttemptResult] = []
        worker_count = min(self.concurrency_limit, len(records))
        workers = [
            asyncio.create_task(self._worker(queue, results), name=f"attempt-worker-{slot}")
            for slot in range(worker_count)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                if not worker.done():
                    worker.cancel()
            # Cancelled workers hand their in-flight attempts to the drain set.
            await asyncio.gather(*workers, return_exceptions=True)
            await self._drain()
        return results

    async def _worker(self, queue: asyncio.Queue[Record], results: list[AttemptResult]) -> None:
        while True:
            try:
                record = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            result = await self.run_record(record)
            results.append(result)
            if self.on_complete:
                self.on_complete(result)

    async def run_record(self, record: Record) -> AttemptResult:
        if self.concurrency_limit == 1 and self.cooldown[1] > 0:
            await asyncio.sleep(self._rng.uniform(*self.cooldown))

        tracker = RetryTracker(self.max_retries)
        last_artifact: str | None = None

        for _ in range(self.max_retries + 1):
            pass_no = tracker.start_pass()
            try:
                outcome = await self._run_pass(record)
            except AttemptTimeoutError as exc:
                outcome = AttemptOutcome(status=AttemptStatus.FAILED, message=str(exc), error_kind=TIMEOUT_KIND)
            except Exception as exc:
                outcome = AttemptOutcome(
                    status=AttemptStatus.FAILED,
                    message=str(exc) or exc.__class__.__name__,
                    error_kind=FAILED_KIND,
                )

            if self.on_pass:
                self.on_pass(record, pass_no, outcome)

            if outcome.status != AttemptStatus.FAILED:
                tracker.record_success()
                return self._result(record, outcome, tracker.passes)

            last_artifact = outcome.artifact or last_artifact
            state = tracker.record_failure(outcome.message or "attempt failed", outcome.error_kind or FAILED_KIND)
            logger.warning(
                "attempt pass failed",
                extra={
                    "record_index": record.index,
                    "pass_no": pass_no,
                    "error_kind": outcome.error_kind,
                    "will_retry": state == PassState.RETRY_WAIT,
                },
            )
            if state == PassState.RETRY_WAIT:
                await asyncio.sleep(retry_delay_seconds(self.retry_delay, self.retry_jitter, self._rng))

        exhausted = tracker.exhausted()
        return AttemptResult(
            index=record.index,
            status=AttemptStatus.FAILED,
            artifact=last_artifact,
            message=exhausted.last_error,
            error_kind=exhausted.error_kind,
            passes=exhausted.passes,
            input=record.canonical_line(),
            line=record.line,
        )

    async def _run_pass(self, record: Record) -> AttemptOutcome:
        task = asyncio.create_task(self.attempt_fn(record), name=f"attempt-{record.index}")
        try:
            done, _ = await asyncio.wait({task}, timeout=self.per_attempt_timeout)
        except asyncio.CancelledError:
            task.cancel()
            self._track_draining(task)
            raise

        if task in done:
            return task.result()

        # The attempt keeps unwinding in the background; its session is released there.
        task.cancel()
        self._track_draining(task)
        raise AttemptTimeoutError(f"timeout after {self.per_attempt_timeout:g}s")

    def _track_draining(self, task: asyncio.Task) -> None:
        self._draining.add(task)
        task.add_done_callback(self._forget_drained)

    def _forget_drained(self, task: asyncio.Task) -> None:
        self._draining.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("cancelled attempt raised while draining", extra={"task": task.get_name()})

    async def _drain(self) -> None:
        if not self._draining:
            return
        pending = set(self._draining)
        _, still_pending = await asyncio.wait(pending, timeout=self.drain_timeout)
        if still_pending:
            logger.warning("cancelled attempts still draining", extra={"pending": len(still_pending)})

    def _result(self, record: Record, outcome: AttemptOutcome, passes: int) -> AttemptResult:
        return AttemptResult(
            index=record.index,
            status=outcome.status,
            artifact=outcome.artifact,
            message=outcome.message,
            error_kind=outcome.error_kind,
            passes=passes,
            input=record.canonical_line(),
            line=record.line,
        )
