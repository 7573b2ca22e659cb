from enum import Enum
import random


class PassState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RETRY_WAIT = "retry_wait"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class InvalidTransitionError(RuntimeError):
    pass


class RetryExhaustedError(RuntimeError):
    def __init__(self, passes: int, last_error: str, error_kind: str | None = None) -> None:
        super().__init__(f"gave up after {passes} passes: {last_error}")
        self.passes = passes
        self.last_error = last_error
        self.error_kind = error_kind


class RetryTracker:
    """Pass bookkeeping for one record: at most 1 + max_retries passes."""

    def __init__(self, max_retries: int) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.state = PassState.PENDING
        self.passes = 0
        self.last_error = ""
        self.last_error_kind: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (PassState.SUCCEEDED, PassState.FAILED)

    def _require(self, *allowed: PassState) -> None:
        if self.state not in allowed:
            names = ", ".join(state.value for state in allowed)
            raise InvalidTransitionError(f"expected state in ({names}), got {self.state.value}")

    def start_pass(self) -> int:
        self._require(PassState.PENDING, PassState.RETRY_WAIT)
        self.passes += 1
        self.state = PassState.RUNNING
        return self.passes

    def record_success(self) -> None:
        self._require(PassState.RUNNING)
        self.state = PassState.SUCCEEDED

    def record_failure(self, error: str, error_kind: str | None = None) -> PassState:
        self._require(PassState.RUNNING)
        self.last_error = error
        self.last_error_kind = error_kind
        self.state = PassState.FAILED if self.passes > self.max_retries else PassState.RETRY_WAIT
        return self.state

    def exhausted(self) -> RetryExhaustedError:
        self._require(PassState.FAILED)
        return RetryExhaustedError(self.passes, self.last_error, self.last_error_kind)


def retry_delay_seconds(base_seconds: float, jitter_seconds: float = 0.0, rng: random.Random | None = None) -> float:
    # Fixed delay plus bounded jitter, not exponential.
    if jitter_seconds <= 0:
        return max(0.0, base_seconds)
    source = rng or random
    return max(0.0, base_seconds + source.uniform(0.0, jitter_seconds))
