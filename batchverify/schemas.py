from dataclasses import dataclass, field
from enum import Enum


class AttemptStatus(str, Enum):
    MATCHED = "matched"
    MISMATCHED = "mismatched"
    INDETERMINATE = "indeterminate"
    FAILED = "failed"


PARSE_ERROR_MESSAGES = {
    "empty_line": "line is empty",
    "bad_field_count": "expected 4 fields (LASTNAME,DOB,ZIP,LAST4)",
    "invalid_lastname": "last name must contain letters",
    "invalid_dob": "date of birth is not a recognizable date",
    "invalid_zip": "zip must be 12345 or 12345-6789",
    "invalid_last4": "last 4 must be exactly 4 digits",
}


@dataclass(frozen=True)
class Record:
    index: int
    last_name: str
    dob: str
    zip: str
    last4: str
    raw: str = field(default="", compare=False)
    line: int = field(default=0, compare=False)

    def canonical_line(self) -> str:
        return f"{self.last_name},{self.dob},{self.zip},{self.last4}"


@dataclass(frozen=True)
class Rejection:
    index: int
    raw: str
    error: str
    value: str | None = None
    got: int | None = None

    @property
    def reason(self) -> str:
        message = PARSE_ERROR_MESSAGES.get(self.error, self.error)
        if self.got is not None:
            message = f"{message}, got {self.got}"
        if self.value is not None:
            message = f"{message} ({self.value})"
        return message

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"index": self.index, "line": self.index, "input": self.raw, "error": self.error}
        if self.value is not None:
            payload["value"] = self.value
        if self.got is not None:
            payload["got"] = self.got
        return payload


ParseOutcome = Record | Rejection


@dataclass(frozen=True)
class AttemptOutcome:
    status: AttemptStatus
    artifact: str | None = None
    message: str = ""
    error_kind: str | None = None


@dataclass(frozen=True)
class AttemptResult:
    index: int
    status: AttemptStatus
    artifact: str | None
    message: str
    error_kind: str | None
    passes: int
    input: str = ""
    line: int = 0

    @property
    def ok(self) -> bool:
        return self.status != AttemptStatus.FAILED

    def to_dict(self) -> dict[str, object]:
        return {
            "index": self.index,
            "line": self.line,
            "input": self.input,
            "ok": self.ok,
            "status": self.status.value,
            "screenshot": self.artifact,
            "error_kind": self.error_kind,
            "error": self.message,
            "passes": self.passes,
        }


@dataclass(frozen=True)
class BatchSummary:
    batch_id: str
    generated_at: str
    total_lines: int
    valid: int
    invalid: int
    concurrency: int
    max_retries: int
    counts: dict[str, int]
    rejected: list[Rejection] = field(default_factory=list)
    results: list[AttemptResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.ok)

    @property
    def failed(self) -> int:
        return self.counts.get(AttemptStatus.FAILED.value, 0)

    def to_dict(self) -> dict[str, object]:
        return {
            "meta": {
                "batch_id": self.batch_id,
                "when": self.generated_at,
                "count": self.total_lines,
                "valid": self.valid,
                "invalid": self.invalid,
                "concurrency": self.concurrency,
                "retries": self.max_retries,
            },
            "counts": dict(self.counts),
            "invalid": [rejection.to_dict() for rejection in self.rejected],
            "results": [result.to_dict() for result in self.results],
        }


@dataclass(frozen=True)
class SubmitResult:
    batch_id: str
    valid: int
    invalid: int
    summary: BatchSummary | None
    summary_path: str | None
