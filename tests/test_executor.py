import asyncio
from pathlib import Path
import re

import pytest

from batchverify.executor import AttemptExecutor, classify
from batchverify.schemas import AttemptStatus, Record
from tests.fakes import FakeCapability, FakeSession


RECORD = Record(index=3, last_name="Van Der Berg", dob="02/23/1961", zip="30331", last4="9631")


def make_executor(capability: FakeCapability, artifact_dir: Path) -> AttemptExecutor:
    return AttemptExecutor(
        capability,
        artifact_dir,
        field_timeout_ms=50,
        submit_timeout_ms=50,
        settle_ms=0,
        classify_timeout_ms=100,
        poll_interval_ms=5,
    )


def run_attempt(session: FakeSession, artifact_dir: Path):
    capability = FakeCapability(lambda: session)
    return asyncio.run(make_executor(capability, artifact_dir).attempt(RECORD))


def test_matched_attempt_fills_fields_and_captures(tmp_path: Path) -> None:
    session = FakeSession(texts=[(0, "Identity verified. We sent a security code.")])

    outcome = run_attempt(session, tmp_path)

    assert outcome.status == AttemptStatus.MATCHED
    assert session.filled == {"last_name": "Van Der Berg", "dob": "02/23/1961", "zip": "30331", "last4": "9631"}
    assert outcome.artifact is not None
    assert Path(outcome.artifact).exists()
    assert session.closed is True


def test_mismatch_vocabulary_classifies_mismatched(tmp_path: Path) -> None:
    outcome = run_attempt(FakeSession(texts=[(0, "We were unable to confirm your identity")]), tmp_path)

    assert outcome.status == AttemptStatus.MISMATCHED
    assert outcome.error_kind is None


def test_mismatch_wins_when_both_vocabularies_visible(tmp_path: Path) -> None:
    session = FakeSession(texts=[(0, "Identity verified"), (0, "Details do not match our records")])

    outcome = run_attempt(session, tmp_path)

    assert outcome.status == AttemptStatus.MISMATCHED


def test_earlier_poll_verdict_is_not_overturned() -> None:
    session = FakeSession(texts=[(0, "Verification success"), (40, "Information does not match")])

    status = asyncio.run(classify(session, timeout_ms=200, poll_interval_ms=5))

    assert status == AttemptStatus.MATCHED


def test_classify_keeps_polling_until_evidence_appears() -> None:
    session = FakeSession(texts=[(20, "Unable to verify")])

    status = asyncio.run(classify(session, timeout_ms=500, poll_interval_ms=5))

    assert status == AttemptStatus.MISMATCHED
    assert session.find_calls > 20


def test_no_evidence_is_indeterminate(tmp_path: Path) -> None:
    session = FakeSession(texts=[])

    outcome = run_attempt(session, tmp_path)

    assert outcome.status == AttemptStatus.INDETERMINATE
    assert outcome.artifact is not None
    assert session.closed is True


def test_missing_fields_report_which_were_found(tmp_path: Path) -> None:
    session = FakeSession(missing_fields=("dob", "last4"))

    outcome = run_attempt(session, tmp_path)

    assert outcome.status == AttemptStatus.FAILED
    assert outcome.error_kind == "fields_not_found"
    assert "last_name=True" in outcome.message
    assert "dob=False" in outcome.message
    assert "last4=False" in outcome.message
    assert outcome.artifact is not None
    assert session.closed is True


def test_missing_submit_control(tmp_path: Path) -> None:
    session = FakeSession(submit=False)

    outcome = run_attempt(session, tmp_path)

    assert outcome.status == AttemptStatus.FAILED
    assert outcome.error_kind == "no_submit_control"
    assert session.closed is True


def test_session_exception_becomes_failed_outcome(tmp_path: Path) -> None:
    session = FakeSession(fill_error=RuntimeError("frame was detached"))

    outcome = run_attempt(session, tmp_path)

    assert outcome.status == AttemptStatus.FAILED
    assert outcome.error_kind == "failed"
    assert outcome.message == "frame was detached"
    assert session.closed is True


def test_open_session_failure_has_no_artifact(tmp_path: Path) -> None:
    capability = FakeCapability(open_error=RuntimeError("browser crashed"))

    outcome = asyncio.run(make_executor(capability, tmp_path).attempt(RECORD))

    assert outcome.status == AttemptStatus.FAILED
    assert outcome.message == "browser crashed"
    assert outcome.artifact is None
    assert capability.sessions == []


def test_capture_failure_does_not_change_verdict(tmp_path: Path) -> None:
    session = FakeSession(texts=[(0, "Identity verified")], fail_capture=True)

    outcome = run_attempt(session, tmp_path)

    assert outcome.status == AttemptStatus.MATCHED
    assert outcome.artifact is None
    assert session.closed is True


class HangingSession(FakeSession):
    async def find_text(self, pattern: re.Pattern[str]) -> bool:
        await asyncio.sleep(30)
        return False


def test_cancelled_attempt_still_closes_session(tmp_path: Path) -> None:
    session = HangingSession()
    executor = make_executor(FakeCapability(lambda: session), tmp_path)

    async def scenario() -> None:
        task = asyncio.create_task(executor.attempt(RECORD))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    assert session.closed is True
    assert len(session.captured) == 1
    assert Path(session.captured[0]).exists()


def test_artifact_path_is_filesystem_safe(tmp_path: Path) -> None:
    executor = make_executor(FakeCapability(), tmp_path)

    path = executor.artifact_path(RECORD)

    assert path.parent == tmp_path
    assert re.fullmatch(r"003_Van_Der_Berg_9631_\d+\.jpg", path.name)


def test_artifact_path_uses_input_line(tmp_path: Path) -> None:
    executor = make_executor(FakeCapability(), tmp_path)
    record = Record(index=2, last_name="Turing", dob="06/23/2012", zip="60601", last4="4321", line=4)

    assert executor.artifact_path(record).name.startswith("004_Turing_4321_")
