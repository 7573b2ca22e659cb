import asyncio
from collections.abc import Sequence
from dataclasses import replace
import logging
from pathlib import Path
import re
import time
from typing import Protocol

from batchverify.schemas import AttemptOutcome, AttemptStatus, Record
from batchverify.storage import safe_name


logger = logging.getLogger(__name__)

CANCEL_CAPTURE_TIMEOUT_S = 2.0

LAST_NAME_LOCATORS = (
    'label:has-text("Last Name") ~ input',
    'input[placeholder*="Last Name" i]',
    'input[name*="last" i]',
    'input[id*="last" i]',
)
DOB_LOCATORS = (
    'label:has-text("Date of Birth") ~ input',
    'input[placeholder*="Date of Birth" i]',
    'input[placeholder*="DOB" i]',
    'input[name*="dob" i]',
    'input[id*="dob" i]',
)
ZIP_LOCATORS = (
    'label:has-text("Zip") ~ input',
    'input[placeholder*="Zip" i]',
    'input[name*="zip" i]',
    'input[id*="zip" i]',
    'input[name*="postal" i]',
)
LAST4_LOCATORS = (
    'label:has-text("Last 4") ~ input',
    'label:has-text("Last 4 Digits of SSN") ~ input',
    'input[placeholder*="Last 4" i]',
    'input[name*="last4" i]',
    'input[id*="last4" i]',
    'input[name*="ssn" i][maxlength="4"]',
    'input[name*="ssn" i][aria-label*="Last 4" i]',
)
SUBMIT_LOCATORS = (
    'button:has-text("Continue")',
    'input[type="submit"][value*="Continue" i]',
    '[role="button"]:has-text("Continue")',
    'button:has-text("Next")',
    '[role="button"]:has-text("Next")',
    'button:has-text("Submit")',
    'input[type="submit"]',
    'button[type="submit"]',
)

MISMATCH_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"unable to confirm",
        r"does not match",
        r"doesn'?t match",
        r"not match",
        r"could not verify",
        r"unable to verify",
        r"invalid",
    )
)
SUCCESS_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"verified",
        r"security code",
        r"success",
        r"matches",
    )
)


class InteractionSession(Protocol):
    async def fill_field(self, candidates: Sequence[str], value: str, timeout_ms: int = ...) -> bool: ...

    async def click_control(self, candidates: Sequence[str], timeout_ms: int = ...) -> bool: ...

    async def find_text(self, pattern: re.Pattern[str]) -> bool: ...

    async def capture_artifact(self, path: str | Path) -> str: ...

    async def close(self) -> None: ...


class InteractionCapability(Protocol):
    async def open_session(self) -> InteractionSession: ...

    async def close(self) -> None: ...


class AttemptError(Exception):
    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind


async def scan_page(session: InteractionSession) -> AttemptStatus | None:
    """Single pass over the page text; mismatch evidence always wins."""
    for pattern in MISMATCH_PATTERNS:
        if await session.find_text(pattern):
            return AttemptStatus.MISMATCHED
    for pattern in SUCCESS_PATTERNS:
        if await session.find_text(pattern):
            return AttemptStatus.MATCHED
    return None


async def classify(
    session: InteractionSession,
    *,
    timeout_ms: int = 6500,
    poll_interval_ms: int = 250,
) -> AttemptStatus:
    """Poll the page until a verdict shows up or the deadline passes.

    The first poll with any evidence decides, so a later poll can never
    overturn an earlier verdict.
    """
    deadline = time.monotonic() + timeout_ms / 1000
    while True:
        verdict = await scan_page(session)
        if verdict is not None:
            return verdict
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return AttemptStatus.INDETERMINATE
        await asyncio.sleep(min(poll_interval_ms / 1000, remaining))


class AttemptExecutor:
    def __init__(
        self,
        capability: InteractionCapability,
        artifact_dir: str | Path,
        *,
        field_timeout_ms: int = 3500,
        submit_timeout_ms: int = 2500,
        settle_ms: int = 1500,
        classify_timeout_ms: int = 6500,
        poll_interval_ms: int = 250,
    ) -> None:
        self.capability = capability
        self.artifact_dir = Path(artifact_dir)
        self.field_timeout_ms = field_timeout_ms
        self.submit_timeout_ms = submit_timeout_ms
        self.settle_ms = settle_ms
        self.classify_timeout_ms = classify_timeout_ms
        self.poll_interval_ms = poll_interval_ms

    def artifact_path(self, record: Record) -> Path:
        # Named by input line so captures line up with the submitted batch.
        # Millisecond suffix keeps every pass's capture.
        position = record.line or record.index
        stem = safe_name(f"{position:03d}_{record.last_name.replace(' ', '_')}_{record.last4}")
        return self.artifact_dir / f"{stem}_{int(time.time() * 1000)}.jpg"

    async def attempt(self, record: Record) -> AttemptOutcome:
        session: InteractionSession | None = None
        captured = False
        try:
            try:
                session = await self.capability.open_session()
                outcome = await self._drive(session, record)
            except AttemptError as exc:
                outcome = AttemptOutcome(status=AttemptStatus.FAILED, message=str(exc), error_kind=exc.kind)
            except Exception as exc:
                logger.exception("attempt raised", extra={"record_index": record.index})
                outcome = AttemptOutcome(
                    status=AttemptStatus.FAILED,
                    message=str(exc) or exc.__class__.__name__,
                    error_kind="failed",
                )

            artifact = await self._capture(session, record) if session is not None else None
            captured = True
            return replace(outcome, artifact=artifact)
        finally:
            try:
                if session is not None and not captured:
                    await self._capture_after_cancel(session, record)
            finally:
                await self._release(session)

    async def _drive(self, session: InteractionSession, record: Record) -> AttemptOutcome:
        fields = (
            ("last_name", LAST_NAME_LOCATORS, record.last_name),
            ("dob", DOB_LOCATORS, record.dob),
            ("zip", ZIP_LOCATORS, record.zip),
            ("last4", LAST4_LOCATORS, record.last4),
        )
        filled: dict[str, bool] = {}
        for name, locators, value in fields:
            filled[name] = await session.fill_field(locators, value, timeout_ms=self.field_timeout_ms)

        if not all(filled.values()):
            detail = " ".join(f"{name}={ok}" for name, ok in filled.items())
            raise AttemptError("fields_not_found", f"could not locate all fields ({detail})")

        if not await session.click_control(SUBMIT_LOCATORS, timeout_ms=self.submit_timeout_ms):
            raise AttemptError("no_submit_control", "could not find a Continue/Next/Submit control")

        if self.settle_ms > 0:
            await asyncio.sleep(self.settle_ms / 1000)
        status = await classify(
            session,
            timeout_ms=self.classify_timeout_ms,
            poll_interval_ms=self.poll_interval_ms,
        )
        return AttemptOutcome(status=status)

    async def _capture(self, session: InteractionSession, record: Record) -> str | None:
        try:
            return await session.capture_artifact(self.artifact_path(record))
        except Exception as exc:
            logger.warning("artifact capture failed", extra={"record_index": record.index, "error": str(exc)})
            return None

    async def _capture_after_cancel(self, session: InteractionSession, record: Record) -> None:
        # Runs while the attempt is being cancelled; shielded and bounded.
        try:
            artifact = await asyncio.wait_for(
                asyncio.shield(self._capture(session, record)),
                timeout=CANCEL_CAPTURE_TIMEOUT_S,
            )
        except TimeoutError:
            logger.warning("artifact capture after cancel timed out", extra={"record_index": record.index})
            return
        if artifact:
            logger.info("captured cancelled attempt", extra={"record_index": record.index, "artifact": artifact})

    async def _release(self, session: InteractionSession | None) -> None:
        if session is None:
            return
        try:
            await session.close()
        except Exception as exc:
            logger.warning("session close failed", extra={"error": str(exc)})
