from dataclasses import replace
from datetime import datetime
import re
import unicodedata

from batchverify.schemas import ParseOutcome, Record, Rejection


ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
US_DATE_RE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{2,4})$")
FIELD_SPLIT_RE = re.compile(r"[|,]")
LASTNAME_STRIP_RE = re.compile(r"[^a-zA-Z' -]")
ZIP_RE = re.compile(r"^\d{5}(?:-\d{4})?$")
LAST4_RE = re.compile(r"^\d{4}$")

# Two-digit years at or below the pivot land in the 2000s.
YEAR_PIVOT = 30

FALLBACK_DATE_FORMATS = (
    "%B %d, %Y",
    "%B %d %Y",
    "%b %d, %Y",
    "%b %d %Y",
    "%d %B %Y",
    "%d %b %Y",
    "%Y/%m/%d",
    "%Y.%m.%d",
    "%m.%d.%Y",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
)


def _canonical_date(month: int, day: int, year: int) -> str | None:
    if not 1 <= month <= 12 or not 1 <= day <= 31 or not 1900 <= year <= 2100:
        return None
    return f"{month:02d}/{day:02d}/{year:04d}"


def normalize_dob(text: str | None) -> str | None:
    """Return the date as MM/DD/YYYY, or None when no rule accepts it."""
    if not text:
        return None
    value = text.strip()

    match = ISO_DATE_RE.match(value)
    if match:
        year, month, day = (int(part) for part in match.groups())
        return _canonical_date(month, day, year)

    match = US_DATE_RE.match(value)
    if match:
        month, day = int(match.group(1)), int(match.group(2))
        year_text = match.group(3)
        year = int(year_text)
        if len(year_text) == 2:
            year = 2000 + year if year <= YEAR_PIVOT else 1900 + year
        return _canonical_date(month, day, year)

    for fmt in FALLBACK_DATE_FORMATS:
        try:
            parsed = datetime.strptime(value, fmt)
        except ValueError:
            continue
        return _canonical_date(parsed.month, parsed.day, parsed.year)
    return None


def normalize_line(raw: str) -> str:
    text = unicodedata.normalize("NFKC", raw)
    text = text.replace("\u00a0", " ").replace("\uff0c", ",").replace("\u3001", ",")
    return " ".join(text.split())


def parse_record(raw: str, index: int = 1) -> ParseOutcome:
    line = normalize_line(raw or "")
    if not line:
        return Rejection(index=index, raw=raw or "", error="empty_line")

    parts = [part.strip() for part in FIELD_SPLIT_RE.split(line)]
    if len(parts) != 4:
        return Rejection(index=index, raw=raw, error="bad_field_count", got=len(parts))

    last_name_raw, dob_raw, zip_raw, last4_raw = parts

    last_name = LASTNAME_STRIP_RE.sub("", last_name_raw).strip()
    if not last_name:
        return Rejection(index=index, raw=raw, error="invalid_lastname", value=last_name_raw)

    dob = normalize_dob(dob_raw)
    if dob is None:
        return Rejection(index=index, raw=raw, error="invalid_dob", value=dob_raw)

    if not ZIP_RE.match(zip_raw):
        return Rejection(index=index, raw=raw, error="invalid_zip", value=zip_raw)

    if not LAST4_RE.match(last4_raw):
        return Rejection(index=index, raw=raw, error="invalid_last4", value=last4_raw)

    return Record(
        index=index,
        last_name=last_name,
        dob=dob,
        zip=zip_raw,
        last4=last4_raw,
        raw=line,
        line=index,
    )


def parse_batch(text: str) -> list[ParseOutcome]:
    """Parse every non-blank, non-comment line in order.

    Rejections keep their line number as index. Valid records are numbered
    densely 1..V in input order and remember their line number in `line`.
    """
    lines = [line.strip() for line in re.split(r"\r?\n", text or "")]
    kept = [line for line in lines if line and not line.startswith("#")]

    outcomes: list[ParseOutcome] = []
    next_record_index = 1
    for line_no, line in enumerate(kept, start=1):
        outcome = parse_record(line, index=line_no)
        if isinstance(outcome, Record):
            outcome = replace(outcome, index=next_record_index)
            next_record_index += 1
        outcomes.append(outcome)
    return outcomes


def split_outcomes(outcomes: list[ParseOutcome]) -> tuple[list[Record], list[Rejection]]:
    valid: list[Record] = []
    invalid: list[Rejection] = []
    for outcome in outcomes:
        if isinstance(outcome, Record):
            valid.append(outcome)
        else:
            invalid.append(outcome)
    return valid, invalid
