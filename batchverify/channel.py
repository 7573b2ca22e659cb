from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
import shutil
from typing import Protocol

from batchverify.config import Settings
from batchverify.storage import safe_name


EXAMPLE_LINE = "Martines,02/23/1961,30331,9631"


class Channel(Protocol):
    def send_message(self, requester: str, text: str) -> None: ...

    def send_document(self, requester: str, path: Path, filename: str) -> None: ...


def is_approved(requester: str, approved: Sequence[str]) -> bool:
    # An empty allow-list lets everyone in.
    return not approved or str(requester).strip() in approved


def usage_text(settings: Settings) -> str:
    return (
        "Format (one per line):\n"
        "LASTNAME,DOB,ZIP,LAST4\n"
        f"e.g. {EXAMPLE_LINE}\n"
        "\n"
        "- Separators: comma or pipe\n"
        "- DOB accepted: MM/DD/YYYY, M/D/YY, MM-DD-YYYY, YYYY-MM-DD\n"
        "- ZIP: 12345 or 12345-6789\n"
        "- LAST4: exactly 4 digits\n"
        "\n"
        f"MAX_ENTRIES={settings.max_entries}, CONCURRENCY={settings.concurrency}, "
        f"TIMEOUT={settings.entry_timeout_ms}ms, RETRIES={settings.retry_errors}"
    )


class ConsoleChannel:
    def send_message(self, requester: str, text: str) -> None:
        print(f"[{requester}] {text}", flush=True)

    def send_document(self, requester: str, path: Path, filename: str) -> None:
        print(f"[{requester}] document {filename}: {path}", flush=True)


class OutboxChannel:
    """Writes messages and documents under <root>/<requester>/ for pickup."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _dir(self, requester: str) -> Path:
        path = self.root / safe_name(requester)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def send_message(self, requester: str, text: str) -> None:
        stamp = datetime.now(UTC).isoformat()
        with (self._dir(requester) / "messages.log").open("a", encoding="utf-8") as outfile:
            outfile.write(f"{stamp} {text}\n")

    def send_document(self, requester: str, path: Path, filename: str) -> None:
        shutil.copyfile(path, self._dir(requester) / filename)
