from datetime import datetime
import json
from pathlib import Path
import re
import shutil
import zipfile

from batchverify.schemas import BatchSummary


SUMMARY_FILENAME = "results.json"
EXPORT_FILENAME = "latest_export.zip"
UNSAFE_NAME_RE = re.compile(r"[^\w.\-]+")


class ArchiveTooLargeError(RuntimeError):
    def __init__(self, path: Path, size_bytes: int, max_bytes: int) -> None:
        super().__init__(
            f"export is {size_bytes / (1024 * 1024):.1f} MB, above the {max_bytes / (1024 * 1024):.0f} MB limit"
        )
        self.path = path
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes


def safe_name(value: str, limit: int = 100) -> str:
    return UNSAFE_NAME_RE.sub("_", value)[:limit]


def batch_stamp(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("%Y-%m-%d_%H-%M-%S")


def write_json(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as outfile:
        json.dump(payload, outfile, indent=2)
        outfile.write("\n")


def check_archive_size(path: Path, max_bytes: int) -> int:
    size_bytes = path.stat().st_size
    if size_bytes > max_bytes:
        raise ArchiveTooLargeError(path, size_bytes, max_bytes)
    return size_bytes


class BatchStorage:
    """Per-requester batch folders under one output root.

    Layout: <root>/requester_<id>/<batch_id>/ holds the captures and
    results.json; the export zip sits next to the batch folders.
    """

    def __init__(self, output_root: str | Path) -> None:
        self.output_root = Path(output_root)

    def requester_dir(self, requester: str) -> Path:
        return self.output_root / f"requester_{safe_name(requester)}"

    def ensure_batch_workspace(self, requester: str, batch_id: str) -> Path:
        path = self.requester_dir(requester) / batch_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def write_summary(self, batch_dir: Path, summary: BatchSummary) -> Path:
        path = batch_dir / SUMMARY_FILENAME
        write_json(path, summary.to_dict())
        return path

    def latest_batch_dir(self, requester: str) -> Path | None:
        root = self.requester_dir(requester)
        if not root.is_dir():
            return None
        batches = sorted(entry for entry in root.iterdir() if entry.is_dir() and entry.name.startswith("batch_"))
        return batches[-1] if batches else None

    def package_archive(self, batch_dir: Path, out_path: Path | None = None) -> Path:
        archive_path = out_path or batch_dir.parent / EXPORT_FILENAME
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
            for path in sorted(batch_dir.rglob("*")):
                if path.is_file():
                    archive.write(path, arcname=path.relative_to(batch_dir).as_posix())
        return archive_path

    def clean(self, requester: str) -> Path:
        root = self.requester_dir(requester)
        shutil.rmtree(root, ignore_errors=True)
        root.mkdir(parents=True, exist_ok=True)
        return root
