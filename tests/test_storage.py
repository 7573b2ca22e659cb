import json
from pathlib import Path
import zipfile

import pytest

from batchverify.aggregator import aggregate
from batchverify.storage import ArchiveTooLargeError, BatchStorage, check_archive_size, safe_name


def test_safe_name_replaces_path_characters() -> None:
    assert safe_name("../etc/passwd") == ".._etc_passwd"
    assert safe_name("x" * 300) == "x" * 100


def test_summary_and_archive_round_out_a_batch(tmp_path: Path) -> None:
    storage = BatchStorage(tmp_path)
    batch_dir = storage.ensure_batch_workspace("12345", "batch_2026-03-01_10-00-00_abc123")
    (batch_dir / "001_Smith_1234_1.jpg").write_bytes(b"jpeg")

    summary = aggregate([], batch_id="batch_2026-03-01_10-00-00_abc123", concurrency=1, max_retries=1)
    summary_path = storage.write_summary(batch_dir, summary)
    archive_path = storage.package_archive(batch_dir)

    assert summary_path.name == "results.json"
    assert json.loads(summary_path.read_text(encoding="utf-8"))["meta"]["batch_id"] == summary.batch_id
    assert archive_path == tmp_path / "requester_12345" / "latest_export.zip"
    with zipfile.ZipFile(archive_path) as archive:
        assert sorted(archive.namelist()) == ["001_Smith_1234_1.jpg", "results.json"]


def test_latest_batch_dir_picks_newest_batch(tmp_path: Path) -> None:
    storage = BatchStorage(tmp_path)
    assert storage.latest_batch_dir("7") is None

    storage.ensure_batch_workspace("7", "batch_2026-03-01_10-00-00_aaaaaa")
    newest = storage.ensure_batch_workspace("7", "batch_2026-03-02_09-00-00_bbbbbb")
    (storage.requester_dir("7") / "notes").mkdir()

    assert storage.latest_batch_dir("7") == newest


def test_oversize_archive_is_reported(tmp_path: Path) -> None:
    archive = tmp_path / "latest_export.zip"
    archive.write_bytes(b"0" * 2048)

    assert check_archive_size(archive, 4096) == 2048
    with pytest.raises(ArchiveTooLargeError) as excinfo:
        check_archive_size(archive, 1024)
    assert excinfo.value.size_bytes == 2048
    assert archive.exists()


def test_clean_empties_requester_folder(tmp_path: Path) -> None:
    storage = BatchStorage(tmp_path)
    batch_dir = storage.ensure_batch_workspace("7", "batch_1")
    (batch_dir / "a.jpg").write_bytes(b"x")

    root = storage.clean("7")

    assert root.is_dir()
    assert list(root.iterdir()) == []
