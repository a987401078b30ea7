from __future__ import annotations

import shutil
import zipfile
from pathlib import Path

import pytest

from egov_viewer.notice_extractor import parser

SAMPLES = Path(__file__).resolve().parents[1] / "samples"


@pytest.fixture()
def sandbox(tmp_path: Path) -> Path:
    root = tmp_path / "uploads"
    (root / "案件A").mkdir(parents=True)
    (root / "案件B").mkdir()
    shutil.copy(SAMPLES / "bonus_notice.xml", root / "案件A" / "01_bonus.xml")
    (root / "案件A" / "02_broken.xml").write_text("<Root><Open></Root>", encoding="utf-8")
    shutil.copy(SAMPLES / "doc_notice.xml", root / "案件B" / "03_doc.xml")
    (root / "案件B" / "notes.txt").write_text("not a notice", encoding="utf-8")
    return root


def test_batch_isolates_malformed_documents(
    sandbox: Path, caplog: pytest.LogCaptureFixture
) -> None:
    results, files = parser.scan_directory(sandbox, sandbox)
    assert [result.source.path for result in results] == [
        "案件A/01_bonus.xml",
        "案件A/02_broken.xml",
        "案件B/03_doc.xml",
    ]
    first, broken, last = results
    assert first.ok
    assert first.record is not None
    assert first.record.notice_kind == "bonus"
    assert first.detected_xsl == "N7150001.xsl"
    assert not broken.ok
    assert broken.error is not None
    assert broken.detected_xsl is None
    assert last.ok

    assert files["案件A/02_broken.xml"].status == "error"
    assert files["案件A/01_bonus.xml"].row_count == 3
    assert files["案件B/03_doc.xml"].to_dict()["section_count"] == 1
    assert "Failed to parse 案件A/02_broken.xml: XML parse failed" in caplog.text


def test_parallel_extraction_keeps_input_order(sandbox: Path) -> None:
    serial, _ = parser.scan_directory(sandbox, sandbox)
    parallel, _ = parser.scan_directory(sandbox, sandbox, max_workers=3)
    assert [result.source.path for result in parallel] == [
        result.source.path for result in serial
    ]
    assert [result.record for result in parallel] == [result.record for result in serial]


def test_group_cases_by_first_folder(sandbox: Path) -> None:
    results, _ = parser.scan_directory(sandbox, sandbox)
    cases = parser.group_cases(results)
    assert list(cases) == ["案件A", "案件B"]
    assert len(cases["案件A"]) == 2


def test_zip_entries_are_extracted(tmp_path: Path) -> None:
    archive_path = tmp_path / "notices.zip"
    with zipfile.ZipFile(archive_path, "w") as archive:
        archive.write(SAMPLES / "summary_sheet.xml", "案件C/summary.xml")
        archive.write(SAMPLES / "doc_notice.xml", "doc.xml")
        archive.writestr("readme.txt", "ignored")
    results, files = parser.scan_directory(archive_path, tmp_path)
    assert sorted(files) == ["doc.xml", "案件C/summary.xml"]
    cases = parser.group_cases(results)
    assert set(cases) == {"案件C", parser.DEFAULT_CASE_NAME}
    assert all(result.ok for result in results)


def test_unreadable_archive_is_logged_and_skipped(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    (tmp_path / "broken.zip").write_bytes(b"not a zip")
    shutil.copy(SAMPLES / "doc_notice.xml", tmp_path / "doc.xml")
    results, _ = parser.scan_directory(tmp_path, tmp_path)
    assert [result.source.path for result in results] == ["doc.xml"]
    assert "broken.zip" in caplog.text


def test_single_file_keeps_default_case(tmp_path: Path) -> None:
    target = tmp_path / "doc.xml"
    shutil.copy(SAMPLES / "doc_notice.xml", target)
    sources = parser.collect_sources(target, tmp_path)
    assert [source.path for source in sources] == ["doc.xml"]
    assert sources[0].case_name == parser.DEFAULT_CASE_NAME


def _mark_first_entry_encrypted(archive_path: Path) -> None:
    raw = bytearray(archive_path.read_bytes())
    central_header = raw.index(b"PK\x01\x02")
    raw[central_header + 8] |= 0x01
    archive_path.write_bytes(bytes(raw))


def test_unreadable_zip_entry_does_not_stop_the_batch(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    shutil.copy(SAMPLES / "doc_notice.xml", tmp_path / "a.xml")
    archive_path = tmp_path / "b.zip"
    with zipfile.ZipFile(archive_path, "w") as archive:
        archive.write(SAMPLES / "summary_sheet.xml", "locked.xml")
        archive.write(SAMPLES / "bonus_notice.xml", "open.xml")
    _mark_first_entry_encrypted(archive_path)
    shutil.copy(SAMPLES / "doc_notice.xml", tmp_path / "c.xml")

    results, _ = parser.scan_directory(tmp_path, tmp_path)
    assert [result.source.path for result in results] == ["a.xml", "open.xml", "c.xml"]
    assert all(result.ok for result in results)
    assert "locked.xml" in caplog.text
