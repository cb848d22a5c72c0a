"""Tests for file IO helpers."""

from __future__ import annotations

import codecs
from datetime import datetime
from pathlib import Path

from inkwell.utils.file_io import artifact_stem, read_text, unique_stem, write_text


def test_write_text_creates_parents_and_replaces_atomically(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "report.txt"

    write_text(target, "first\r\nline")
    write_text(target, "second")

    assert target.read_text(encoding="utf-8") == "second"
    assert [path.name for path in target.parent.iterdir()] == ["report.txt"]


def test_read_text_strips_bom_and_normalizes_newlines(tmp_path: Path) -> None:
    target = tmp_path / "prompt.txt"
    target.write_bytes(codecs.BOM_UTF8 + "one\r\ntwo\rthree".encode("utf-8"))

    assert read_text(target) == "one\ntwo\nthree"


def test_read_text_detects_utf16(tmp_path: Path) -> None:
    target = tmp_path / "prompt.txt"
    target.write_bytes(codecs.BOM_UTF16_LE + "Café".encode("utf-16-le"))

    assert read_text(target) == "Café"


def test_artifact_stem_sanitizes_tool_id() -> None:
    instant = datetime(2025, 3, 1, 14, 30, 5)

    assert artifact_stem("copy_editing", instant) == "copy_editing_20250301T143005"
    assert artifact_stem("line edit/v2", instant) == "line_edit_v2_20250301T143005"
    assert artifact_stem("  ", instant) == "report_20250301T143005"


def test_unique_stem_counts_past_existing_files(tmp_path: Path) -> None:
    assert unique_stem(tmp_path, "proofreader_20250301T143005") == "proofreader_20250301T143005"

    (tmp_path / "proofreader_20250301T143005.txt").write_text("first", encoding="utf-8")
    (tmp_path / "proofreader_20250301T143005_2_thinking.txt").write_text("second", encoding="utf-8")

    assert unique_stem(tmp_path, "proofreader_20250301T143005") == "proofreader_20250301T143005_2"
    assert (
        unique_stem(tmp_path, "proofreader_20250301T143005", (".txt", "_thinking.txt"))
        == "proofreader_20250301T143005_3"
    )
    assert unique_stem(tmp_path / "missing", "report_x") == "report_x"
