"""Tests for report persistence helpers."""

import json

from mcp_server_deep_research.utils import safe_filename, save_report, write_report_file


def test_safe_filename():
    assert safe_filename("What is CRISPR? (2024)") == "What_is_CRISPR___2024"
    assert safe_filename("???") == "report"
    assert len(safe_filename("x" * 100)) == 30


def test_save_report_with_metadata(tmp_path):
    path = save_report("# Report", prefix="research_gene editing", metadata={"depth": 2}, results_dir=tmp_path)

    assert path.parent == tmp_path
    assert path.suffix == ".md"
    assert "research_gene_editing" in path.name
    assert path.read_text() == "# Report"
    meta = json.loads(path.with_suffix(".json").read_text())
    assert meta["depth"] == 2
    assert meta["file"] == path.name


def test_save_report_unique_names(tmp_path):
    first = save_report("a", results_dir=tmp_path)
    second = save_report("b", results_dir=tmp_path)
    assert first != second


def test_write_report_file_creates_parents(tmp_path):
    target = tmp_path / "nested" / "dir" / "output.md"
    assert write_report_file(target, "content") == target
    assert target.read_text() == "content"
