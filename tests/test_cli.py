"""
Tests for the command-line interface.
"""

import json
import pytest
import sys
from pathlib import Path
from unittest.mock import patch

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from vatdoc import cli


def run_cli(*argv):
    with patch.object(sys, "argv", ["vatdoc", *argv]), patch("vatdoc.cli.setup_logging"):
        cli.main()


class TestCLI:
    """Test cases for the vatdoc command."""

    def test_load_text_document(self, tmp_path):
        path = tmp_path / "invoice.txt"
        path.write_text("Total Amount VAT: €134.96", encoding="utf-8")

        document = cli.load_document(str(path), "PURCHASES")

        assert document == {"text": "Total Amount VAT: €134.96", "file_name": "invoice.txt", "category": "PURCHASES"}

    def test_load_spreadsheet_document(self, tmp_path):
        path = tmp_path / "orders.csv"
        path.write_text("Order,Tax\nA1,3.45\n")

        document = cli.load_document(str(path))

        assert document["text"] == ""
        assert document["spreadsheet_grid"].headers == ["Order", "Tax"]

    def test_process_command(self, tmp_path):
        path = tmp_path / "lease.txt"
        path.write_text("Total Amount VAT: €134.96", encoding="utf-8")
        output = tmp_path / "result.json"

        run_cli("process", str(path), "--category", "PURCHASES", "--output", str(output))

        data = json.loads(output.read_text())
        assert data["method"] == "PATTERN"
        assert data["purchase_tax"] == [134.96]
        assert data["summary"]["file_name"] == "lease.txt"

    def test_batch_command(self, tmp_path):
        docs = tmp_path / "docs"
        docs.mkdir()
        (docs / "a.txt").write_text("Total Amount VAT: €134.96", encoding="utf-8")
        (docs / "b.txt").write_text("Hello world", encoding="utf-8")
        output = tmp_path / "batch.json"

        run_cli("batch", "--input_dir", str(docs), "--category", "PURCHASES", "--pause", "0", "--output", str(output))

        data = json.loads(output.read_text())
        assert [d["file_name"] for d in data["documents"]] == ["a.txt", "b.txt"]
        assert data["totals"]["total_purchase_vat"] == 134.96
        assert data["totals"]["documents_needing_review"] == 1

    def test_batch_requires_input(self):
        with pytest.raises(SystemExit) as exc_info:
            run_cli("batch")

        assert exc_info.value.code == 1

    def test_missing_document(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            run_cli("process", str(tmp_path / "missing.txt"))

        assert exc_info.value.code == 1

    def test_no_command(self):
        with pytest.raises(SystemExit) as exc_info:
            run_cli()

        assert exc_info.value.code == 1
