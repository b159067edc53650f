"""Tests for the batch processing CLI."""

import csv
import json
from pathlib import Path

import pytest

from src.cli import _find_documents, _write_output, main


@pytest.fixture
def cli_config(tmp_path: Path) -> Path:
    """Config file pointing the learning store at a temporary database."""
    config = tmp_path / "config.yaml"
    config.write_text(
        f"store:\n  db_path: {tmp_path / 'learning.db'}\nlog_level: WARNING\n",
        encoding="utf-8",
    )
    return config


@pytest.fixture
def statement_file(tmp_path: Path, statement_text: str) -> Path:
    path = tmp_path / "docs" / "extras.txt"
    path.parent.mkdir()
    path.write_text(statement_text, encoding="utf-8")
    return path


def _rows(csv_path: Path) -> list[dict[str, str]]:
    with open(csv_path, newline="", encoding="utf-8") as f:
        return list(csv.DictReader(f))


class TestFindDocuments:
    """Tests for _find_documents."""

    def test_expands_directories(self, tmp_path: Path) -> None:
        (tmp_path / "a.pdf").write_bytes(b"%PDF")
        (tmp_path / "b.txt").write_text("x")
        (tmp_path / "notes.docx").write_text("x")
        found = _find_documents([tmp_path])
        assert [p.name for p in found] == ["a.pdf", "b.txt"]

    def test_missing_paths_skipped(self, tmp_path: Path) -> None:
        assert _find_documents([tmp_path / "missing.pdf"]) == []


class TestWriteOutput:
    """Tests for _write_output."""

    def test_csv(self, tmp_path: Path) -> None:
        out = tmp_path / "out" / "tx.csv"
        _write_output([{"filename": "a.txt", "id": "1", "amount": "2.00", "rawLine": "x"}], out)
        rows = _rows(out)
        assert rows[0]["filename"] == "a.txt"
        assert "rawLine" not in rows[0]

    def test_json(self, tmp_path: Path) -> None:
        out = tmp_path / "tx.json"
        _write_output([{"id": "1", "description": "PLATĂ"}], out)
        assert json.loads(out.read_text(encoding="utf-8"))[0]["description"] == "PLATĂ"


class TestMain:
    """Tests for the CLI subcommands."""

    def test_process_to_csv(
        self, cli_config: Path, statement_file: Path, tmp_path: Path, capsys
    ) -> None:
        out = tmp_path / "tx.csv"
        main(["-c", str(cli_config), "process", str(statement_file.parent), "-o", str(out)])

        rows = _rows(out)
        assert [r["description"] for r in rows] == [
            "LIDL BUCURESTI",
            "PLATA KAUFLAND TIMISOARA",
            "TRANSFER SALARIU",
        ]
        assert rows[0]["category"] == "Alimente"
        assert rows[0]["detectedSource"] == "BCR"
        assert "Transactions: 3" in capsys.readouterr().out

    def test_process_with_hint(
        self, cli_config: Path, statement_file: Path, tmp_path: Path
    ) -> None:
        out = tmp_path / "tx.json"
        main(["-c", str(cli_config), "process", str(statement_file), "-o", str(out), "--hint", "bt"])
        rows = json.loads(out.read_text(encoding="utf-8"))
        assert {r["detectedSource"] for r in rows} == {"BT"}

    def test_all_documents_failing_exits(self, cli_config: Path, tmp_path: Path) -> None:
        empty = tmp_path / "empty.txt"
        empty.write_bytes(b"")
        with pytest.raises(SystemExit) as exc_info:
            main(["-c", str(cli_config), "process", str(empty), "-o", str(tmp_path / "o.csv")])
        assert exc_info.value.code == 1

    def test_no_documents(self, cli_config: Path, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["-c", str(cli_config), "process", str(tmp_path / "nothing")])
        assert exc_info.value.code == 1

    def test_feedback_then_stats(
        self, cli_config: Path, statement_file: Path, tmp_path: Path, capsys
    ) -> None:
        out = tmp_path / "tx.csv"
        main(["-c", str(cli_config), "process", str(statement_file), "-o", str(out)])
        transaction_id = _rows(out)[0]["id"]
        capsys.readouterr()

        main(["-c", str(cli_config), "feedback", transaction_id, "--category", "Restaurante"])
        assert "Feedback applied" in capsys.readouterr().out

        main(["-c", str(cli_config), "stats"])
        stats = json.loads(capsys.readouterr().out)
        assert stats["feedbackCount"] == 1
        assert stats["merchantCount"] > 0

    def test_feedback_needs_a_correction(self, cli_config: Path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["-c", str(cli_config), "feedback", "abc"])
        assert exc_info.value.code == 1

    def test_cleanup(self, cli_config: Path, capsys) -> None:
        main(["-c", str(cli_config), "cleanup"])
        removed = json.loads(capsys.readouterr().out)
        assert set(removed) == {"merchants", "feedback", "performance", "ocr_cache"}

    def test_export_and_import(self, cli_config: Path, tmp_path: Path, capsys) -> None:
        exported = tmp_path / "export" / "learned.json"
        main(["-c", str(cli_config), "export", str(exported)])
        data = json.loads(exported.read_text(encoding="utf-8"))
        assert data["merchants"]
        capsys.readouterr()

        main(["-c", str(cli_config), "import", str(exported)])
        counts = json.loads(capsys.readouterr().out)
        assert counts["merchants"] == len(data["merchants"])

    def test_import_missing_file(self, cli_config: Path, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["-c", str(cli_config), "import", str(tmp_path / "missing.json")])
        assert exc_info.value.code == 1

    def test_no_command_prints_help(self, cli_config: Path, capsys) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["-c", str(cli_config)])
        assert exc_info.value.code == 0
        assert "usage" in capsys.readouterr().out
