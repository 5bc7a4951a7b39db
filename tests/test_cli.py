import json

import pytest
from click.testing import CliRunner

from recon.errors import FileFormatError
from scripts.cli import main


@pytest.fixture
def inputs(tmp_path):
    """A small file/canonical pair where employee 2 is off by 40."""
    file_path = tmp_path / "payouts.csv"
    file_path.write_text(
        "Employee ID,Name,Store,Total\n"
        "0001,Ana,10,100\n"
        "0002,Ben,10,90\n"
    )
    canonical_path = tmp_path / "canonical.json"
    canonical_path.write_text(
        json.dumps(
            [
                {"entity_id": "1", "entity_name": "Ana", "period_key": "2024-01", "total_amount": 100, "group_key": "10"},
                {"entity_id": "2", "entity_name": "Ben", "period_key": "2024-01", "total_amount": 50, "group_key": "10"},
            ]
        )
    )
    return file_path, canonical_path


def _invoke(args):
    return CliRunner().invoke(main, args, env={"OPENROUTER_API_KEY": ""})


async def _no_columns(*args, **kwargs):
    raise FileFormatError("File has no columns")


class TestMap:
    def test_deterministic_mapping_without_api_key(self, inputs):
        file_path, canonical_path = inputs
        result = _invoke(["map", str(file_path), "-c", str(canonical_path), "-q"])
        assert result.exit_code == 0, result.output
        assert "Columns (4):" in result.output
        assert "entity_id" in result.output
        assert "deterministic" in result.output

    def test_incomplete_mapping_is_a_usage_error(self, tmp_path, inputs):
        _, canonical_path = inputs
        file_path = tmp_path / "notes.csv"
        file_path.write_text("Notes,Comment\nx,y\n")
        result = _invoke(["map", str(file_path), "-c", str(canonical_path), "--no-ai", "-q"])
        assert result.exit_code == 1
        assert "entity id" in result.output or "total" in result.output


    def test_file_format_error_is_a_usage_error(self, inputs, monkeypatch):
        file_path, canonical_path = inputs
        monkeypatch.setattr("scripts.cli.map_columns", _no_columns)
        result = _invoke(["map", str(file_path), "-c", str(canonical_path), "--no-ai", "-q"])
        assert result.exit_code == 1
        assert "File has no columns" in result.output

class TestDepth:
    def test_layer_plan(self, inputs):
        file_path, canonical_path = inputs
        result = _invoke(["depth", str(file_path), "-c", str(canonical_path), "--no-ai", "-q"])
        assert result.exit_code == 0, result.output
        assert "Max layer: grouping" in result.output
        assert "component  no" in result.output

    def test_file_format_error_is_a_usage_error(self, inputs, monkeypatch):
        file_path, canonical_path = inputs
        monkeypatch.setattr("scripts.cli.map_columns", _no_columns)
        result = _invoke(["depth", str(file_path), "-c", str(canonical_path), "--no-ai", "-q"])
        assert result.exit_code == 1
        assert "File has no columns" in result.output

    def test_periods_listed(self, inputs):
        file_path, canonical_path = inputs
        file_path.write_text("Employee ID,Month,Total\n1,2024-01,100\n2,2024-01,50\n2,2024-02,999\n")
        result = _invoke(["depth", str(file_path), "-c", str(canonical_path), "--no-ai", "-q"])
        assert result.exit_code == 0, result.output
        assert "Periods (Month):" in result.output
        assert "January 2024         2 row(s)" in result.output
        assert "file only:          2024-02" in result.output


class TestRun:
    def test_degraded_exit_code_and_outputs(self, inputs, tmp_path):
        file_path, canonical_path = inputs
        out_dir = tmp_path / "out"
        result = _invoke(
            ["run", str(file_path), "-c", str(canonical_path), "--no-ai", "-q", "-o", str(out_dir)]
        )
        assert result.exit_code == 1, result.output
        assert result.output.startswith("Status: degraded")
        report = json.loads((out_dir / "report.json").read_text())
        assert report["status"] == "degraded"
        assert (out_dir / "employees.csv").exists()

    def test_ok_exit_code(self, inputs, tmp_path):
        file_path, canonical_path = inputs
        file_path.write_text("Employee ID,Total\n1,100\n2,50\n")
        result = _invoke(["run", str(file_path), "-c", str(canonical_path), "--no-ai", "-q"])
        assert result.exit_code == 0, result.output
        assert result.output.startswith("Status: ok")

    def test_failed_exit_code(self, inputs, tmp_path):
        _, canonical_path = inputs
        file_path = tmp_path / "notes.csv"
        file_path.write_text("Notes,Comment\nx,y\n")
        result = _invoke(["run", str(file_path), "-c", str(canonical_path), "--no-ai", "-q"])
        assert result.exit_code == 2, result.output
        assert "incomplete_mapping" in result.output

    def test_period_filter(self, inputs, tmp_path):
        file_path, canonical_path = inputs
        file_path.write_text("Employee ID,Month,Total\n1,2024-01,100\n2,2024-01,50\n2,2024-02,999\n")
        result = _invoke(
            ["run", str(file_path), "-c", str(canonical_path), "--no-ai", "-q", "-p", "2024-01"]
        )
        assert result.exit_code == 0, result.output
        assert "Period: 2024-01" in result.output
