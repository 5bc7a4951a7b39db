import json

import polars as pl

from recon.errors import IncompleteMappingError
from recon.orchestrator import failed_report, run_layers
from recon.report import format_report, report_to_dict, write_report
from tests.conftest import _mapping, _parsed, _result

MAPPING = _mapping(
    {
        "ID": "entity_id",
        "Total": "total_amount",
        "Optical": "component:optical",
        "Insurance": "component:insurance",
        "Store": "group",
    }
)


def _report():
    parsed = _parsed(
        [
            {"ID": "1", "Total": "1000", "Optical": "800", "Insurance": "200", "Store": "10"},
            {"ID": "2", "Total": "90", "Optical": "45", "Insurance": "45", "Store": "20"},
        ]
    )
    canonical = [
        _result("1", 1000, {"optical": 500, "insurance": 500}, group="10"),
        _result("2", 50, {"optical": 25, "insurance": 25}, group="20"),
        _result("3", 10, {"optical": 10, "insurance": 0}, group="20"),
    ]
    return run_layers(MAPPING, parsed, canonical)


class TestReportToDict:
    def test_json_ready(self):
        report = _report()
        data = report_to_dict(report)
        json.dumps(data)
        assert data["status"] == "degraded"
        assert data["depth"]["max_layer"] == "grouping"
        assert [layer["layer"] for layer in data["layers"]] == [
            "aggregate",
            "employee",
            "component",
            "grouping",
        ]
        assert data["layers"][1]["worst_classification"] == "red"
        assert data["false_agreements"][0]["masked_impact"] == 600.0

    def test_component_rollups_and_findings(self):
        data = report_to_dict(_report())
        component = data["layers"][2]
        assert [r["component_id"] for r in component["components"]] == ["optical", "insurance"]
        assert component["summary"]["file_total"] == 1090.0
        assert component["summary"]["canonical_total"] == 1050.0
        assert data["findings"][0]["pattern"] == "false_agreement"
        assert data["findings"][0]["severity"] == "critical"
        assert data["depth"]["periods"]["rows_per_period"] == {}

    def test_failed_report(self):
        data = report_to_dict(failed_report(IncompleteMappingError("nothing mapped")))
        assert data["status"] == "failed"
        assert data["layers"] == []
        assert data["depth"] is None


class TestWriteReport:
    def test_files(self, tmp_path):
        paths = write_report(_report(), tmp_path / "out")
        assert [p.name for p in paths] == [
            "report.json",
            "employees.csv",
            "components.csv",
            "component_totals.csv",
            "groups.csv",
        ]
        employees = pl.read_csv(tmp_path / "out" / "employees.csv", infer_schema_length=0)
        assert employees["entity_id"].to_list() == ["1", "2", "3"]
        components = pl.read_csv(tmp_path / "out" / "components.csv")
        assert components.height == 4
        groups = pl.read_csv(tmp_path / "out" / "groups.csv")
        assert groups.height == 2
        totals = pl.read_csv(tmp_path / "out" / "component_totals.csv")
        assert totals["component_id"].to_list() == ["optical", "insurance"]
        assert totals["file_total"].to_list() == [845.0, 245.0]
        assert totals["canonical_total"].to_list() == [525.0, 525.0]
        assert totals["exact_count"].to_list() == [0, 0]

    def test_empty_tables_still_have_headers(self, tmp_path):
        write_report(failed_report(RuntimeError("boom")), tmp_path)
        header = (tmp_path / "groups.csv").read_text().splitlines()[0]
        assert header.startswith("group_key,file_total")


class TestFormatReport:
    def test_summary_text(self):
        text = format_report(_report())
        assert text.startswith("Status: degraded")
        assert "[employee]" in text
        assert "False agreements (1):" in text
        assert "masked 600.00" in text
        assert "[grouping] 2 group(s) compared" in text
        assert "optical" in text and "exact 0/2" in text
        assert "Findings (" in text
        assert "[critical]" in text

    def test_row_limit(self):
        text = format_report(_report(), max_rows=1)
        assert "... 1 more" in text
