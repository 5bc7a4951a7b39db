import json

import polars as pl
import pytest

from recon.errors import FileFormatError
from recon.ingest import (
    canonical_results_from_records,
    load_canonical_results,
    load_parsed_file,
    parsed_file_from_records,
)


class TestLoadParsedFile:
    def test_csv_keeps_text(self, tmp_path):
        path = tmp_path / "payouts.csv"
        path.write_text("Employee ID,Total\n0042,\"1,200.50\"\n0043,80\n")
        parsed = load_parsed_file(path)
        assert parsed.headers == ("Employee ID", "Total")
        assert parsed.rows[0] == {"Employee ID": "0042", "Total": "1,200.50"}
        assert parsed.source_name == "payouts.csv"

    def test_tsv(self, tmp_path):
        path = tmp_path / "payouts.tsv"
        path.write_text("ID\tTotal\n7\t10\n")
        parsed = load_parsed_file(path)
        assert parsed.rows == ({"ID": "7", "Total": "10"},)

    def test_json(self, tmp_path):
        path = tmp_path / "payouts.json"
        path.write_text(json.dumps([{"ID": "1", "Total": 10.5}, {"ID": "2", "Total": 3}]))
        parsed = load_parsed_file(path)
        assert parsed.headers == ("ID", "Total")
        assert [r["ID"] for r in parsed.rows] == ["1", "2"]

    def test_parquet(self, tmp_path):
        path = tmp_path / "payouts.parquet"
        pl.DataFrame({"ID": ["1"], "Total": [12.0]}).write_parquet(path)
        parsed = load_parsed_file(path)
        assert parsed.rows == ({"ID": "1", "Total": 12.0},)

    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / "payouts.pdf"
        path.write_bytes(b"%PDF")
        with pytest.raises(FileFormatError, match="Unsupported"):
            load_parsed_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_parsed_file(tmp_path / "nope.csv")


class TestFromRecords:
    def test_list_of_dicts_unions_keys(self):
        parsed = parsed_file_from_records([{"A": 1}, {"B": 2}], source_name="x")
        assert parsed.headers == ("A", "B")
        assert parsed.rows[1] == {"A": None, "B": 2}

    def test_dict_of_lists(self):
        parsed = parsed_file_from_records({"A": [1, 2], "B": ["x", "y"]})
        assert parsed.rows == ({"A": 1, "B": "x"}, {"A": 2, "B": "y"})

    def test_dataframe(self):
        parsed = parsed_file_from_records(pl.DataFrame({"A": [1]}))
        assert parsed.headers == ("A",)

    def test_rejects_other_types(self):
        with pytest.raises(TypeError):
            parsed_file_from_records("A,B")


class TestCanonicalResults:
    def test_camel_case_records(self):
        (result,) = canonical_results_from_records(
            [
                {
                    "entityId": 101,
                    "entityName": "Ana",
                    "periodKey": "2024-01",
                    "totalAmount": "150.5",
                    "groupKey": 7,
                    "components": [
                        {"componentId": "optical", "componentName": "Optical", "amount": 100, "metrics": {"attainment": 95}},
                        {"componentId": "insurance", "amount": 50.5},
                    ],
                }
            ]
        )
        assert result.entity_id == "101"
        assert result.total_amount == 150.5
        assert result.group_key == "7"
        assert result.component("optical").metrics == {"attainment": 95.0}
        assert result.component("insurance").component_name == "insurance"

    def test_missing_required_field(self):
        with pytest.raises(FileFormatError, match="entity_id"):
            canonical_results_from_records([{"total_amount": 1}])

    def test_load_wrapped_results(self, tmp_path):
        path = tmp_path / "canonical.json"
        path.write_text(json.dumps({"results": [{"entity_id": "1", "total_amount": 5}]}))
        (result,) = load_canonical_results(path)
        assert result.entity_id == "1"
        assert result.components == ()

    def test_load_rejects_non_list(self, tmp_path):
        path = tmp_path / "canonical.json"
        path.write_text(json.dumps({"rows": []}))
        with pytest.raises(FileFormatError):
            load_canonical_results(path)
