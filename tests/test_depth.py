from recon.depth import NO_METRIC_COLUMNS, assess_depth, describe, discover_periods
from tests.conftest import _mapping, _parsed, _result


def _layers(depth) -> dict[str, bool]:
    return {a.layer: a.available for a in depth.layers}


class TestAssessDepth:
    """Layer availability follows the mapping and the data overlap."""

    def test_totals_only(self):
        mapping = _mapping({"Total": "total_amount"})
        parsed = _parsed([{"Total": "100"}])
        depth = assess_depth(mapping, parsed, [_result("E1", 100)])
        assert _layers(depth) == {
            "aggregate": True,
            "employee": False,
            "component": False,
            "metric": False,
            "grouping": False,
        }
        assert depth.max_layer == "aggregate"
        assert depth.assessment("employee").reason == "no entity id column mapped"

    def test_layers_reported_in_ascending_order(self):
        depth = assess_depth(_mapping({"Total": "total_amount"}), _parsed([{"Total": "1"}]), [])
        assert [row["layer"] for row in describe(depth)] == [
            "aggregate",
            "employee",
            "component",
            "metric",
            "grouping",
        ]

    def test_employee_needs_overlap_after_normalization(self):
        mapping = _mapping({"ID": "entity_id", "Total": "total_amount"})
        parsed = _parsed([{"ID": "0042", "Total": "10"}])
        depth = assess_depth(mapping, parsed, [_result("42", 10)])
        assert _layers(depth)["employee"]
        assert depth.data_quality.matchable_ids == 1

        no_overlap = assess_depth(mapping, parsed, [_result("99", 10)])
        assert not _layers(no_overlap)["employee"]
        assert no_overlap.data_quality.unmatched_file_ids == 1
        assert no_overlap.data_quality.unmatched_canonical_ids == 1

    def test_footer_row_does_not_block_overlap(self):
        mapping = _mapping({"ID": "entity_id", "Total": "total_amount"})
        parsed = _parsed(
            [
                {"ID": "0101", "Total": "10"},
                {"ID": "0102", "Total": "20"},
                {"ID": "TOTAL", "Total": "30"},
            ]
        )
        depth = assess_depth(mapping, parsed, [_result("101", 10), _result("102", 20)])
        assert _layers(depth)["employee"]
        assert depth.data_quality.matchable_ids == 2
        assert depth.data_quality.unmatched_file_ids == 1

    def test_component_and_metric_layers(self):
        mapping = _mapping(
            {
                "ID": "entity_id",
                "Total": "total_amount",
                "Optical": "component:optical",
                "Optical Attainment": "metric:optical.attainment",
            }
        )
        parsed = _parsed([{"ID": "E1", "Total": "10", "Optical": "10", "Optical Attainment": "90"}])
        canonical = [
            _result("E1", 10, {"optical": 10}, metrics={"optical": {"attainment": 90.0}})
        ]
        depth = assess_depth(mapping, parsed, canonical)
        assert _layers(depth)["component"]
        assert _layers(depth)["metric"]
        assert depth.max_layer == "metric"

    def test_no_metric_columns_is_not_an_error(self):
        mapping = _mapping(
            {"ID": "entity_id", "Total": "total_amount", "Optical": "component:optical"}
        )
        parsed = _parsed([{"ID": "E1", "Total": "10", "Optical": "10"}])
        depth = assess_depth(mapping, parsed, [_result("E1", 10, {"optical": 10})])
        metric = depth.assessment("metric")
        assert not metric.available
        assert metric.reason == NO_METRIC_COLUMNS

    def test_component_must_exist_in_canonical(self):
        mapping = _mapping(
            {"ID": "entity_id", "Total": "total_amount", "Bonus": "component:bonus"}
        )
        parsed = _parsed([{"ID": "E1", "Total": "10", "Bonus": "1"}])
        depth = assess_depth(mapping, parsed, [_result("E1", 10, {"optical": 10})])
        assert not depth.assessment("component").available

    def test_grouping_needs_group_keys_on_both_sides(self):
        mapping = _mapping({"ID": "entity_id", "Total": "total_amount", "Store": "group"})
        parsed = _parsed([{"ID": "E1", "Total": "10", "Store": "S1"}])
        assert assess_depth(mapping, parsed, [_result("E1", 10, group="S1")]).assessment(
            "grouping"
        ).available
        assert not assess_depth(mapping, parsed, [_result("E1", 10)]).assessment(
            "grouping"
        ).available

    def test_derived_total_enables_aggregate(self):
        mapping = _mapping({"ID": "entity_id", "Optical": "component:optical"})
        parsed = _parsed([{"ID": "E1", "Optical": "10"}])
        depth = assess_depth(mapping, parsed, [_result("E1", 10, {"optical": 10})])
        assert depth.assessment("aggregate").available
        assert "derived" in depth.assessment("aggregate").reason


class TestFalseAgreementRisk:
    def test_high_when_totals_close_without_components(self):
        mapping = _mapping({"ID": "entity_id", "Total": "total_amount"})
        parsed = _parsed([{"ID": "E1", "Total": "1000"}])
        depth = assess_depth(mapping, parsed, [_result("E1", 1000)])
        assert depth.false_agreement_risk == "high"
        assert any("component" in r for r in depth.recommendations)

    def test_low_with_components_on_both_sides(self):
        mapping = _mapping(
            {
                "ID": "entity_id",
                "Total": "total_amount",
                "Optical": "component:optical",
                "Insurance": "component:insurance",
            }
        )
        parsed = _parsed([{"ID": "E1", "Total": "10", "Optical": "5", "Insurance": "5"}])
        depth = assess_depth(
            mapping, parsed, [_result("E1", 10, {"optical": 5, "insurance": 5})]
        )
        assert depth.false_agreement_risk == "low"


class TestPeriodDiscovery:
    MAPPING = _mapping({"ID": "entity_id", "Mes": "period", "Total": "total_amount"})

    def _parsed(self):
        return _parsed(
            [
                {"ID": "1", "Mes": 1, "Total": "100"},
                {"ID": "2", "Mes": "Enero", "Total": "50"},
                {"ID": "1", "Mes": 2, "Total": "999"},
                {"ID": "2", "Mes": "", "Total": "5"},
            ]
        )

    def test_rows_per_period_and_matching(self):
        canonical = [_result("1", 100, period="2024-01"), _result("2", 50, period="2024-03")]
        periods = discover_periods(self.MAPPING, self._parsed(), canonical)
        assert periods.has_period_data
        assert periods.period_columns == ("Mes",)
        assert periods.rows_per_period == {"*-01": 2, "*-02": 1}
        assert [p.label for p in periods.periods] == ["January", "February"]
        assert periods.unresolved_rows == 1
        assert periods.canonical_periods == ("2024-01", "2024-03")
        assert periods.matched == ("*-01",)
        assert periods.file_only == ("*-02",)
        assert periods.canonical_only == ("2024-03",)
        assert periods.spans_several_periods

    def test_month_and_year_columns(self):
        mapping = _mapping({"ID": "entity_id", "Mes": "period", "Año": "year", "Total": "total_amount"})
        parsed = _parsed(
            [
                {"ID": "1", "Mes": "1", "Año": "2024", "Total": "100"},
                {"ID": "1", "Mes": "1", "Año": "2023", "Total": "90"},
            ]
        )
        periods = discover_periods(mapping, parsed, [_result("1", 100, period="2024-01")])
        assert periods.period_columns == ("Mes", "Año")
        assert periods.rows_per_period == {"2023-01": 1, "2024-01": 1}
        assert periods.matched == ("2024-01",)
        assert periods.file_only == ("2023-01",)

    def test_without_period_column(self):
        mapping = _mapping({"ID": "entity_id", "Total": "total_amount"})
        canonical = [_result("1", 10, period="2024-02"), _result("1", 10, period="2024-01")]
        periods = discover_periods(mapping, _parsed([{"ID": "1", "Total": "20"}]), canonical)
        assert not periods.has_period_data
        assert periods.periods == ()
        assert periods.canonical_periods == ("2024-01", "2024-02")
        assert periods.spans_several_periods

    def test_several_periods_are_recommended_against(self):
        canonical = [_result("1", 100), _result("2", 50)]
        depth = assess_depth(self.MAPPING, self._parsed(), canonical)
        assert depth.periods.rows_per_period == {"*-01": 2, "*-02": 1}
        assert depth.recommendations[0].startswith("File spans 2 periods (January, February)")
        assert "1 file row(s) have no period value." in depth.recommendations

    def test_single_period_has_no_period_advice(self):
        parsed = _parsed([{"ID": "1", "Mes": "2024-01", "Total": "100"}])
        depth = assess_depth(self.MAPPING, parsed, [_result("1", 100)])
        assert depth.periods.matched == ("2024-01",)
        assert not any("period" in r for r in depth.recommendations)
