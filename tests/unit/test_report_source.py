"""Unit tests for finalized report sources."""

import json

import pytest

from medsubmit.reports.source import InMemoryReportSource, JsonReportSource
from medsubmit.utils.exceptions import ValidationError


def report_dict(report_id):
    return {
        "id": report_id,
        "patient_id": "1850101123456",
        "diagnosis": {"primary": "Hypertension", "icd_codes": ["I10"]},
        "created_at": "2024-04-15T09:30:00+00:00",
        "gdpr_consent": True,
        "doctor_id": "dr-popescu",
    }


class TestInMemoryReportSource:
    def test_returns_in_requested_order(self, report_factory):
        source = InMemoryReportSource([report_factory("a"), report_factory("b")])

        assert [r.id for r in source.get_reports(["b", "a"])] == ["b", "a"]

    def test_unknown_reports_listed(self, report_factory):
        source = InMemoryReportSource([report_factory("a")])

        with pytest.raises(ValidationError, match="x, y"):
            source.get_reports(["a", "x", "y"])

    def test_report_without_id_rejected(self, report_factory):
        with pytest.raises(ValidationError):
            InMemoryReportSource([report_factory(None)])


class TestJsonReportSource:
    """Tests for the JSON file source."""

    def test_list_file(self, tmp_path):
        # Arrange
        path = tmp_path / "reports.json"
        path.write_text(json.dumps([report_dict("r1"), report_dict("r2")]))

        # Act
        reports = JsonReportSource(path).get_reports(["r2"])

        # Assert
        assert reports[0].id == "r2"
        assert reports[0].diagnosis.icd_codes == ["I10"]

    def test_wrapped_file(self, tmp_path):
        path = tmp_path / "reports.json"
        path.write_text(json.dumps({"reports": [report_dict("r1")]}))

        assert len(JsonReportSource(path).load()) == 1

    def test_file_reread_on_lookup(self, tmp_path):
        """Test reports finalized after startup are found."""
        # Arrange
        path = tmp_path / "reports.json"
        path.write_text(json.dumps([report_dict("r1")]))
        source = JsonReportSource(path)
        source.get_reports(["r1"])

        # Act
        path.write_text(json.dumps([report_dict("r1"), report_dict("r2")]))

        # Assert
        assert [r.id for r in source.get_reports(["r2"])] == ["r2"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError, match="not found"):
            JsonReportSource(tmp_path / "missing.json").load()

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "reports.json"
        path.write_text("[{")

        with pytest.raises(ValidationError, match="Invalid JSON"):
            JsonReportSource(path).load()

    def test_not_a_list(self, tmp_path):
        path = tmp_path / "reports.json"
        path.write_text(json.dumps({"items": []}))

        with pytest.raises(ValidationError, match="must contain a list"):
            JsonReportSource(path).load()

    def test_entry_not_object(self, tmp_path):
        path = tmp_path / "reports.json"
        path.write_text(json.dumps([report_dict("r1"), "r2"]))

        with pytest.raises(ValidationError, match="#1"):
            JsonReportSource(path).load()
